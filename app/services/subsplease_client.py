"""
@description SubsPlease 节目列表抓取
@responsibility 提供番剧别名来源
"""

import html as html_lib
import re
from typing import Optional

import httpx
from loguru import logger

from app.core.config import HttpConfig
from app.core.errors import FetchError

SUBSPLEASE_SHOWS_URL = "https://subsplease.org/shows/"

SHOW_LINK_PATTERN = re.compile(
    r'<div[^>]*class="[^"]*\ball-shows-link\b[^"]*"[^>]*>\s*<a[^>]*>(.*?)</a>', re.DOTALL
)
TAG_PATTERN = re.compile(r"<[^>]+>")


def parse_show_titles(page: str) -> list[str]:
    titles = []
    for raw in SHOW_LINK_PATTERN.findall(page):
        title = html_lib.unescape(TAG_PATTERN.sub("", raw)).strip()
        if title:
            titles.append(title)
    return titles


class SubsPleaseClient:
    def __init__(self, http_config: Optional[HttpConfig] = None, client: Optional[httpx.AsyncClient] = None):
        http_config = http_config or HttpConfig()
        self._client = client or httpx.AsyncClient(
            timeout=http_config.timeout,
            headers={"User-Agent": http_config.user_agent},
            follow_redirects=True,
        )

    async def fetch_show_titles(self) -> list[str]:
        response = await self._client.get(SUBSPLEASE_SHOWS_URL)
        if not response.is_success:
            raise FetchError(f"SubsPlease 请求失败: HTTP {response.status_code}")

        titles = parse_show_titles(response.text)
        logger.info(f"从 SubsPlease 获取到 {len(titles)} 个节目标题")
        return titles

    async def close(self) -> None:
        await self._client.aclose()

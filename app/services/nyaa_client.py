"""
@description 索引站（nyaa）搜索客户端
@responsibility 按标题分页抓取搜索结果页，处理 429 限流重试与请求冷却
"""

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from urllib.parse import quote_plus

import httpx
from loguru import logger

from app.core.config import HttpConfig, IndexerConfig
from app.core.errors import IndexerError, RateLimitError
from app.utils.html_table import parse_table

PAGINATION_PATTERN = re.compile(
    r'<ul[^>]*class="[^"]*\bpagination\b[^"]*"[^>]*>(.*?)</ul>', re.DOTALL
)
LI_CLASS_PATTERN = re.compile(r"<li(?:\s[^>]*)?>", re.DOTALL)
CLASS_ATTR_PATTERN = re.compile(r'class="([^"]*)"')


@dataclass
class IndexerItem:
    title: str
    link: str
    date: datetime


def parse_search_page(html: str, base_url: str) -> list[IndexerItem]:
    """解析搜索结果表格 table.torrent-list"""
    rows = parse_table(html, "torrent-list") or []
    items = []
    for row in rows:
        cells = [c for c in row if c.tag == "td"]
        if len(cells) < 3:
            continue

        title_cell = cells[1]
        if title_cell.anchors:
            anchor = title_cell.anchors[-1]
            title = anchor.title or anchor.text
        else:
            title = title_cell.text
        title = (title or "").strip()

        link_cell = cells[2]
        href = link_cell.anchors[0].href if link_cell.anchors else ""
        if not title or not href:
            continue
        link = href if href.startswith("http") else base_url.rstrip("/") + href

        date_cell = cells[4] if len(cells) > 4 else None
        items.append(IndexerItem(title=title, link=link, date=_parse_date(date_cell)))
    return items


def _parse_date(cell) -> datetime:
    if cell is None:
        return datetime.now()

    timestamp = cell.attrs.get("data-timestamp")
    if timestamp and timestamp.isdigit():
        return datetime.fromtimestamp(int(timestamp))

    for fmt in ("%Y-%m-%d %H:%M", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d"):
        try:
            return datetime.strptime(cell.text.strip(), fmt)
        except ValueError:
            continue
    return datetime.now()


def is_last_page(html: str) -> bool:
    """
    没有分页块，或分页块中最后一个 li 同时带 next 和 disabled，视为最后一页
    """
    match = PAGINATION_PATTERN.search(html)
    if not match:
        return True

    items = LI_CLASS_PATTERN.findall(match.group(1))
    if not items:
        return True

    class_match = CLASS_ATTR_PATTERN.search(items[-1])
    classes = class_match.group(1).split() if class_match else []
    return "next" in classes and "disabled" in classes


class NyaaClient:
    """索引站客户端，同一时刻最多 concurrency 个标题在搜索"""

    def __init__(
        self,
        config: IndexerConfig,
        http_config: Optional[HttpConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._config = config
        http_config = http_config or HttpConfig()
        self._client = client or httpx.AsyncClient(
            timeout=http_config.timeout,
            headers={"User-Agent": http_config.user_agent},
            follow_redirects=True,
        )
        self._semaphore = asyncio.Semaphore(config.concurrency)

    def build_search_url(self, title: str) -> str:
        return f"{self._config.base_url.rstrip('/')}/?q={quote_plus(title)}+1080p&c=1_2&f=0"

    async def search(self, title: str, max_pages: Optional[int] = None) -> list[IndexerItem]:
        """
        按标题搜索并逐页抓取

        遇到空页、分页块缺失、"下一页"禁用或达到 max_pages 时停止。
        """
        if not title or not title.strip():
            return []

        base_url = self.build_search_url(title)
        results: list[IndexerItem] = []
        page = 1

        async with self._semaphore:
            while True:
                url = base_url if page == 1 else f"{base_url}&p={page}"
                logger.debug(f"抓取索引站第 {page} 页: {url}")
                html = await self._fetch_page(url)
                items = parse_search_page(html, self._config.base_url)

                await asyncio.sleep(self._config.cooldown)

                if not items:
                    break
                results.extend(items)

                if is_last_page(html):
                    break
                if max_pages and page >= max_pages:
                    break
                page += 1

        logger.info(f"索引站搜索 [{title}] 完成: {len(results)} 条结果，共 {page} 页")
        return results

    async def _fetch_page(self, url: str) -> str:
        """抓取单页，429 时固定间隔重试"""
        for attempt in range(self._config.max_retries + 1):
            response = await self._client.get(url)

            if response.status_code == 429:
                if attempt < self._config.max_retries:
                    logger.warning(
                        f"索引站限流 (429)，{self._config.retry_delay} 秒后重试 "
                        f"({attempt + 1}/{self._config.max_retries})"
                    )
                    await asyncio.sleep(self._config.retry_delay)
                    continue
                raise RateLimitError(f"索引站限流，已重试 {self._config.max_retries} 次: {url}")

            if not response.is_success:
                raise IndexerError(response.status_code, url)

            return response.text

        raise RateLimitError(f"索引站限流: {url}")

    async def close(self) -> None:
        await self._client.aclose()

"""
@description AniDB 网页客户端
@responsibility 查询番剧/字幕组的 AniDB id，通过 CRC 在发布列表页确定集数

所有请求串行执行，相邻两次请求之间至少间隔 min_interval 秒。
查询结果（包括未找到和出错）按 URL 缓存到数据库。
"""

import asyncio
import re
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional
from urllib.parse import quote

import httpx
from loguru import logger

from app.core.config import AnidbConfig, HttpConfig
from app.core.errors import AnidbError
from app.services.catalog import CatalogStore
from app.utils.html_table import parse_table

ANIDB_BASE_URL = "https://anidb.net"
LOGIN_URL = f"{ANIDB_BASE_URL}/perl-bin/animedb.pl"

ID_CACHE_TTL = timedelta(days=7)
RELEASE_PAGE_CACHE_TTL = timedelta(hours=6)

RELEASE_ANIME_LINK_PATTERN = re.compile(
    r'class="[^"]*\banime\b[^"]*"[^>]*>.*?class="[^"]*\bvalue\b[^"]*"[^>]*>.*?'
    r'<a[^>]*href="[^"]*/anime/(\d+)',
    re.DOTALL,
)


class AnidbClient:
    """AniDB 客户端，登录会话保存在内存中"""

    def __init__(
        self,
        config: AnidbConfig,
        catalog: CatalogStore,
        http_config: Optional[HttpConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._config = config
        self._catalog = catalog
        http_config = http_config or HttpConfig()
        self._user_agent = http_config.user_agent
        self._client = client or httpx.AsyncClient(timeout=http_config.timeout)

        self._slot = asyncio.Lock()
        self._last_request_start: Optional[float] = None
        self._session_cookie: Optional[str] = None
        self._authenticating = False

    # ------------------------------------------------------------------
    # 公开接口
    # ------------------------------------------------------------------

    async def get_anime_id(self, title: str) -> Optional[int]:
        return await self._lookup_id(title, "anime")

    async def get_group_id(self, name: str) -> Optional[int]:
        return await self._lookup_id(name, "group")

    async def get_episode_by_crc(
        self, group_id: int, anime_id: int, crc: str
    ) -> tuple[Optional[int], Optional[int]]:
        """
        在 /group/G/anime/A/release 页面中按 CRC 查找集数

        返回 (集数, 季数)；季数取页面所链接番剧在本地目录中的季数，
        页面没有链接时使用传入的 anime_id。
        """
        if not group_id or not anime_id or not crc:
            return None, None

        url = f"{ANIDB_BASE_URL}/group/{group_id}/anime/{anime_id}/release"
        html = None

        cached = await self._catalog.get_cache_entry(url, RELEASE_PAGE_CACHE_TTL)
        if cached is not None:
            logger.debug(f"使用缓存的 AniDB 发布页: {url}")
            html = cached.html
        else:
            try:
                async with self._request_slot():
                    response = await self._get(url)
                if response.is_success:
                    html = response.text
                else:
                    logger.warning(f"获取 AniDB 发布页失败: HTTP {response.status_code} ({url})")
                await self._catalog.store_cache_entry(url, html=html)
            except (httpx.HTTPError, AnidbError) as e:
                logger.error(f"获取 AniDB 发布页出错 (CRC {crc}): {e}")
                await self._catalog.store_cache_entry(url)
                return None, None

        if not html:
            return None, None

        season = await self._season_from_release_page(html, anime_id)
        episode = find_episode_by_crc(html, crc)
        if episode is not None:
            logger.info(f"CRC {crc} 对应第 {episode} 集 (季数: {season})")
        else:
            logger.debug(f"发布页中未找到 CRC {crc}")
        return episode, season

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # 查询 id
    # ------------------------------------------------------------------

    def build_search_url(self, term: str, kind: str) -> str:
        return f"{ANIDB_BASE_URL}/{kind}/?adb.search={quote(term.strip(), safe='')}&do.search=1"

    async def _lookup_id(self, term: Optional[str], kind: str) -> Optional[int]:
        if not term or not term.strip():
            return None

        url = self.build_search_url(term, kind)
        cached = await self._catalog.get_cache_entry(url, ID_CACHE_TTL)
        if cached is not None:
            logger.debug(f"使用缓存的 AniDB {kind} 查询: {term} -> {cached.anidb_id}")
            return cached.anidb_id

        anidb_id = None
        try:
            async with self._request_slot():
                anidb_id = await self._search_id(url, term.strip(), kind)
        except (httpx.HTTPError, AnidbError) as e:
            logger.error(f"AniDB 查询 {kind} [{term}] 出错: {e}")

        if anidb_id is None:
            logger.info(f"AniDB 未找到 {kind}: {term}")
        else:
            logger.info(f"AniDB {kind} [{term}] -> {anidb_id}")
        await self._catalog.store_cache_entry(url, anidb_id=anidb_id)
        return anidb_id

    async def _search_id(self, url: str, term: str, kind: str) -> Optional[int]:
        response = await self._get(url)

        if response.is_redirect:
            # 唯一结果时 AniDB 直接重定向到详情页
            return _extract_id(response.headers.get("location", ""), kind)

        if not response.is_success:
            return None

        if kind == "group":
            return find_group_in_results(response.text, term)
        return None

    # ------------------------------------------------------------------
    # 请求与会话
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _request_slot(self):
        """单并发请求槽，槽内的每个请求（包括登录和重试）都先调用 _wait_turn"""
        async with self._slot:
            yield

    async def _wait_turn(self) -> None:
        """相邻两次请求开始时间至少间隔 min_interval 秒"""
        if self._last_request_start is not None:
            wait = self._config.min_interval - (time.monotonic() - self._last_request_start)
            if wait > 0:
                await asyncio.sleep(wait)
        self._last_request_start = time.monotonic()

    async def _get(self, url: str) -> httpx.Response:
        """带会话 cookie 的 GET，会话失效时重新登录并重试一次"""
        response = await self._send(url)
        if self._session_expired(response):
            logger.warning("AniDB 会话已失效，重新登录")
            self._session_cookie = None
            response = await self._send(url)
            if self._session_expired(response):
                self._session_cookie = None
                raise AnidbError(f"重新登录后 AniDB 会话仍然无效: {url}")
        return response

    async def _send(self, url: str) -> httpx.Response:
        headers = {"User-Agent": self._user_agent}
        cookie = await self._ensure_session()
        if cookie:
            headers["Cookie"] = cookie
        await self._wait_turn()
        return await self._client.get(url, headers=headers, follow_redirects=False)

    def _session_expired(self, response: httpx.Response) -> bool:
        if self._session_cookie is None:
            return False
        if response.status_code in (401, 403):
            return True
        if response.is_redirect:
            location = response.headers.get("location", "")
            return "do.auth" in location or "show=login" in location
        return False

    async def _ensure_session(self) -> Optional[str]:
        if self._session_cookie:
            return self._session_cookie

        if self._authenticating:
            while self._authenticating:
                await asyncio.sleep(0.1)
            return self._session_cookie

        self._authenticating = True
        try:
            self._session_cookie = await self._login()
            return self._session_cookie
        finally:
            self._authenticating = False

    async def _login(self) -> Optional[str]:
        if not self._config.username or not self._config.password:
            logger.error("未配置 AniDB 账户（ANIDB_USER / ANIDB_PASSWORD），以匿名方式请求")
            return None

        logger.info("正在登录 AniDB...")
        await self._wait_turn()
        try:
            response = await self._client.post(
                LOGIN_URL,
                data={
                    "show": "main",
                    "xuser": self._config.username,
                    "xpass": self._config.password,
                    "xdoautologin": "on",
                    "do.auth": "login",
                },
                headers={"User-Agent": self._user_agent},
                follow_redirects=False,
            )
        except httpx.HTTPError as e:
            logger.error(f"AniDB 登录请求失败: {e}")
            return None

        if not response.is_redirect:
            logger.error(f"AniDB 登录返回了意外的状态码: {response.status_code}")
            return None

        cookies = [
            header.split(";", 1)[0].strip()
            for header in response.headers.get_list("set-cookie")
        ]
        cookies = [c for c in cookies if c]
        if not cookies:
            logger.error("AniDB 登录响应中没有 Set-Cookie")
            return None

        logger.info("AniDB 登录成功")
        return "; ".join(cookies)

    async def _season_from_release_page(self, html: str, fallback_anime_id: int) -> Optional[int]:
        match = RELEASE_ANIME_LINK_PATTERN.search(html)
        target = int(match.group(1)) if match else fallback_anime_id
        if not target:
            return None
        return await self._catalog.get_anime_season_by_anidb_id(target)


def _extract_id(url: str, kind: str) -> Optional[int]:
    match = re.search(rf"/{kind}/(\d+)", url or "")
    return int(match.group(1)) if match else None


def find_group_in_results(html: str, name: str) -> Optional[int]:
    """在 table.grouplist 中查找标题与名称完全一致的字幕组"""
    rows = parse_table(html, "grouplist") or []
    for row in rows:
        for cell in row:
            if cell.attrs.get("data-label") != "Title" or not cell.anchors:
                continue
            anchor = cell.anchors[0]
            if anchor.text == name:
                group_id = _extract_id(anchor.href, "group")
                if group_id is not None:
                    return group_id
    return None


def find_episode_by_crc(html: str, crc: str) -> Optional[int]:
    """在发布列表中查找 CRC 对应的集数"""
    rows = parse_table(html, "filelist")
    if rows is None:
        return None

    target = crc.upper()
    for row in rows:
        epno = next((c for c in row if "epno" in c.classes), None)
        crc_cell = next((c for c in row if "crc" in c.classes), None)
        if epno is None or crc_cell is None:
            continue
        if crc_cell.text.strip().upper() != target:
            continue
        match = re.search(r"\d+", epno.text)
        if match:
            return int(match.group(0))
    return None

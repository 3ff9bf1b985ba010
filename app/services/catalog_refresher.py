"""
@description 季度番剧目录刷新
@responsibility 拉取季度番剧列表，补全 AniDB id、别名、种子和剧集后写入目录
"""

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

import httpx
from loguru import logger

from app.core.errors import FetchError
from app.models.anime import Anime
from app.models.task import Task
from app.services.anidb_client import AnidbClient
from app.services.anilist_client import QUARTER_TO_SEASON, AniListClient
from app.services.catalog import CatalogStore
from app.services.release_scanner import ReleaseScanner
from app.services.subsplease_client import SubsPleaseClient
from app.services.title_matcher import best_alternate_title, extract_season_from_metadata

QUARTER_CACHE_TTL = timedelta(days=14)
DEFAULT_EPISODE_COUNT = 12
PROCESS_CONCURRENCY = 3


@dataclass
class QuarterRecord:
    """一部番剧的刷新结果，等待统一写入"""

    anime: dict
    episodes: list[tuple[int, Optional[datetime]]] = field(default_factory=list)
    candidates: list = field(default_factory=list)
    alternative_title: Optional[str] = None


def _start_date(media: dict) -> Optional[date]:
    start = media.get("startDate") or {}
    if not start.get("year") or not start.get("month"):
        return None
    try:
        return date(start["year"], start["month"], start.get("day") or 1)
    except ValueError:
        return None


def anime_fields_from_media(media: dict) -> dict:
    """AniList media -> Anime 字段"""
    title = media.get("title") or {}
    cover = media.get("coverImage") or {}
    return {
        "id": media["id"],
        "id_mal": media.get("idMal"),
        "title_romaji": title.get("romaji"),
        "title_english": title.get("english"),
        "title_native": title.get("native"),
        "description": media.get("description"),
        "image": cover.get("extraLarge"),
        "start_date": _start_date(media),
        "genres": media.get("genres") or [],
        "season": extract_season_from_metadata(
            [title.get("romaji"), title.get("english"), title.get("native")],
            media.get("description"),
        ),
    }


def build_episode_schedule(media: dict) -> list[tuple[int, Optional[datetime]]]:
    """
    剧集播出时间表

    优先使用 AniList 的 airingSchedule；没有时从开播日期起每周一集，
    集数未知时按 12 集处理。
    """
    nodes = ((media.get("airingSchedule") or {}).get("nodes")) or []
    schedule = {}
    for node in nodes:
        if node.get("episode") and node.get("airingAt"):
            schedule[node["episode"]] = datetime.fromtimestamp(node["airingAt"])
    if schedule:
        return sorted(schedule.items())

    count = media.get("episodes") or DEFAULT_EPISODE_COUNT
    start = _start_date(media)
    episodes = []
    for i in range(count):
        airing_at = None
        if start is not None:
            airing_at = datetime.combine(start, datetime.min.time()) + timedelta(days=7 * i)
        episodes.append((i + 1, airing_at))
    return episodes


class CatalogRefresher:
    """季度刷新服务"""

    def __init__(
        self,
        catalog: CatalogStore,
        anilist: AniListClient,
        subsplease: SubsPleaseClient,
        anidb: AnidbClient,
        scanner: ReleaseScanner,
    ):
        self._catalog = catalog
        self._anilist = anilist
        self._subsplease = subsplease
        self._anidb = anidb
        self._scanner = scanner

    async def handle_task(self, task: Task) -> dict:
        payload = task.payload or {}
        return await self.refresh_quarter(
            payload.get("quarter"), payload.get("year"), bool(payload.get("force_refresh"))
        )

    async def refresh_quarter(self, quarter: str, year: int, force_refresh: bool = False) -> dict:
        if quarter not in QUARTER_TO_SEASON or not year:
            raise ValueError(f"无效的季度: {quarter} {year}")

        if not force_refresh and await self._catalog.is_quarter_fresh(quarter, year, QUARTER_CACHE_TTL):
            logger.info(f"{quarter} {year} 在 14 天内已刷新，跳过")
            return {"message": f"{quarter} {year} 数据仍有效，未刷新", "skipped": True, "anime_count": 0}

        logger.info(f"开始刷新 {quarter} {year}{'（强制）' if force_refresh else ''}")

        try:
            alternates = await self._subsplease.fetch_show_titles()
        except (FetchError, httpx.HTTPError) as e:
            logger.error(f"获取 SubsPlease 别名失败，继续刷新: {e}")
            alternates = []

        media_list = await self._anilist.fetch_quarter_media(quarter, year)

        semaphore = asyncio.Semaphore(PROCESS_CONCURRENCY)

        async def process(media: dict) -> QuarterRecord:
            async with semaphore:
                return await self._process_media(media, alternates)

        records = await asyncio.gather(*(process(m) for m in media_list))
        torrent_count = await self._catalog.store_quarter(quarter, year, list(records))

        return {
            "message": f"{quarter} {year} 刷新完成",
            "skipped": False,
            "anime_count": len(records),
            "torrents_found": torrent_count,
        }

    async def _process_media(self, media: dict, alternates: list[str]) -> QuarterRecord:
        fields = anime_fields_from_media(media)
        search_title = fields["title_english"] or fields["title_romaji"] or fields["title_native"]
        if search_title:
            fields["anidb_id"] = await self._anidb.get_anime_id(search_title)

        alternative_title = best_alternate_title(
            alternates,
            [fields["title_english"], fields["title_romaji"], fields["title_native"]],
        )

        # 尚未入库的番剧，只用于搜索
        anime = Anime(**fields)
        candidates = await self._scanner.find_releases(
            anime, [alternative_title] if alternative_title else []
        )

        return QuarterRecord(
            anime=fields,
            episodes=build_episode_schedule(media),
            candidates=candidates,
            alternative_title=alternative_title,
        )

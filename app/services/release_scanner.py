"""
@description 番剧种子扫描
@responsibility 用番剧的全部标题搜索索引站，筛选、解析并补全种子信息后写入目录

筛选顺序：
1. 名称完全匹配：标题中集数标记之前的番剧名（规范化后）必须等于某个搜索词
2. 字幕组：查找或创建字幕组，并补全其 AniDB id
3. CRC：番剧和字幕组都有 AniDB id 且标题带 CRC 时，以 AniDB 发布列表为准
4. 季数一致：解析出的季数与番剧季数不同则丢弃，CRC 确认过的除外
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from loguru import logger

from app.core.config import IndexerConfig
from app.models.task import Task
from app.services.anidb_client import AnidbClient
from app.services.catalog import CatalogStore
from app.services.episode_parser import (
    extract_anime_name,
    normalize_title_term,
    parse_crc,
    parse_episode,
    parse_season,
    parse_sub_group,
)
from app.services.nyaa_client import IndexerItem, NyaaClient


@dataclass
class ReleaseCandidate:
    title: str
    link: str
    date: datetime
    episode: Optional[int] = None
    season: Optional[int] = None
    sub_group: Optional[str] = None
    sub_group_id: Optional[int] = None
    resolved_by_crc: bool = False


def build_search_terms(titles: Iterable[Optional[str]], alternative_titles: Iterable[str] = ()) -> list[str]:
    """合并主标题与别名，忽略大小写去重并保持顺序"""
    terms = []
    seen = set()
    for term in [*titles, *alternative_titles]:
        if not term:
            continue
        key = term.strip().lower()
        if key and key not in seen:
            seen.add(key)
            terms.append(term.strip())
    return terms


class ReleaseScanner:
    """种子扫描服务"""

    def __init__(
        self,
        catalog: CatalogStore,
        nyaa: NyaaClient,
        anidb: AnidbClient,
        config: IndexerConfig,
    ):
        self._catalog = catalog
        self._nyaa = nyaa
        self._anidb = anidb
        self._config = config

    async def handle_task(self, task: Task) -> dict:
        payload = task.payload or {}
        return await self.scan_anime_releases(task.anime_id, bool(payload.get("wipe_previous")))

    async def scan_anime_releases(self, anime_id: int, wipe_previous: bool = False) -> dict:
        """扫描单部番剧的种子并保存，按链接去重"""
        anime = await self._catalog.get_anime(anime_id)
        if anime is None:
            raise LookupError(f"番剧不存在: {anime_id}")

        logger.info(f"开始扫描番剧 [{anime.display_title}] ({anime_id}) 的种子")

        max_pages = None
        if not wipe_previous and self._config.shallow_scan_pages > 0:
            if await self._catalog.has_torrents(anime_id):
                max_pages = self._config.shallow_scan_pages

        alternative_titles = await self._catalog.get_alternative_titles(anime_id)
        candidates = await self.find_releases(anime, alternative_titles, max_pages=max_pages)
        result = await self._catalog.save_torrents(anime_id, candidates, wipe_previous=wipe_previous)

        message = f"扫描完成，新增 {result['torrents_found']} 个种子"
        if wipe_previous and result["deleted_count"]:
            message += f"（已删除 {result['deleted_count']} 个旧种子）"
        logger.info(f"[{anime.display_title}] {message}")
        return {"message": message, **result}

    async def find_releases(
        self,
        anime,
        alternative_titles: Iterable[str] = (),
        max_pages: Optional[int] = None,
    ) -> list[ReleaseCandidate]:
        """
        搜索并筛选一部番剧的种子，结果按发布时间倒序

        anime 只需提供 title_romaji / title_english / title_native / anidb_id / season。
        """
        terms = build_search_terms(
            [anime.title_romaji, anime.title_english, anime.title_native], alternative_titles
        )
        if not terms:
            return []
        logger.debug(f"搜索词: {terms}")

        normalized_terms = {normalize_title_term(t) for t in terms}
        normalized_terms.discard("")

        # 并发度由索引站客户端限制
        pages = await asyncio.gather(
            *(self._nyaa.search(term, max_pages=max_pages) for term in terms)
        )

        unique: dict[str, IndexerItem] = {}
        for item in (i for page in pages for i in page):
            unique.setdefault(item.title.lower(), item)

        group_cache: dict = {}
        candidates = []
        for item in unique.values():
            try:
                candidate = await self._process_item(item, anime, normalized_terms, group_cache)
            except Exception as e:
                logger.error(f"处理种子 [{item.title}] 时出错: {e}")
                continue
            if candidate is not None:
                candidates.append(candidate)

        candidates.sort(key=lambda c: c.date, reverse=True)
        logger.info(f"共 {len(unique)} 个搜索结果，保留 {len(candidates)} 个种子")
        return candidates

    async def _process_item(
        self, item: IndexerItem, anime, normalized_terms: set[str], group_cache: dict
    ) -> Optional[ReleaseCandidate]:
        parsed_name = normalize_title_term(extract_anime_name(item.title))
        if not parsed_name or parsed_name not in normalized_terms:
            logger.debug(f"名称不匹配，跳过: {item.title} ({parsed_name})")
            return None

        candidate = ReleaseCandidate(
            title=item.title,
            link=item.link,
            date=item.date,
            episode=parse_episode(item.title),
            season=parse_season(item.title),
            sub_group=parse_sub_group(item.title),
        )

        group = None
        if candidate.sub_group:
            group = await self._resolve_sub_group(candidate.sub_group, group_cache)
            candidate.sub_group_id = group.id

        crc = parse_crc(item.title)
        if anime.anidb_id and group is not None and group.anidb_id and crc:
            episode, season = await self._anidb.get_episode_by_crc(
                group.anidb_id, anime.anidb_id, crc
            )
            if episode is not None:
                if episode != candidate.episode:
                    logger.info(f"CRC {crc} 修正集数: {candidate.episode} -> {episode}")
                candidate.episode = episode
                candidate.resolved_by_crc = True
                if season is not None:
                    candidate.season = season

        if (
            not candidate.resolved_by_crc
            and candidate.season is not None
            and candidate.season != anime.season
        ):
            logger.debug(
                f"季数不一致，跳过: {item.title} (解析: {candidate.season}, 番剧: {anime.season})"
            )
            return None

        return candidate

    async def _resolve_sub_group(self, name: str, cache: dict):
        if name in cache:
            return cache[name]

        group = await self._catalog.get_sub_group(name)
        if group is None or group.anidb_id is None:
            anidb_id = await self._anidb.get_group_id(name)
            group = await self._catalog.ensure_sub_group(name, anidb_id)

        cache[name] = group
        return group

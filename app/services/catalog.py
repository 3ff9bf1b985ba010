"""
@description 番剧目录存取服务
@responsibility 封装番剧、剧集、种子、字幕组、文件记录、AniDB 缓存和用户配置的数据库操作

每个公开方法对应一个逻辑操作，内部只使用一个事务。
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from loguru import logger
from sqlalchemy import delete, func, select

from app.core.database import Database
from app.models.anime import AlternativeTitle, Anime, Episode, QuarterQuery
from app.models.configuration import Configuration
from app.models.file_download import FileDownload
from app.models.metadata_cache import MetadataCache
from app.models.torrent import AnimeSubGroup, SubGroup, Torrent

CONFIGURATION_FIELDS = (
    "anime_location",
    "enable_automatic_anime_folder_classification",
    "enable_auto_download_episodes",
    "max_download_rate",
    "max_upload_rate",
)


@dataclass
class DownloadCandidate:
    """自动下载候选：某一集以及为其挑选的种子"""

    anime_id: int
    anime_title: str
    episode_number: int
    torrent_id: int
    link: str


class CatalogStore:
    """番剧目录存取服务"""

    def __init__(self, db: Database):
        self._db = db

    # ------------------------------------------------------------------
    # AniDB 缓存
    # ------------------------------------------------------------------

    async def get_cache_entry(
        self, url: str, max_age: timedelta, now: Optional[datetime] = None
    ) -> Optional[MetadataCache]:
        """返回未过期的缓存记录，过期或不存在时返回 None"""
        now = now or datetime.now()
        async with self._db.session() as session:
            entry = await session.get(MetadataCache, url)
            if entry is None:
                return None
            if now - entry.last_query >= max_age:
                return None
            return entry

    async def store_cache_entry(
        self,
        url: str,
        anidb_id: Optional[int] = None,
        html: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        async with self._db.session() as session:
            entry = await session.get(MetadataCache, url)
            if entry is None:
                entry = MetadataCache(url=url)
                session.add(entry)
            entry.anidb_id = anidb_id
            entry.html = html
            entry.last_query = now or datetime.now()
            await session.commit()

    # ------------------------------------------------------------------
    # 番剧
    # ------------------------------------------------------------------

    async def get_anime(self, anime_id: int) -> Optional[Anime]:
        async with self._db.session() as session:
            return await session.get(Anime, anime_id)

    async def get_anime_season_by_anidb_id(self, anidb_id: int) -> Optional[int]:
        async with self._db.session() as session:
            result = await session.execute(
                select(Anime.season).where(Anime.anidb_id == anidb_id).limit(1)
            )
            return result.scalar_one_or_none()

    async def list_autodownload_anime(self) -> list[Anime]:
        async with self._db.session() as session:
            result = await session.execute(
                select(Anime).where(Anime.autodownload.is_(True)).order_by(Anime.id)
            )
            return list(result.scalars().all())

    async def set_autodownload(self, anime_id: int, enabled: bool) -> None:
        async with self._db.session() as session:
            anime = await session.get(Anime, anime_id)
            if anime is None:
                raise LookupError(f"番剧不存在: {anime_id}")
            anime.autodownload = enabled
            await session.commit()

    async def get_alternative_titles(self, anime_id: int) -> list[str]:
        async with self._db.session() as session:
            result = await session.execute(
                select(AlternativeTitle.title)
                .where(AlternativeTitle.anime_id == anime_id)
                .order_by(AlternativeTitle.id)
            )
            return list(result.scalars().all())

    async def add_alternative_titles(self, anime_id: int, titles: Iterable[str]) -> int:
        async with self._db.session() as session:
            added = await self._add_alternative_titles(session, anime_id, titles)
            await session.commit()
            return added

    async def _add_alternative_titles(self, session, anime_id: int, titles: Iterable[str]) -> int:
        result = await session.execute(
            select(AlternativeTitle.title).where(AlternativeTitle.anime_id == anime_id)
        )
        existing = set(result.scalars().all())
        added = 0
        for title in titles:
            title = (title or "").strip()
            if not title or title in existing:
                continue
            session.add(AlternativeTitle(anime_id=anime_id, title=title))
            existing.add(title)
            added += 1
        return added

    # ------------------------------------------------------------------
    # 字幕组
    # ------------------------------------------------------------------

    async def get_sub_group(self, name: str) -> Optional[SubGroup]:
        async with self._db.session() as session:
            result = await session.execute(select(SubGroup).where(SubGroup.name == name))
            return result.scalar_one_or_none()

    async def ensure_sub_group(self, name: str, anidb_id: Optional[int] = None) -> SubGroup:
        """获取或创建字幕组，提供 anidb_id 时一并写入"""
        async with self._db.session() as session:
            result = await session.execute(select(SubGroup).where(SubGroup.name == name))
            group = result.scalar_one_or_none()
            if group is None:
                group = SubGroup(name=name, anidb_id=anidb_id)
                session.add(group)
                logger.info(f"新建字幕组: {name} (AniDB: {anidb_id})")
            elif anidb_id and group.anidb_id != anidb_id:
                group.anidb_id = anidb_id
            await session.commit()
            return group

    async def set_anime_sub_group_enabled(
        self, anime_id: int, sub_group_id: int, enabled: bool
    ) -> None:
        async with self._db.session() as session:
            override = await session.get(AnimeSubGroup, (anime_id, sub_group_id))
            if override is None:
                session.add(
                    AnimeSubGroup(anime_id=anime_id, sub_group_id=sub_group_id, enabled=enabled)
                )
            else:
                override.enabled = enabled
            await session.commit()

    async def is_sub_group_enabled(self, anime_id: int, sub_group_id: Optional[int]) -> bool:
        """番剧级别的设置优先，否则使用字幕组默认值；没有字幕组的种子视为启用"""
        if sub_group_id is None:
            return True
        async with self._db.session() as session:
            override = await session.get(AnimeSubGroup, (anime_id, sub_group_id))
            if override is not None:
                return override.enabled
            group = await session.get(SubGroup, sub_group_id)
            return group.default_enabled if group is not None else True

    # ------------------------------------------------------------------
    # 种子
    # ------------------------------------------------------------------

    async def has_torrents(self, anime_id: int) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                select(func.count(Torrent.id))
                .join(Episode, Torrent.episode_id == Episode.id)
                .where(Episode.anime_id == anime_id)
            )
            return (result.scalar() or 0) > 0

    async def get_torrent(self, torrent_id: int) -> Optional[Torrent]:
        async with self._db.session() as session:
            return await session.get(Torrent, torrent_id)

    async def get_anime_torrent(self, anime_id: int, torrent_id: int) -> Optional[Torrent]:
        async with self._db.session() as session:
            result = await session.execute(
                select(Torrent)
                .join(Episode, Torrent.episode_id == Episode.id)
                .where(Torrent.id == torrent_id, Episode.anime_id == anime_id)
            )
            return result.scalar_one_or_none()

    async def get_torrent_with_anime(self, torrent_id: int) -> Optional[tuple[Torrent, Anime]]:
        async with self._db.session() as session:
            result = await session.execute(
                select(Torrent, Anime)
                .join(Episode, Torrent.episode_id == Episode.id)
                .join(Anime, Episode.anime_id == Anime.id)
                .where(Torrent.id == torrent_id)
            )
            row = result.first()
            return (row[0], row[1]) if row else None

    async def list_torrent_titles(self) -> dict[int, str]:
        async with self._db.session() as session:
            result = await session.execute(select(Torrent.id, Torrent.title))
            return {row.id: row.title for row in result}

    async def save_torrents(
        self, anime_id: int, candidates: list, wipe_previous: bool = False
    ) -> dict:
        """
        保存一次扫描的结果

        wipe_previous 为真时先删除该番剧已有的种子。已存在的链接跳过，
        对应集数不存在时补建剧集。
        """
        async with self._db.session() as session:
            deleted = 0
            if wipe_previous:
                episode_ids = select(Episode.id).where(Episode.anime_id == anime_id)
                result = await session.execute(
                    delete(Torrent).where(Torrent.episode_id.in_(episode_ids))
                )
                deleted = result.rowcount or 0

            stored = await self._add_torrents(session, anime_id, candidates)

            anime = await session.get(Anime, anime_id)
            if anime is not None:
                anime.last_torrent_scan = datetime.now()
            await session.commit()

        return {"torrents_found": stored, "deleted_count": deleted}

    async def _add_torrents(self, session, anime_id: int, candidates: list) -> int:
        candidates = [c for c in candidates if c.episode is not None and c.link]
        if not candidates:
            return 0

        links = [c.link for c in candidates]
        result = await session.execute(select(Torrent.link).where(Torrent.link.in_(links)))
        known_links = set(result.scalars().all())

        result = await session.execute(select(Episode).where(Episode.anime_id == anime_id))
        episodes = {e.episode_number: e for e in result.scalars().all()}

        stored = 0
        for candidate in candidates:
            if candidate.link in known_links:
                continue

            episode = episodes.get(candidate.episode)
            if episode is None:
                episode = Episode(anime_id=anime_id, episode_number=candidate.episode)
                session.add(episode)
                await session.flush()
                episodes[candidate.episode] = episode

            session.add(
                Torrent(
                    episode_id=episode.id,
                    sub_group_id=candidate.sub_group_id,
                    title=candidate.title,
                    link=candidate.link,
                    date=candidate.date,
                    episode_number=candidate.episode,
                    season_number=candidate.season,
                    resolved_by_crc=candidate.resolved_by_crc,
                )
            )
            known_links.add(candidate.link)
            stored += 1

        return stored

    # ------------------------------------------------------------------
    # 季度
    # ------------------------------------------------------------------

    async def is_quarter_fresh(
        self, quarter: str, year: int, max_age: timedelta, now: Optional[datetime] = None
    ) -> bool:
        now = now or datetime.now()
        async with self._db.session() as session:
            record = await session.get(QuarterQuery, (quarter, year))
            return record is not None and now - record.last_fetched < max_age

    async def store_quarter(self, quarter: str, year: int, records: list) -> int:
        """
        保存季度刷新结果：番剧、剧集、种子和别名

        已存在的番剧保留原记录，只补充剧集和种子。
        """
        stored_torrents = 0
        async with self._db.session() as session:
            for record in records:
                anime = await session.get(Anime, record.anime["id"])
                if anime is None:
                    anime = Anime(quarter=quarter, year=year, **record.anime)
                    session.add(anime)
                    await session.flush()
                else:
                    logger.debug(
                        f"番剧 {anime.id} 已存在于 {anime.quarter} {anime.year}，只更新剧集"
                    )
                    if anime.anidb_id is None and record.anime.get("anidb_id"):
                        anime.anidb_id = record.anime["anidb_id"]

                result = await session.execute(select(Episode).where(Episode.anime_id == anime.id))
                existing = {e.episode_number: e for e in result.scalars().all()}
                for number, airing_at in record.episodes:
                    episode = existing.get(number)
                    if episode is None:
                        session.add(
                            Episode(anime_id=anime.id, episode_number=number, airing_at=airing_at)
                        )
                    elif episode.airing_at is None:
                        episode.airing_at = airing_at
                await session.flush()

                stored_torrents += await self._add_torrents(session, anime.id, record.candidates)
                if record.alternative_title:
                    await self._add_alternative_titles(
                        session, anime.id, [record.alternative_title]
                    )

            query = await session.get(QuarterQuery, (quarter, year))
            if query is None:
                session.add(QuarterQuery(quarter=quarter, year=year, last_fetched=datetime.now()))
            else:
                query.last_fetched = datetime.now()

            await session.commit()

        logger.info(f"{quarter} {year} 已保存 {len(records)} 部番剧，{stored_torrents} 个种子")
        return stored_torrents

    # ------------------------------------------------------------------
    # 自动下载
    # ------------------------------------------------------------------

    async def find_download_candidates(
        self, now: Optional[datetime] = None
    ) -> list[DownloadCandidate]:
        """
        已开播、尚无下载文件的剧集，每集挑选启用字幕组中最新的种子
        """
        now = now or datetime.now()
        async with self._db.session() as session:
            result = await session.execute(
                select(Anime, Episode)
                .join(Episode, Episode.anime_id == Anime.id)
                .where(
                    Anime.autodownload.is_(True),
                    Episode.airing_at.is_not(None),
                    Episode.airing_at <= now,
                )
                .order_by(Anime.id, Episode.episode_number)
            )
            pairs = result.all()
            if not pairs:
                return []

            result = await session.execute(
                select(Torrent.episode_id)
                .join(FileDownload, FileDownload.torrent_id == Torrent.id)
            )
            downloaded_episodes = set(result.scalars().all())

            result = await session.execute(select(SubGroup.id, SubGroup.default_enabled))
            group_defaults = {row.id: row.default_enabled for row in result}

            anime_ids = {anime.id for anime, _ in pairs}
            result = await session.execute(
                select(AnimeSubGroup).where(AnimeSubGroup.anime_id.in_(anime_ids))
            )
            overrides = {
                (o.anime_id, o.sub_group_id): o.enabled for o in result.scalars().all()
            }

            candidates = []
            for anime, episode in pairs:
                if episode.id in downloaded_episodes:
                    continue

                result = await session.execute(
                    select(Torrent)
                    .where(Torrent.episode_id == episode.id)
                    .order_by(Torrent.date.desc())
                )
                for torrent in result.scalars().all():
                    group_id = torrent.sub_group_id
                    if group_id is not None:
                        enabled = overrides.get(
                            (anime.id, group_id), group_defaults.get(group_id, True)
                        )
                        if not enabled:
                            continue
                    candidates.append(
                        DownloadCandidate(
                            anime_id=anime.id,
                            anime_title=anime.display_title,
                            episode_number=episode.episode_number,
                            torrent_id=torrent.id,
                            link=torrent.link,
                        )
                    )
                    break

        return candidates

    # ------------------------------------------------------------------
    # 文件记录
    # ------------------------------------------------------------------

    async def upsert_file_download(self, torrent_id: int, file_path: str, file_name: str) -> None:
        """按路径、再按种子 id 查找已有记录，存在则更新，否则新增"""
        async with self._db.session() as session:
            result = await session.execute(
                select(FileDownload).where(FileDownload.file_path == file_path)
            )
            record = result.scalar_one_or_none()
            if record is None:
                result = await session.execute(
                    select(FileDownload).where(FileDownload.torrent_id == torrent_id)
                )
                record = result.scalar_one_or_none()

            if record is None:
                session.add(
                    FileDownload(torrent_id=torrent_id, file_path=file_path, file_name=file_name)
                )
            else:
                record.torrent_id = torrent_id
                record.file_path = file_path
                record.file_name = file_name
            await session.commit()

    async def list_file_downloads(self) -> list[FileDownload]:
        async with self._db.session() as session:
            result = await session.execute(select(FileDownload).order_by(FileDownload.id))
            return list(result.scalars().all())

    async def apply_folder_mappings(
        self, stale_ids: list[int], new_mappings: list[tuple[int, str, str]]
    ) -> None:
        """目录扫描结果：删除失效映射并写入新映射（torrent_id, file_path, file_name）"""
        async with self._db.session() as session:
            if stale_ids:
                await session.execute(delete(FileDownload).where(FileDownload.id.in_(stale_ids)))
            for torrent_id, file_path, file_name in new_mappings:
                session.add(
                    FileDownload(torrent_id=torrent_id, file_path=file_path, file_name=file_name)
                )
            await session.commit()

    # ------------------------------------------------------------------
    # 用户配置
    # ------------------------------------------------------------------

    async def get_configuration(self) -> Configuration:
        async with self._db.session() as session:
            configuration = await session.get(Configuration, 1)
            if configuration is None:
                configuration = Configuration(id=1)
                session.add(configuration)
                await session.commit()
            return configuration

    async def update_configuration(self, **fields) -> Configuration:
        unknown = set(fields) - set(CONFIGURATION_FIELDS)
        if unknown:
            raise ValueError(f"未知的配置项: {', '.join(sorted(unknown))}")

        async with self._db.session() as session:
            configuration = await session.get(Configuration, 1)
            if configuration is None:
                configuration = Configuration(id=1)
                session.add(configuration)
            for key, value in fields.items():
                setattr(configuration, key, value)
            await session.commit()
            return configuration

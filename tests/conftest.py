"""
@description 测试公共夹具
@responsibility 提供临时数据库、目录存取服务、假的 BT 客户端和测试数据构造函数
"""

import asyncio
from datetime import datetime
from typing import Optional

import pytest_asyncio

from app.core.database import Database
from app.models.anime import Anime, Episode
from app.models.torrent import SubGroup, Torrent
from app.services.catalog import CatalogStore
from app.services.torrent_client import TransferEvent, TransferEventKind, TransferStats


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await database.init_db()
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def catalog(db):
    return CatalogStore(db)


async def add_anime(db: Database, anime_id: int = 1, **fields) -> Anime:
    values = {
        "quarter": "Q1",
        "year": 2024,
        "title_romaji": "Tougen Anki",
        "season": 1,
    }
    values.update(fields)
    async with db.session() as session:
        anime = Anime(id=anime_id, **values)
        session.add(anime)
        await session.commit()
        return anime


async def add_episode(
    db: Database, anime_id: int, number: int, airing_at: Optional[datetime] = None
) -> Episode:
    async with db.session() as session:
        episode = Episode(anime_id=anime_id, episode_number=number, airing_at=airing_at)
        session.add(episode)
        await session.commit()
        return episode


async def add_sub_group(
    db: Database, name: str, anidb_id: Optional[int] = None, default_enabled: bool = True
) -> SubGroup:
    async with db.session() as session:
        group = SubGroup(name=name, anidb_id=anidb_id, default_enabled=default_enabled)
        session.add(group)
        await session.commit()
        return group


async def add_torrent(
    db: Database,
    episode: Episode,
    link: str,
    title: str = "[SubsPlease] Tougen Anki - 01 (1080p)",
    date: Optional[datetime] = None,
    sub_group_id: Optional[int] = None,
) -> Torrent:
    async with db.session() as session:
        torrent = Torrent(
            episode_id=episode.id,
            sub_group_id=sub_group_id,
            title=title,
            link=link,
            date=date or datetime(2024, 1, 1),
            episode_number=episode.episode_number,
            season_number=1,
        )
        session.add(torrent)
        await session.commit()
        return torrent


class FakeTransferClient:
    """内存中的 BT 客户端，记录调用并允许测试直接投递事件"""

    def __init__(self, files: Optional[dict] = None):
        self.events: asyncio.Queue = asyncio.Queue()
        self.added: list[tuple[str, str, bool]] = []
        self.paused: set[str] = set()
        self.resumed: list[str] = []
        self.rechecked: list[str] = []
        self.removed: list[str] = []
        self.rate_limits: Optional[tuple] = None
        self.closed = False
        self._files = files or {}
        self._counter = 0

    async def add(self, source: str, save_path: str, paused: bool = False) -> str:
        self._counter += 1
        info_hash = f"{self._counter:040x}"
        self.added.append((source, save_path, paused))
        if paused:
            self.paused.add(info_hash)
        return info_hash

    async def pause(self, info_hash: str) -> None:
        self.paused.add(info_hash)

    async def resume(self, info_hash: str) -> None:
        self.paused.discard(info_hash)
        self.resumed.append(info_hash)

    async def recheck(self, info_hash: str) -> None:
        self.rechecked.append(info_hash)

    async def remove(self, info_hash: str) -> None:
        self.removed.append(info_hash)

    def stats(self, info_hash: str) -> TransferStats:
        return TransferStats(progress=0.5, download_rate=1024, upload_rate=128, name=f"name-{info_hash[-4:]}")

    def files(self, info_hash: str) -> list[str]:
        return list(self._files.get(info_hash, []))

    def set_files(self, info_hash: str, files: list[str]) -> None:
        self._files[info_hash] = files

    def set_rate_limits(self, download: Optional[int], upload: Optional[int]) -> None:
        self.rate_limits = (download, upload)

    async def close(self) -> None:
        self.closed = True


def event(kind: TransferEventKind, info_hash: str, error: Optional[str] = None) -> TransferEvent:
    return TransferEvent(kind=kind, info_hash=info_hash, error=error)

"""
@description 番剧目录存取服务测试
@responsibility 验证缓存有效期、种子去重、字幕组启用规则、自动下载候选和用户配置
"""

from datetime import datetime, timedelta

import pytest

from app.services.catalog_refresher import QuarterRecord
from app.services.release_scanner import ReleaseCandidate
from conftest import add_anime, add_episode, add_sub_group, add_torrent


def candidate(link: str, episode: int = 1, **fields) -> ReleaseCandidate:
    values = {
        "title": f"[SubsPlease] Tougen Anki - {episode:02d} (1080p)",
        "link": link,
        "date": datetime(2024, 1, episode),
        "episode": episode,
        "season": 1,
    }
    values.update(fields)
    return ReleaseCandidate(**values)


class TestMetadataCache:
    @pytest.mark.asyncio
    async def test_ttl_hit_and_miss(self, catalog):
        """7 天有效期：第 6 天命中，第 8 天失效"""
        written = datetime(2024, 1, 1, 12, 0)
        url = "https://anidb.net/anime/?adb.search=Tougen&do.search=1"
        await catalog.store_cache_entry(url, anidb_id=18000, now=written)

        hit = await catalog.get_cache_entry(url, timedelta(days=7), now=written + timedelta(days=6))
        assert hit is not None
        assert hit.anidb_id == 18000

        miss = await catalog.get_cache_entry(url, timedelta(days=7), now=written + timedelta(days=8))
        assert miss is None

    @pytest.mark.asyncio
    async def test_negative_entry_is_cached(self, catalog):
        url = "https://anidb.net/group/?adb.search=Nobody&do.search=1"
        await catalog.store_cache_entry(url)

        entry = await catalog.get_cache_entry(url, timedelta(days=7))
        assert entry is not None
        assert entry.anidb_id is None

    @pytest.mark.asyncio
    async def test_overwrite(self, catalog):
        url = "https://anidb.net/group/1/anime/2/release"
        await catalog.store_cache_entry(url, html="<html>old</html>")
        await catalog.store_cache_entry(url, html="<html>new</html>")

        entry = await catalog.get_cache_entry(url, timedelta(hours=6))
        assert entry.html == "<html>new</html>"


class TestSaveTorrents:
    @pytest.mark.asyncio
    async def test_rescan_is_idempotent(self, db, catalog):
        """同一批结果保存两次不会产生重复种子"""
        await add_anime(db)
        batch = [candidate("https://nyaa.si/download/1.torrent", 1),
                 candidate("https://nyaa.si/download/2.torrent", 2)]

        first = await catalog.save_torrents(1, batch)
        second = await catalog.save_torrents(1, batch)

        assert first["torrents_found"] == 2
        assert second["torrents_found"] == 0
        assert len(await catalog.list_torrent_titles()) == 2
        assert await catalog.has_torrents(1)

    @pytest.mark.asyncio
    async def test_duplicate_links_in_one_batch(self, db, catalog):
        await add_anime(db)
        batch = [candidate("https://nyaa.si/download/1.torrent", 1),
                 candidate("https://nyaa.si/download/1.torrent", 1)]

        result = await catalog.save_torrents(1, batch)

        assert result["torrents_found"] == 1

    @pytest.mark.asyncio
    async def test_candidates_without_episode_skipped(self, db, catalog):
        await add_anime(db)
        result = await catalog.save_torrents(
            1, [candidate("https://nyaa.si/download/1.torrent", 1, episode=None)]
        )
        assert result["torrents_found"] == 0

    @pytest.mark.asyncio
    async def test_wipe_previous(self, db, catalog):
        await add_anime(db)
        await catalog.save_torrents(1, [candidate("https://nyaa.si/download/1.torrent", 1)])

        result = await catalog.save_torrents(
            1, [candidate("https://nyaa.si/download/9.torrent", 1)], wipe_previous=True
        )

        assert result == {"torrents_found": 1, "deleted_count": 1}
        titles = await catalog.list_torrent_titles()
        assert len(titles) == 1

        anime = await catalog.get_anime(1)
        assert anime.last_torrent_scan is not None


class TestSubGroups:
    @pytest.mark.asyncio
    async def test_ensure_sub_group(self, catalog):
        group = await catalog.ensure_sub_group("SubsPlease")
        assert group.anidb_id is None

        updated = await catalog.ensure_sub_group("SubsPlease", 15000)
        assert updated.id == group.id
        assert updated.anidb_id == 15000

    @pytest.mark.asyncio
    async def test_enabled_resolution(self, db, catalog):
        """番剧级别设置优先，其次字幕组默认值"""
        await add_anime(db)
        enabled_group = await add_sub_group(db, "SubsPlease")
        disabled_group = await add_sub_group(db, "Bad-Group", default_enabled=False)

        assert await catalog.is_sub_group_enabled(1, enabled_group.id) is True
        assert await catalog.is_sub_group_enabled(1, disabled_group.id) is False
        assert await catalog.is_sub_group_enabled(1, None) is True

        await catalog.set_anime_sub_group_enabled(1, disabled_group.id, True)
        await catalog.set_anime_sub_group_enabled(1, enabled_group.id, False)

        assert await catalog.is_sub_group_enabled(1, disabled_group.id) is True
        assert await catalog.is_sub_group_enabled(1, enabled_group.id) is False


class TestDownloadCandidates:
    @pytest.mark.asyncio
    async def test_newest_enabled_torrent_per_aired_episode(self, db, catalog):
        now = datetime(2024, 2, 1)
        await add_anime(db, autodownload=True)
        await add_anime(db, anime_id=2, title_romaji="Not Tracked")
        disabled = await add_sub_group(db, "Bad-Group", default_enabled=False)
        good = await add_sub_group(db, "SubsPlease")

        aired = await add_episode(db, 1, 1, airing_at=datetime(2024, 1, 10))
        future = await add_episode(db, 1, 2, airing_at=datetime(2024, 3, 1))
        untracked = await add_episode(db, 2, 1, airing_at=datetime(2024, 1, 10))

        await add_torrent(db, aired, "link-old", date=datetime(2024, 1, 10), sub_group_id=good.id)
        await add_torrent(db, aired, "link-new", date=datetime(2024, 1, 11), sub_group_id=good.id)
        await add_torrent(db, aired, "link-newest-disabled", date=datetime(2024, 1, 12),
                          sub_group_id=disabled.id)
        await add_torrent(db, future, "link-future")
        await add_torrent(db, untracked, "link-untracked")

        candidates = await catalog.find_download_candidates(now=now)

        assert [c.link for c in candidates] == ["link-new"]
        assert candidates[0].episode_number == 1
        assert candidates[0].anime_title == "Tougen Anki"

    @pytest.mark.asyncio
    async def test_downloaded_episode_excluded(self, db, catalog):
        await add_anime(db, autodownload=True)
        episode = await add_episode(db, 1, 1, airing_at=datetime(2024, 1, 10))
        torrent = await add_torrent(db, episode, "link-1")
        await catalog.upsert_file_download(torrent.id, "/anime/ep1.mkv", "ep1.mkv")

        assert await catalog.find_download_candidates(now=datetime(2024, 2, 1)) == []


class TestFileDownloads:
    @pytest.mark.asyncio
    async def test_upsert_by_path_then_torrent(self, catalog):
        await catalog.upsert_file_download(1, "/anime/a.mkv", "a.mkv")
        await catalog.upsert_file_download(1, "/anime/moved/a.mkv", "a.mkv")
        await catalog.upsert_file_download(2, "/anime/moved/a.mkv", "a.mkv")

        records = await catalog.list_file_downloads()
        assert len(records) == 1
        assert records[0].torrent_id == 2
        assert records[0].file_path == "/anime/moved/a.mkv"

    @pytest.mark.asyncio
    async def test_apply_folder_mappings(self, catalog):
        await catalog.upsert_file_download(1, "/anime/gone.mkv", "gone.mkv")
        stale = (await catalog.list_file_downloads())[0]

        await catalog.apply_folder_mappings([stale.id], [(2, "/anime/b.mkv", "b.mkv")])

        records = await catalog.list_file_downloads()
        assert [(r.torrent_id, r.file_path) for r in records] == [(2, "/anime/b.mkv")]


class TestQuarters:
    @pytest.mark.asyncio
    async def test_store_quarter_keeps_existing_anime(self, db, catalog):
        await add_anime(db, anime_id=7, quarter="Q4", year=2023, title_romaji="Long Runner")
        records = [
            QuarterRecord(
                anime={"id": 7, "title_romaji": "Long Runner", "season": 1, "anidb_id": 99},
                episodes=[(1, datetime(2024, 1, 1)), (2, datetime(2024, 1, 8))],
                candidates=[candidate("link-7-1", 1)],
                alternative_title="Runner",
            ),
            QuarterRecord(
                anime={"id": 8, "title_romaji": "New Show", "season": 1},
                episodes=[(1, None)],
            ),
        ]

        stored = await catalog.store_quarter("Q1", 2024, records)

        assert stored == 1
        existing = await catalog.get_anime(7)
        assert (existing.quarter, existing.year) == ("Q4", 2023)
        assert existing.anidb_id == 99
        created = await catalog.get_anime(8)
        assert (created.quarter, created.year) == ("Q1", 2024)
        assert await catalog.get_alternative_titles(7) == ["Runner"]
        assert await catalog.is_quarter_fresh("Q1", 2024, timedelta(days=14))
        assert not await catalog.is_quarter_fresh(
            "Q1", 2024, timedelta(days=14), now=datetime.now() + timedelta(days=15)
        )


class TestConfiguration:
    @pytest.mark.asyncio
    async def test_defaults_and_update(self, catalog):
        configuration = await catalog.get_configuration()
        assert configuration.anime_location is None
        assert configuration.enable_auto_download_episodes is False

        updated = await catalog.update_configuration(
            anime_location="/anime", max_download_rate=1_000_000
        )
        assert updated.anime_location == "/anime"
        assert updated.max_download_rate == 1_000_000

    @pytest.mark.asyncio
    async def test_unknown_field(self, catalog):
        with pytest.raises(ValueError):
            await catalog.update_configuration(color="blue")

"""
@description 种子扫描测试
@responsibility 验证名称筛选、季数筛选、CRC 修正、字幕组补全和增量扫描
"""

from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.core.config import IndexerConfig
from app.services.nyaa_client import IndexerItem
from app.services.release_scanner import ReleaseScanner, build_search_terms
from conftest import add_anime, add_sub_group


def item(title: str, number: int, day: int = 1) -> IndexerItem:
    return IndexerItem(
        title=title, link=f"https://nyaa.si/download/{number}.torrent", date=datetime(2024, 1, day)
    )


def make_scanner(catalog, items, crc_result=(None, None), group_id=None, **config):
    nyaa = MagicMock()
    nyaa.search = AsyncMock(return_value=items)
    anidb = MagicMock()
    anidb.get_group_id = AsyncMock(return_value=group_id)
    anidb.get_episode_by_crc = AsyncMock(return_value=crc_result)
    return ReleaseScanner(catalog, nyaa, anidb, IndexerConfig(**config)), nyaa, anidb


class TestBuildSearchTerms:
    def test_dedup_case_insensitive(self):
        terms = build_search_terms(["Tougen Anki", None, "桃源暗鬼"], ["tougen anki", " Tougen "])
        assert terms == ["Tougen Anki", "桃源暗鬼", "Tougen"]


class TestScanAnimeReleases:
    @pytest.mark.asyncio
    async def test_name_gate_rejects_other_shows(self, db, catalog):
        """集数合理但名称不匹配的结果不会保存"""
        await add_anime(db)
        scanner, _, _ = make_scanner(
            catalog,
            [
                item("[SubsPlease] Tougen Anki - 05 (1080p)", 1),
                item("[Group] Some Other Show - 05 (1080p)", 2),
            ],
        )

        result = await scanner.scan_anime_releases(1)

        assert result["torrents_found"] == 1
        titles = list((await catalog.list_torrent_titles()).values())
        assert titles == ["[SubsPlease] Tougen Anki - 05 (1080p)"]

    @pytest.mark.asyncio
    async def test_season_gate(self, db, catalog):
        await add_anime(db, title_romaji="Show", season=2)
        scanner, _, _ = make_scanner(
            catalog,
            [
                item("[Group] Show S02E03 [1080p]", 1),
                item("[Group] Show S01E03 [1080p]", 2),
            ],
        )

        candidates = await scanner.find_releases(await catalog.get_anime(1))

        assert [c.title for c in candidates] == ["[Group] Show S02E03 [1080p]"]
        assert candidates[0].episode == 3
        assert candidates[0].season == 2

    @pytest.mark.asyncio
    async def test_crc_overrides_episode_and_bypasses_season_gate(self, db, catalog):
        await add_anime(db, anidb_id=18000, season=2)
        await add_sub_group(db, "SubsPlease", anidb_id=15000)
        scanner, _, anidb = make_scanner(
            catalog,
            [item("[SubsPlease] Tougen Anki - 17 (1080p) [ABCD1234].mkv", 1)],
            crc_result=(5, None),
        )

        candidates = await scanner.find_releases(await catalog.get_anime(1))

        anidb.get_episode_by_crc.assert_awaited_once_with(15000, 18000, "ABCD1234")
        assert len(candidates) == 1
        assert candidates[0].episode == 5
        assert candidates[0].resolved_by_crc is True

    @pytest.mark.asyncio
    async def test_sub_group_created_with_anidb_id(self, db, catalog):
        await add_anime(db)
        scanner, _, anidb = make_scanner(
            catalog,
            [
                item("[Erai-raws] Tougen Anki - 01 [1080p]", 1),
                item("[Erai-raws] Tougen Anki - 02 [1080p]", 2),
            ],
            group_id=777,
        )

        candidates = await scanner.find_releases(await catalog.get_anime(1))

        group = await catalog.get_sub_group("Erai-raws")
        assert group.anidb_id == 777
        assert {c.sub_group_id for c in candidates} == {group.id}
        # 同一次扫描内只查询一次
        anidb.get_group_id.assert_awaited_once_with("Erai-raws")

    @pytest.mark.asyncio
    async def test_results_sorted_newest_first_and_deduplicated(self, db, catalog):
        await add_anime(db, title_english="Tougen Anki")
        scanner, nyaa, _ = make_scanner(
            catalog,
            [
                item("[SubsPlease] Tougen Anki - 01 (1080p)", 1, day=1),
                item("[SubsPlease] Tougen Anki - 02 (1080p)", 2, day=8),
            ],
        )

        candidates = await scanner.find_releases(await catalog.get_anime(1))

        # 两个标题相同，只搜索一次
        assert nyaa.search.await_count == 1
        assert [c.episode for c in candidates] == [2, 1]

    @pytest.mark.asyncio
    async def test_second_scan_is_shallow_and_idempotent(self, db, catalog):
        await add_anime(db)
        items = [item("[SubsPlease] Tougen Anki - 01 (1080p)", 1)]
        scanner, nyaa, _ = make_scanner(catalog, items, shallow_scan_pages=1)

        first = await scanner.scan_anime_releases(1)
        second = await scanner.scan_anime_releases(1)

        assert first["torrents_found"] == 1
        assert second["torrents_found"] == 0
        assert nyaa.search.await_args_list[0].kwargs["max_pages"] is None
        assert nyaa.search.await_args_list[1].kwargs["max_pages"] == 1

    @pytest.mark.asyncio
    async def test_unknown_anime(self, catalog):
        scanner, _, _ = make_scanner(catalog, [])
        with pytest.raises(LookupError):
            await scanner.scan_anime_releases(404)

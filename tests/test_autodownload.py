"""
@description 自动下载测试
@responsibility 验证扫描任务投递、开关检查以及已播出剧集的下载
"""

from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from app.models.task import TaskType
from app.services.autodownload import AutoDownloadService
from app.services.download_manager import DownloadManager
from app.tasks.task_queue import TaskQueue
from conftest import FakeTransferClient, add_anime, add_episode, add_sub_group, add_torrent


@pytest_asyncio.fixture
async def setup(db, catalog, tmp_path):
    client = FakeTransferClient()
    download_manager = DownloadManager(client, catalog)
    task_queue = TaskQueue(db)
    await catalog.update_configuration(
        anime_location=str(tmp_path), enable_auto_download_episodes=True
    )
    yield AutoDownloadService(catalog, task_queue, download_manager), task_queue, client
    await download_manager.stop()


class TestScanCandidates:
    @pytest.mark.asyncio
    async def test_schedules_scan_per_autodownload_anime(self, db, setup):
        service, task_queue, _ = setup
        await add_anime(db, 1, autodownload=True)
        await add_anime(db, 2, title_romaji="Other")
        await add_anime(db, 3, title_romaji="Third", autodownload=True)

        result = await service.scan_candidates()

        assert result["scheduled"] == 2
        tasks = await task_queue.list_tasks()
        assert {t.anime_id for t in tasks} == {1, 3}
        assert {t.type for t in tasks} == {TaskType.SCAN_RELEASES.value}


class TestQueueDownloads:
    @pytest.mark.asyncio
    async def test_disabled(self, catalog, setup):
        service, _, client = setup
        await catalog.update_configuration(enable_auto_download_episodes=False)

        result = await service.queue_downloads()

        assert result["skipped"] is True
        assert client.added == []

    @pytest.mark.asyncio
    async def test_downloads_aired_episodes_once(self, db, setup):
        service, _, client = setup
        await add_anime(db, autodownload=True)
        aired = await add_episode(db, 1, 1, airing_at=datetime.now() - timedelta(days=1))
        upcoming = await add_episode(db, 1, 2, airing_at=datetime.now() + timedelta(days=6))
        blocked = await add_sub_group(db, "Blocked", default_enabled=False)
        await add_torrent(db, aired, "https://nyaa.si/download/1.torrent",
                          date=datetime(2024, 1, 1))
        await add_torrent(db, aired, "https://nyaa.si/download/2.torrent",
                          date=datetime(2024, 1, 2), sub_group_id=blocked.id)
        await add_torrent(db, upcoming, "https://nyaa.si/download/3.torrent")

        first = await service.queue_downloads()
        second = await service.queue_downloads()

        assert first["candidates"] == 1
        assert first["started"] == 1
        assert first["skipped"] is False
        assert [added[0] for added in client.added] == ["https://nyaa.si/download/1.torrent"]
        # 已在下载中的不会重复开始
        assert second["started"] == 0
        assert len(client.added) == 1

    @pytest.mark.asyncio
    async def test_missing_location_fails_task(self, db, catalog, setup):
        service, _, _ = setup
        await catalog.update_configuration(anime_location=None)
        await add_anime(db, autodownload=True)
        aired = await add_episode(db, 1, 1, airing_at=datetime.now() - timedelta(days=1))
        await add_torrent(db, aired, "https://nyaa.si/download/1.torrent")

        with pytest.raises(ValueError):
            await service.queue_downloads()

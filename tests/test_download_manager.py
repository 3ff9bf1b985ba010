"""
@description 下载管理器测试
@responsibility 验证同时下载上限、排队恢复、去重、完成后移动文件与记录、限速应用
"""

import os
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from app.services.download_manager import STAGING_DIR_NAME, DownloadManager
from app.services.torrent_client import TransferEventKind
from conftest import FakeTransferClient, event


@pytest_asyncio.fixture
async def client():
    return FakeTransferClient()


@pytest_asyncio.fixture
async def manager(catalog, client, tmp_path):
    await catalog.update_configuration(anime_location=str(tmp_path / "anime"))
    download_manager = DownloadManager(client, catalog, max_active=3)
    yield download_manager
    await download_manager.stop()


class TestConcurrencyCeiling:
    @pytest.mark.asyncio
    async def test_fourth_transfer_queued_until_one_completes(self, manager, client):
        transfers = [await manager.download(f"magnet:?dn={i}") for i in range(4)]

        assert [t.status for t in transfers[:3]] == ["initializing"] * 3
        assert transfers[3].status == "queued"
        assert client.added[3][2] is True
        assert manager.active_count() == 3

        await manager.handle_event(event(TransferEventKind.DONE, transfers[0].info_hash))

        assert transfers[0].status == "completed"
        assert transfers[3].status != "queued"
        assert client.resumed == [transfers[3].info_hash]
        assert manager.active_count() == 3

    @pytest.mark.asyncio
    async def test_error_frees_a_slot(self, manager, client):
        transfers = [await manager.download(f"magnet:?dn={i}") for i in range(5)]

        await manager.handle_event(event(TransferEventKind.ERROR, transfers[1].info_hash, "tracker 不可用"))

        assert transfers[1].status == "error"
        assert transfers[1].error == "tracker 不可用"
        # 按加入顺序恢复
        assert client.resumed == [transfers[3].info_hash]
        assert transfers[4].status == "queued"

    @pytest.mark.asyncio
    async def test_remove_resumes_queued(self, manager, client):
        transfers = [await manager.download(f"magnet:?dn={i}") for i in range(4)]

        assert await manager.remove(transfers[0].info_hash) is True

        assert client.removed == [transfers[0].info_hash]
        assert manager.get_status(transfers[0].info_hash) is None
        assert client.resumed == [transfers[3].info_hash]
        assert await manager.remove("missing") is False


class TestDownload:
    @pytest.mark.asyncio
    async def test_same_source_or_torrent_registered_once(self, manager, client):
        first = await manager.download("https://nyaa.si/download/1.torrent", torrent_id=1)
        again = await manager.download("https://nyaa.si/download/1.torrent")
        by_torrent = await manager.download("https://mirror/1.torrent", torrent_id=1)

        assert first is again is by_torrent
        assert len(client.added) == 1
        assert manager.get_status(1) is first
        assert manager.get_status("https://nyaa.si/download/1.torrent") is first

    @pytest.mark.asyncio
    async def test_magnet_hash_lookup(self, manager, client):
        transfer = await manager.download("magnet:?xt=urn:btih:" + "0" * 39 + "1&dn=x")
        magnet_again = "magnet:?xt=urn:btih:" + "0" * 39 + "1&dn=other"

        assert await manager.download(magnet_again) is transfer
        assert len(client.added) == 1

    @pytest.mark.asyncio
    async def test_staging_under_save_path(self, manager, client, tmp_path):
        transfer = await manager.download("magnet:?dn=a", anime_title="Tougen Anki")

        assert transfer.save_path == str(tmp_path / "anime")
        assert transfer.staging_path == str(tmp_path / "anime" / STAGING_DIR_NAME)
        assert client.added[0][1] == transfer.staging_path
        assert os.path.isdir(transfer.staging_path)

    @pytest.mark.asyncio
    async def test_folder_classification(self, manager, catalog, tmp_path):
        await catalog.update_configuration(enable_automatic_anime_folder_classification=True)

        transfer = await manager.download("magnet:?dn=a", anime_title="Re:Zero / Season 3")

        assert transfer.save_path == str(tmp_path / "anime" / "Re Zero Season 3")

    @pytest.mark.asyncio
    async def test_missing_location(self, catalog, client):
        download_manager = DownloadManager(client, catalog)
        with pytest.raises(ValueError):
            await download_manager.download("magnet:?dn=a")


class TestEvents:
    @pytest.mark.asyncio
    async def test_done_moves_files_and_records(self, manager, client, catalog, tmp_path):
        transfer = await manager.download("magnet:?dn=a", anime_id=1, torrent_id=42)
        client.set_files(transfer.info_hash, ["[SubsPlease] Show - 01.mkv"])
        staged = tmp_path / "anime" / STAGING_DIR_NAME / "[SubsPlease] Show - 01.mkv"
        staged.write_bytes(b"video")

        await manager.handle_event(event(TransferEventKind.DONE, transfer.info_hash))

        final = tmp_path / "anime" / "[SubsPlease] Show - 01.mkv"
        assert final.read_bytes() == b"video"
        assert not (tmp_path / "anime" / STAGING_DIR_NAME).exists()
        records = await catalog.list_file_downloads()
        assert [(r.torrent_id, r.file_path) for r in records] == [(42, str(final))]
        assert transfer.progress == 1.0
        assert client.removed == [transfer.info_hash]

    @pytest.mark.asyncio
    async def test_catalog_failure_still_cleans_up_and_resumes(
        self, manager, client, catalog, tmp_path
    ):
        transfers = [
            await manager.download(f"magnet:?dn={i}", anime_id=1, torrent_id=10 + i) for i in range(4)
        ]
        client.set_files(transfers[0].info_hash, ["Show - 01.mkv", "Show - 02.mkv"])
        staging = tmp_path / "anime" / STAGING_DIR_NAME
        (staging / "Show - 01.mkv").write_bytes(b"one")
        (staging / "Show - 02.mkv").write_bytes(b"two")

        failing = AsyncMock(side_effect=RuntimeError("database is locked"))
        with patch.object(catalog, "upsert_file_download", failing):
            await manager.handle_event(event(TransferEventKind.DONE, transfers[0].info_hash))

        # 每个文件都尝试记录，单个失败不影响其它文件
        assert failing.await_count == 2
        assert (tmp_path / "anime" / "Show - 01.mkv").read_bytes() == b"one"
        assert (tmp_path / "anime" / "Show - 02.mkv").read_bytes() == b"two"
        assert not staging.exists()
        assert transfers[0].status == "completed"
        assert client.resumed == [transfers[3].info_hash]

    @pytest.mark.asyncio
    async def test_ready_rechecks_staged_data(self, manager, client, tmp_path):
        transfer = await manager.download("magnet:?dn=a")
        client.set_files(transfer.info_hash, ["ep.mkv"])
        (tmp_path / "anime" / STAGING_DIR_NAME / "ep.mkv").write_bytes(b"part")

        await manager.handle_event(event(TransferEventKind.READY, transfer.info_hash))

        assert transfer.status == "downloading"
        assert transfer.name == f"name-{transfer.info_hash[-4:]}"
        assert client.rechecked == [transfer.info_hash]

    @pytest.mark.asyncio
    async def test_ready_without_staged_data(self, manager, client):
        transfer = await manager.download("magnet:?dn=a")
        client.set_files(transfer.info_hash, ["ep.mkv"])

        await manager.handle_event(event(TransferEventKind.READY, transfer.info_hash))

        assert client.rechecked == []

    @pytest.mark.asyncio
    async def test_coordinator_consumes_event_queue(self, manager, client):
        await manager.start()
        transfer = await manager.download("magnet:?dn=a")

        client.events.put_nowait(event(TransferEventKind.PROGRESS, transfer.info_hash))
        client.events.put_nowait(event(TransferEventKind.PROGRESS, "unknown-hash"))
        await client.events.join()

        assert transfer.progress == 0.5
        assert transfer.download_rate == 1024
        assert transfer.to_dict()["status"] == "initializing"


class TestRateLimits:
    @pytest.mark.asyncio
    async def test_zero_means_unlimited(self, manager, client, catalog):
        await catalog.update_configuration(max_download_rate=1_000_000, max_upload_rate=0)

        await manager.apply_rate_limits()

        assert client.rate_limits == (1_000_000, None)

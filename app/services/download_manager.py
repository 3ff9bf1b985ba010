"""
@description 下载管理器
@responsibility 管理 BT 下载的生命周期：限制同时下载数、排队恢复、完成后移动文件并记录

所有下载状态的变化都来自客户端的事件队列，由唯一的协调协程顺序处理。
"""

import asyncio
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from app.services.catalog import CatalogStore
from app.services.torrent_client import (
    TransferClient,
    TransferEvent,
    TransferEventKind,
    staged_data_exists,
)
from app.utils.helpers import parse_info_hash_from_magnet, sanitize_folder_name

STAGING_DIR_NAME = ".incomplete"


@dataclass
class ActiveTransfer:
    info_hash: str
    source: str
    save_path: str
    staging_path: str
    anime_id: Optional[int] = None
    torrent_id: Optional[int] = None
    name: Optional[str] = None
    paused: bool = False
    ready: bool = False
    done: bool = False
    progress: float = 0.0
    download_rate: int = 0
    upload_rate: int = 0
    error: Optional[str] = None

    @property
    def status(self) -> str:
        if self.error:
            return "error"
        if self.done:
            return "completed"
        if self.paused:
            return "queued"
        if not self.ready:
            return "initializing"
        return "downloading"

    @property
    def is_active(self) -> bool:
        return not self.paused and not self.done and self.error is None

    def to_dict(self) -> dict:
        return {
            "info_hash": self.info_hash,
            "source": self.source,
            "name": self.name,
            "anime_id": self.anime_id,
            "torrent_id": self.torrent_id,
            "save_path": self.save_path,
            "status": self.status,
            "progress": round(self.progress, 4),
            "download_rate": self.download_rate,
            "upload_rate": self.upload_rate,
            "error": self.error,
        }


class DownloadManager:
    """下载管理器，进程内唯一，在 main.py 的 lifespan 中创建"""

    def __init__(self, client: TransferClient, catalog: CatalogStore, max_active: int = 3):
        self._client = client
        self._catalog = catalog
        self._max_active = max_active
        # 按加入顺序保存，恢复排队下载时按此顺序
        self._transfers: dict[str, ActiveTransfer] = {}
        self._keys: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._coordinator: Optional[asyncio.Task] = None

    async def start(self) -> None:
        await self.apply_rate_limits()
        if self._coordinator is None or self._coordinator.done():
            self._coordinator = asyncio.create_task(self._coordinate())
        logger.info("下载管理器已启动")

    async def stop(self) -> None:
        if self._coordinator is not None:
            self._coordinator.cancel()
            try:
                await self._coordinator
            except asyncio.CancelledError:
                pass
            self._coordinator = None
        await self._client.close()
        logger.info("下载管理器已停止")

    # ------------------------------------------------------------------
    # 对外接口
    # ------------------------------------------------------------------

    async def download(
        self,
        source: str,
        anime_title: Optional[str] = None,
        anime_id: Optional[int] = None,
        torrent_id: Optional[int] = None,
    ) -> ActiveTransfer:
        """
        开始下载

        同一来源只会注册一次；活动下载数已达上限时以暂停状态加入，
        等待前面的下载完成后按加入顺序恢复。
        """
        configuration = await self._catalog.get_configuration()
        if not configuration.anime_location:
            raise ValueError("未配置下载目录 (anime_location)")

        save_path = Path(configuration.anime_location)
        if configuration.enable_automatic_anime_folder_classification and anime_title:
            save_path = save_path / sanitize_folder_name(anime_title)
        staging_path = save_path / STAGING_DIR_NAME

        async with self._lock:
            existing = self._find(source, torrent_id)
            if existing is not None:
                logger.debug(f"下载已存在: {existing.name or source}")
                return existing

            await asyncio.to_thread(staging_path.mkdir, parents=True, exist_ok=True)

            paused = self.active_count() >= self._max_active
            info_hash = await self._client.add(source, str(staging_path), paused=paused)

            if info_hash in self._transfers:
                transfer = self._transfers[info_hash]
            else:
                transfer = ActiveTransfer(
                    info_hash=info_hash,
                    source=source,
                    save_path=str(save_path),
                    staging_path=str(staging_path),
                    anime_id=anime_id,
                    torrent_id=torrent_id,
                    paused=paused,
                )
                self._transfers[info_hash] = transfer

            self._keys[source] = info_hash
            if torrent_id is not None:
                self._keys[str(torrent_id)] = info_hash

        if paused:
            logger.info(f"已有 {self._max_active} 个下载进行中，新下载排队等待: {source}")
        else:
            logger.info(f"开始下载: {source} -> {save_path}")
        return transfer

    def get_status(self, key) -> Optional[ActiveTransfer]:
        """按种子 id、来源链接或 info_hash 查询"""
        key = str(key)
        info_hash = self._keys.get(key, key)
        return self._transfers.get(info_hash)

    def list_transfers(self) -> list[ActiveTransfer]:
        return list(self._transfers.values())

    def active_count(self) -> int:
        return sum(1 for t in self._transfers.values() if t.is_active)

    async def remove(self, key) -> bool:
        transfer = self.get_status(key)
        if transfer is None:
            return False

        if not transfer.done:
            await self._client.remove(transfer.info_hash)
        self._forget(transfer)
        logger.info(f"已移除下载: {transfer.name or transfer.source}")
        await self._resume_next()
        return True

    async def apply_rate_limits(self) -> None:
        """读取用户配置并应用上传/下载限速，None 或 0 表示不限速"""
        configuration = await self._catalog.get_configuration()
        download = configuration.max_download_rate or None
        upload = configuration.max_upload_rate or None
        self._client.set_rate_limits(download, upload)
        logger.info(f"限速已更新: 下载 {download or '不限'}，上传 {upload or '不限'}")

    # ------------------------------------------------------------------
    # 事件处理
    # ------------------------------------------------------------------

    async def _coordinate(self) -> None:
        while True:
            event = await self._client.events.get()
            try:
                await self.handle_event(event)
            except Exception as e:
                logger.error(f"处理下载事件 {event.kind} ({event.info_hash}) 出错: {e}")
            finally:
                self._client.events.task_done()

    async def handle_event(self, event: TransferEvent) -> None:
        transfer = self._transfers.get(event.info_hash)
        if transfer is None:
            return

        if event.kind == TransferEventKind.READY:
            await self._on_ready(transfer)
        elif event.kind == TransferEventKind.PROGRESS:
            self._refresh_stats(transfer)
        elif event.kind == TransferEventKind.DONE:
            await self._on_done(transfer)
        elif event.kind == TransferEventKind.ERROR:
            transfer.error = event.error or "下载失败"
            logger.error(f"下载出错 [{transfer.name or transfer.source}]: {transfer.error}")
            await self._resume_next()

    async def _on_ready(self, transfer: ActiveTransfer) -> None:
        transfer.ready = True
        self._refresh_stats(transfer)

        files = self._client.files(transfer.info_hash)
        if await asyncio.to_thread(staged_data_exists, transfer.staging_path, files):
            logger.info(f"发现已下载的部分数据，重新校验: {transfer.name or transfer.source}")
            await self._client.recheck(transfer.info_hash)

    async def _on_done(self, transfer: ActiveTransfer) -> None:
        if transfer.done:
            return
        transfer.done = True
        transfer.progress = 1.0
        transfer.download_rate = 0
        transfer.upload_rate = 0

        files = self._client.files(transfer.info_hash)
        await self._client.remove(transfer.info_hash)

        try:
            for relative in files:
                final_path = await asyncio.to_thread(
                    _move_into_place, transfer.staging_path, transfer.save_path, relative
                )
                if final_path is None or transfer.torrent_id is None:
                    continue
                try:
                    await self._catalog.upsert_file_download(
                        transfer.torrent_id, final_path, os.path.basename(final_path)
                    )
                except Exception as e:
                    logger.error(f"记录下载文件失败 {final_path}: {e}")
            logger.info(f"下载完成: {transfer.name or transfer.source} ({len(files)} 个文件)")
        finally:
            # 无论文件处理是否出错都清理暂存目录并恢复排队中的下载
            await asyncio.to_thread(_remove_empty_dirs, transfer.staging_path)
            await self._resume_next()

    async def _resume_next(self) -> None:
        if self.active_count() >= self._max_active:
            return
        for transfer in self._transfers.values():
            if transfer.paused and not transfer.done and transfer.error is None:
                await self._client.resume(transfer.info_hash)
                transfer.paused = False
                logger.info(f"恢复排队中的下载: {transfer.name or transfer.source}")
                return

    def _refresh_stats(self, transfer: ActiveTransfer) -> None:
        stats = self._client.stats(transfer.info_hash)
        transfer.progress = stats.progress
        transfer.download_rate = stats.download_rate
        transfer.upload_rate = stats.upload_rate
        if stats.name:
            transfer.name = stats.name

    # ------------------------------------------------------------------

    def _find(self, source: str, torrent_id: Optional[int]) -> Optional[ActiveTransfer]:
        for key in (source, str(torrent_id) if torrent_id is not None else None):
            if key and key in self._keys:
                return self._transfers.get(self._keys[key])
        info_hash = parse_info_hash_from_magnet(source)
        if info_hash:
            return self._transfers.get(info_hash)
        return None

    def _forget(self, transfer: ActiveTransfer) -> None:
        self._transfers.pop(transfer.info_hash, None)
        for key in [k for k, v in self._keys.items() if v == transfer.info_hash]:
            del self._keys[key]


def _move_into_place(staging_path: str, save_path: str, relative: str) -> Optional[str]:
    source = Path(staging_path) / relative
    target = Path(save_path) / relative
    if not source.exists():
        logger.warning(f"暂存文件不存在，跳过: {source}")
        return None
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(target))
    except OSError as e:
        logger.error(f"移动文件失败 {source} -> {target}: {e}")
        return None
    return str(target)


def _remove_empty_dirs(staging_path: str) -> None:
    """自底向上删除暂存目录中的空目录，包括暂存目录本身"""
    root = Path(staging_path)
    if not root.exists():
        return
    for directory, _, _ in sorted(os.walk(root), key=lambda entry: len(entry[0]), reverse=True):
        try:
            os.rmdir(directory)
        except OSError:
            # 目录非空（其它下载还在使用）
            continue

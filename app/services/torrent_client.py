"""
@description BT 下载客户端适配层
@responsibility 定义下载管理器依赖的客户端接口，并提供基于 libtorrent 的实现

客户端把状态变化（ready / progress / done / error）放入 events 队列，
由下载管理器的协调协程统一处理。
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol

import httpx
from loguru import logger


class TransferEventKind(str, Enum):
    READY = "ready"
    PROGRESS = "progress"
    DONE = "done"
    ERROR = "error"


@dataclass
class TransferEvent:
    kind: TransferEventKind
    info_hash: str
    error: Optional[str] = None


@dataclass
class TransferStats:
    progress: float = 0.0
    download_rate: int = 0
    upload_rate: int = 0
    name: Optional[str] = None


class TransferClient(Protocol):
    events: asyncio.Queue

    async def add(self, source: str, save_path: str, paused: bool = False) -> str:
        """添加种子，返回 info_hash"""

    async def pause(self, info_hash: str) -> None: ...

    async def resume(self, info_hash: str) -> None: ...

    async def recheck(self, info_hash: str) -> None: ...

    async def remove(self, info_hash: str) -> None: ...

    def stats(self, info_hash: str) -> TransferStats: ...

    def files(self, info_hash: str) -> list[str]:
        """种子中的文件，相对于 save_path 的路径"""

    def set_rate_limits(self, download: Optional[int], upload: Optional[int]) -> None: ...

    async def close(self) -> None: ...


class LibtorrentClient:
    """libtorrent 实现，需要安装 torrent 可选依赖"""

    def __init__(
        self,
        listen_interfaces: str = "0.0.0.0:6881",
        poll_interval: float = 0.5,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        import libtorrent as lt

        self._lt = lt
        self._session = lt.session(
            {
                "listen_interfaces": listen_interfaces,
                "alert_mask": lt.alert.category_t.status_notification
                | lt.alert.category_t.error_notification,
            }
        )
        self._handles: dict = {}
        self._poll_interval = poll_interval
        self._http = http_client or httpx.AsyncClient(timeout=30, follow_redirects=True)
        self._poller: Optional[asyncio.Task] = None
        self.events: asyncio.Queue = asyncio.Queue()

    def _ensure_poller(self) -> None:
        if self._poller is None or self._poller.done():
            self._poller = asyncio.create_task(self._poll_alerts())

    async def add(self, source: str, save_path: str, paused: bool = False) -> str:
        lt = self._lt
        if source.startswith("magnet:"):
            params = lt.parse_magnet_uri(source)
        else:
            response = await self._http.get(source)
            response.raise_for_status()
            params = lt.add_torrent_params()
            params.ti = lt.torrent_info(lt.bdecode(response.content))

        params.save_path = save_path
        if paused:
            params.flags |= lt.torrent_flags.paused
            params.flags &= ~lt.torrent_flags.auto_managed

        handle = await asyncio.to_thread(self._session.add_torrent, params)
        info_hash = str(handle.info_hash())
        self._handles[info_hash] = handle
        self._ensure_poller()

        if handle.status().has_metadata:
            self.events.put_nowait(TransferEvent(TransferEventKind.READY, info_hash))
        return info_hash

    async def pause(self, info_hash: str) -> None:
        handle = self._handles[info_hash]
        handle.unset_flags(self._lt.torrent_flags.auto_managed)
        handle.pause()

    async def resume(self, info_hash: str) -> None:
        self._handles[info_hash].resume()

    async def recheck(self, info_hash: str) -> None:
        self._handles[info_hash].force_recheck()

    async def remove(self, info_hash: str) -> None:
        handle = self._handles.pop(info_hash, None)
        if handle is not None:
            self._session.remove_torrent(handle)

    def stats(self, info_hash: str) -> TransferStats:
        handle = self._handles.get(info_hash)
        if handle is None:
            return TransferStats()
        status = handle.status()
        return TransferStats(
            progress=status.progress,
            download_rate=status.download_rate,
            upload_rate=status.upload_rate,
            name=status.name,
        )

    def files(self, info_hash: str) -> list[str]:
        handle = self._handles.get(info_hash)
        if handle is None:
            return []
        info = handle.torrent_file()
        if info is None:
            return []
        storage = info.files()
        return [storage.file_path(i) for i in range(storage.num_files())]

    def set_rate_limits(self, download: Optional[int], upload: Optional[int]) -> None:
        # libtorrent 中 0 表示不限速
        self._session.apply_settings(
            {"download_rate_limit": int(download or 0), "upload_rate_limit": int(upload or 0)}
        )

    async def _poll_alerts(self) -> None:
        lt = self._lt
        while True:
            self._session.post_torrent_updates()
            for alert in self._session.pop_alerts():
                handle = getattr(alert, "handle", None)
                info_hash = str(handle.info_hash()) if handle is not None and handle.is_valid() else None

                if isinstance(alert, lt.state_update_alert):
                    for status in alert.status:
                        self.events.put_nowait(
                            TransferEvent(TransferEventKind.PROGRESS, str(status.handle.info_hash()))
                        )
                elif info_hash is None:
                    continue
                elif isinstance(alert, lt.metadata_received_alert):
                    self.events.put_nowait(TransferEvent(TransferEventKind.READY, info_hash))
                elif isinstance(alert, lt.torrent_finished_alert):
                    self.events.put_nowait(TransferEvent(TransferEventKind.DONE, info_hash))
                elif isinstance(alert, lt.torrent_error_alert):
                    self.events.put_nowait(
                        TransferEvent(TransferEventKind.ERROR, info_hash, error=alert.message())
                    )
            await asyncio.sleep(self._poll_interval)

    async def close(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass
        await self._http.aclose()
        logger.info("libtorrent 会话已关闭")


def staged_data_exists(staging_path: str, relative_files: list[str]) -> bool:
    """暂存目录中是否已有该种子的部分数据"""
    root = Path(staging_path)
    return any((root / rel).exists() for rel in relative_files)

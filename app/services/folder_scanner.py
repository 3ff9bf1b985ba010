"""
@description 下载目录扫描
@responsibility 把本地文件与种子关联，清理失效记录，并恢复暂存目录中未完成的下载
"""

import asyncio
import os
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from app.models.task import Task
from app.services.catalog import CatalogStore
from app.services.download_manager import STAGING_DIR_NAME, DownloadManager


@dataclass
class ScannedFile:
    path: str
    name: str
    staged: bool


def walk_files(folder_path: str) -> list[ScannedFile]:
    """递归列出目录下的文件，无法访问的条目记录日志后跳过"""

    def on_error(error: OSError) -> None:
        logger.warning(f"无法访问 {error.filename}: {error.strerror}")

    files = []
    for directory, _, names in os.walk(folder_path, onerror=on_error):
        staged = STAGING_DIR_NAME in os.path.relpath(directory, folder_path).split(os.sep)
        for name in names:
            path = os.path.join(directory, name)
            try:
                if not os.path.isfile(path):
                    continue
            except OSError as e:
                logger.warning(f"无法访问 {path}: {e}")
                continue
            files.append(ScannedFile(path=path, name=name, staged=staged))
    return files


def match_torrent(file_name: str, torrent_titles: dict[int, str]) -> Optional[int]:
    """文件名中包含种子标题（忽略大小写）即视为匹配"""
    lowered = file_name.lower()
    for torrent_id, title in torrent_titles.items():
        if title and title.lower() in lowered:
            return torrent_id
    return None


class FolderScanner:
    def __init__(self, catalog: CatalogStore, download_manager: DownloadManager):
        self._catalog = catalog
        self._download_manager = download_manager

    async def handle_task(self, task: Task) -> dict:
        return await self.scan_folder((task.payload or {}).get("folder_path"))

    async def scan_folder(self, folder_path: Optional[str]) -> dict:
        if not folder_path:
            raise ValueError("需要提供扫描目录")
        if not await asyncio.to_thread(os.path.isdir, folder_path):
            raise ValueError(f"目录不存在: {folder_path}")

        logger.info(f"开始扫描目录: {folder_path}")
        files = await asyncio.to_thread(walk_files, folder_path)
        torrent_titles = await self._catalog.list_torrent_titles()
        records = await self._catalog.list_file_downloads()

        stale_ids = []
        mapped_paths = set()
        mapped_torrents = set()
        for record in records:
            exists = await asyncio.to_thread(os.path.exists, record.file_path)
            if not exists or record.torrent_id not in torrent_titles:
                stale_ids.append(record.id)
                continue
            mapped_paths.add(record.file_path)
            mapped_torrents.add(record.torrent_id)

        new_mappings = []
        restart_ids = []
        for scanned in files:
            if scanned.path in mapped_paths:
                continue
            torrent_id = match_torrent(scanned.name, torrent_titles)
            if torrent_id is None:
                continue

            if scanned.staged:
                if torrent_id not in restart_ids:
                    restart_ids.append(torrent_id)
                continue

            if torrent_id in mapped_torrents:
                continue
            new_mappings.append((torrent_id, scanned.path, scanned.name))
            mapped_torrents.add(torrent_id)

        await self._catalog.apply_folder_mappings(stale_ids, new_mappings)

        restarted = 0
        for torrent_id in restart_ids:
            if await self._restart(torrent_id):
                restarted += 1

        message = f"扫描完成，匹配 {len(new_mappings)} 个新文件"
        logger.info(
            f"{message}，删除 {len(stale_ids)} 条失效记录，恢复 {restarted} 个未完成的下载"
        )
        return {
            "message": message,
            "files_scanned": len(files),
            "torrents_checked": len(torrent_titles),
            "matched_count": len(new_mappings),
            "deleted_count": len(stale_ids),
            "restarted_count": restarted,
        }

    async def _restart(self, torrent_id: int) -> bool:
        found = await self._catalog.get_torrent_with_anime(torrent_id)
        if found is None:
            return False
        torrent, anime = found
        try:
            await self._download_manager.download(
                torrent.link,
                anime_title=anime.display_title,
                anime_id=anime.id,
                torrent_id=torrent.id,
            )
        except (ValueError, OSError) as e:
            logger.error(f"恢复下载 [{torrent.title}] 失败: {e}")
            return False
        return True

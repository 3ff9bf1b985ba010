"""
@description 自动下载
@responsibility 为开启自动下载的番剧定期扫描种子，并为已播出但未下载的剧集开始下载
"""

from loguru import logger

from app.models.task import Task
from app.services.catalog import CatalogStore
from app.services.download_manager import DownloadManager
from app.tasks.task_queue import TaskQueue


class AutoDownloadService:
    def __init__(self, catalog: CatalogStore, task_queue: TaskQueue, download_manager: DownloadManager):
        self._catalog = catalog
        self._task_queue = task_queue
        self._download_manager = download_manager

    async def scan_candidates(self, task: Task = None) -> dict:
        """为每部开启自动下载的番剧投递一个种子扫描任务"""
        anime_list = await self._catalog.list_autodownload_anime()
        task_ids = []
        for anime in anime_list:
            scan_task = await self._task_queue.schedule_scan_releases(anime.id)
            task_ids.append(scan_task.id)

        logger.info(f"已为 {len(anime_list)} 部自动下载番剧安排种子扫描")
        return {"scheduled": len(task_ids), "task_ids": task_ids}

    async def queue_downloads(self, task: Task = None) -> dict:
        """为已播出且尚无文件的剧集开始下载"""
        configuration = await self._catalog.get_configuration()
        if not configuration.enable_auto_download_episodes:
            logger.info("自动下载未开启，跳过")
            return {"message": "自动下载未开启", "started": 0, "skipped": True}

        candidates = await self._catalog.find_download_candidates()
        started = 0
        failed = 0
        for candidate in candidates:
            if self._download_manager.get_status(candidate.torrent_id) is not None:
                continue
            try:
                await self._download_manager.download(
                    candidate.link,
                    anime_title=candidate.anime_title,
                    anime_id=candidate.anime_id,
                    torrent_id=candidate.torrent_id,
                )
                started += 1
            except ValueError:
                raise
            except Exception as e:
                failed += 1
                logger.error(
                    f"自动下载 [{candidate.anime_title}] 第 {candidate.episode_number} 集失败: {e}"
                )

        logger.info(f"自动下载：{len(candidates)} 个候选，开始 {started} 个，失败 {failed} 个")
        return {
            "message": f"开始下载 {started} 集",
            "candidates": len(candidates),
            "started": started,
            "failed": failed,
            "skipped": False,
        }

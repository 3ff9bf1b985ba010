"""
@description 持久化后台任务队列
@responsibility 任务入库、去重、按 FIFO 顺序单协程执行，并在重启后恢复未完成任务
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Optional

from loguru import logger
from sqlalchemy import delete, select, update

from app.core.database import Database
from app.models.task import ACTIVE_STATUSES, FINISHED_STATUSES, Task, TaskStatus, TaskType

TaskHandler = Callable[[Task], Awaitable[dict]]

VALID_QUARTERS = ("Q1", "Q2", "Q3", "Q4")


class TaskQueue:
    """后台任务队列，同一时刻最多一个任务在运行"""

    def __init__(self, db: Database):
        self._db = db
        self._handlers: dict[str, TaskHandler] = {}
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._enqueue_lock = asyncio.Lock()

    def register_handler(self, task_type: TaskType, handler: TaskHandler) -> None:
        self._handlers[TaskType(task_type).value] = handler

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """恢复上次未完成的任务并启动执行协程"""
        if self._worker is not None and not self._worker.done():
            logger.warning("任务队列已在运行中")
            return

        await self._recover()
        self._worker = asyncio.create_task(self._run())
        logger.info("任务队列已启动")

    async def stop(self) -> None:
        if self._worker is None:
            return

        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("任务队列已停止")

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def join(self) -> None:
        """等待队列中的任务全部执行完"""
        await self._queue.join()

    async def _recover(self) -> None:
        async with self._db.session() as session:
            result = await session.execute(
                select(Task).where(Task.status.in_(ACTIVE_STATUSES)).order_by(Task.created_at)
            )
            tasks = list(result.scalars().all())
            for task in tasks:
                if task.status == TaskStatus.RUNNING.value:
                    task.status = TaskStatus.PENDING.value
                    task.error = None
            await session.commit()

        for task in tasks:
            self._queue.put_nowait(task.id)
        if tasks:
            logger.info(f"恢复了 {len(tasks)} 个未完成的任务")

    # ------------------------------------------------------------------
    # 入队
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        task_type: TaskType,
        anime_id: Optional[int] = None,
        payload: Optional[dict] = None,
    ) -> Task:
        """持久化一个 pending 任务并放入队列，立即返回"""
        async with self._db.session() as session:
            task = Task(
                type=TaskType(task_type).value,
                status=TaskStatus.PENDING.value,
                anime_id=anime_id,
                payload=payload or {},
                created_at=datetime.now(),
            )
            session.add(task)
            await session.commit()

        self._queue.put_nowait(task.id)
        logger.info(f"任务已入队: {task.type} ({task.id})")
        return task

    async def _enqueue_unique(
        self,
        task_type: TaskType,
        find_existing: Callable[[], Awaitable[Optional[Task]]],
        anime_id: Optional[int] = None,
        payload: Optional[dict] = None,
    ) -> Task:
        async with self._enqueue_lock:
            existing = await find_existing()
            if existing is not None:
                logger.debug(f"已有相同的活动任务，直接返回: {existing.id}")
                return existing
            return await self.enqueue(task_type, anime_id=anime_id, payload=payload)

    async def schedule_scan_releases(self, anime_id: Optional[int], wipe_previous: bool = False) -> Task:
        if not anime_id:
            raise ValueError("扫描种子需要提供 anime_id")
        return await self._enqueue_unique(
            TaskType.SCAN_RELEASES,
            lambda: self.get_active_for_subject(anime_id),
            anime_id=anime_id,
            payload={"wipe_previous": bool(wipe_previous)},
        )

    async def schedule_refresh_quarter(self, quarter: str, year: int, force_refresh: bool = False) -> Task:
        quarter = (quarter or "").upper()
        if quarter not in VALID_QUARTERS:
            raise ValueError(f"无效的季度: {quarter}")
        if not isinstance(year, int) or year <= 0:
            raise ValueError(f"无效的年份: {year}")
        return await self._enqueue_unique(
            TaskType.REFRESH_QUARTER,
            lambda: self.find_active(TaskType.REFRESH_QUARTER, quarter=quarter, year=year),
            payload={"quarter": quarter, "year": year, "force_refresh": bool(force_refresh)},
        )

    async def schedule_scan_folder(self, folder_path: Optional[str]) -> Task:
        if not folder_path:
            raise ValueError("扫描目录需要提供 folder_path")
        return await self._enqueue_unique(
            TaskType.SCAN_FOLDER,
            lambda: self.find_active(TaskType.SCAN_FOLDER, folder_path=folder_path),
            payload={"folder_path": folder_path},
        )

    async def schedule_scan_autodownload(self) -> Task:
        return await self._enqueue_unique(
            TaskType.SCAN_AUTODOWNLOAD, lambda: self.find_active(TaskType.SCAN_AUTODOWNLOAD)
        )

    async def schedule_queue_autodownload(self) -> Task:
        return await self._enqueue_unique(
            TaskType.QUEUE_AUTODOWNLOAD, lambda: self.find_active(TaskType.QUEUE_AUTODOWNLOAD)
        )

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    async def get_by_id(self, task_id: str) -> Optional[Task]:
        async with self._db.session() as session:
            return await session.get(Task, task_id)

    async def get_active_for_subject(self, anime_id: int) -> Optional[Task]:
        """该番剧最早的 pending/running 任务"""
        async with self._db.session() as session:
            result = await session.execute(
                select(Task)
                .where(Task.anime_id == anime_id, Task.status.in_(ACTIVE_STATUSES))
                .order_by(Task.created_at)
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def find_active(self, task_type: TaskType, **payload_fields) -> Optional[Task]:
        """按类型和 payload 字段查找 pending/running 任务"""
        async with self._db.session() as session:
            result = await session.execute(
                select(Task)
                .where(Task.type == TaskType(task_type).value, Task.status.in_(ACTIVE_STATUSES))
                .order_by(Task.created_at)
            )
            for task in result.scalars().all():
                payload = task.payload or {}
                if all(payload.get(k) == v for k, v in payload_fields.items()):
                    return task
        return None

    async def list_tasks(self, statuses: Optional[Iterable[str]] = None, limit: int = 50) -> list[Task]:
        async with self._db.session() as session:
            stmt = select(Task).order_by(Task.created_at.desc()).limit(limit)
            if statuses:
                stmt = stmt.where(Task.status.in_([TaskStatus(s).value for s in statuses]))
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def purge_finished(self) -> int:
        async with self._db.session() as session:
            result = await session.execute(delete(Task).where(Task.status.in_(FINISHED_STATUSES)))
            await session.commit()
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # 执行
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            task_id = await self._queue.get()
            try:
                await self._execute(task_id)
            except Exception as e:
                logger.error(f"执行任务 {task_id} 时发生未处理的错误: {e}")
            finally:
                self._queue.task_done()

    async def _execute(self, task_id: str) -> None:
        task = await self.get_by_id(task_id)
        if task is None or task.status != TaskStatus.PENDING.value:
            return

        await self._set_status(task_id, TaskStatus.RUNNING, result=None, error=None)
        logger.info(f"开始执行任务: {task.type} ({task_id})")

        handler = self._handlers.get(task.type)
        try:
            if handler is None:
                raise ValueError(f"不支持的任务类型: {task.type}")
            result = await handler(task)
        except Exception as e:
            logger.error(f"任务 {task.type} ({task_id}) 失败: {e}")
            await self._set_status(task_id, TaskStatus.FAILED, result=None, error=str(e) or type(e).__name__)
            return

        await self._set_status(task_id, TaskStatus.COMPLETED, result=result or {}, error=None)
        logger.info(f"任务完成: {task.type} ({task_id})")

    async def _set_status(self, task_id: str, status: TaskStatus, result, error) -> None:
        async with self._db.session() as session:
            await session.execute(
                update(Task)
                .where(Task.id == task_id)
                .values(status=status.value, result=result, error=error, updated_at=datetime.now())
            )
            await session.commit()

"""
@description 定时任务服务
@responsibility 按数据库中的 cron 配置定时向任务队列投递任务，并维护上次/下次运行时间

定时任务本身不做实际工作，只负责把任务放入任务队列。
"""

import re
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger
from sqlalchemy import select

from app.core.database import Database
from app.models.scheduled_job import JobType, ScheduledJob
from app.models.task import Task
from app.tasks.task_queue import TaskQueue

JOB_ID_PREFIX = "scheduled_job_"
DEFAULT_QUARTER_CRON = "0 0 * * 0"

# crontab 中 0 和 7 都表示周日
WEEKDAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]
WEEKDAY_PART_PATTERN = re.compile(r"^(\*|\d+)(?:-(\d+))?(?:/(\d+))?$")

JOB_FIELDS = ("name", "job_type", "cron_schedule", "enabled", "job_config")


def _crontab_days(part: str) -> set[int]:
    match = WEEKDAY_PART_PATTERN.match(part)
    if not match:
        raise ValueError(f"无效的星期: {part}")
    start, end, step = match.groups()
    if start == "*":
        if end is not None:
            raise ValueError(f"无效的星期: {part}")
        first, last = 0, 6
    else:
        first = int(start)
        last = int(end) if end is not None else (7 if step else first)
    step = int(step) if step else 1
    if first > 7 or last > 7 or first > last or step < 1:
        raise ValueError(f"无效的星期: {part}")
    return {day % 7 for day in range(first, last + 1, step)}


def convert_day_of_week(field: str) -> str:
    """
    crontab 数字星期 -> APScheduler 英文缩写

    APScheduler 的星期从周一开始、范围不能跨过周日，
    所以周一到周六连续的部分合并成区间，周日单独列出。
    例如 0-5 -> mon-fri,sun。不含数字的字段原样返回。
    """
    if not re.search(r"\d", field):
        return field

    days: set[int] = set()
    for part in field.split(","):
        days |= _crontab_days(part)

    names = []
    day = 1
    while day <= 6:
        if day not in days:
            day += 1
            continue
        end = day
        while end + 1 <= 6 and end + 1 in days:
            end += 1
        if end == day:
            names.append(WEEKDAY_NAMES[day])
        else:
            names.append(f"{WEEKDAY_NAMES[day]}-{WEEKDAY_NAMES[end]}")
        day = end + 1
    if 0 in days:
        names.append("sun")
    return ",".join(names)


def build_cron_trigger(cron_expr: str) -> CronTrigger:
    """
    5 段 crontab 表达式 -> APScheduler CronTrigger

    APScheduler 的数字星期从周一开始，这里先把星期字段换成英文缩写。
    无效表达式抛出 ValueError。
    """
    fields = (cron_expr or "").split()
    if len(fields) != 5:
        raise ValueError(f"cron 表达式必须是 5 段: {cron_expr!r}")

    minute, hour, day, month, day_of_week = fields
    day_of_week = convert_day_of_week(day_of_week)
    return CronTrigger(minute=minute, hour=hour, day=day, month=month, day_of_week=day_of_week)


def _leading_int(value: str) -> int:
    match = re.match(r"\d+", value)
    return int(match.group(0)) if match else 0


def calculate_next_run(cron_expr: str, from_time: Optional[datetime] = None) -> Optional[datetime]:
    """
    计算下次运行时间

    - 每天 (m h * * *)：from_time 之后最近的 h:m
    - 每周 (m h * * d)：from_time 之后最近的星期 d 的 h:m
    - 其它合法表达式：from_time 加一天
    - 非法表达式返回 None
    """
    try:
        build_cron_trigger(cron_expr)
    except ValueError as e:
        logger.error(f"无效的 cron 表达式 {cron_expr!r}: {e}")
        return None

    now = from_time or datetime.now()
    minute, hour, day, month, day_of_week = cron_expr.split()
    at_time = {
        "hour": _leading_int(hour) % 24,
        "minute": _leading_int(minute) % 60,
        "second": 0,
        "microsecond": 0,
    }

    if day == "*" and month == "*" and day_of_week.isdigit():
        target = int(day_of_week) % 7
        current = (now.weekday() + 1) % 7
        next_run = (now + timedelta(days=(target - current) % 7)).replace(**at_time)
        if next_run <= now:
            next_run += timedelta(days=7)
        return next_run

    if day == "*" and month == "*" and day_of_week == "*":
        next_run = now.replace(**at_time)
        if next_run <= now:
            next_run += timedelta(days=1)
        return next_run

    return now + timedelta(days=1)


class ScheduledJobService:
    """定时任务服务，每个启用的任务对应一个 APScheduler cron 触发器"""

    def __init__(
        self,
        db: Database,
        task_queue: TaskQueue,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self._db = db
        self._task_queue = task_queue
        self._scheduler = scheduler or AsyncIOScheduler()
        self._armed: set[str] = set()

    async def start(self) -> None:
        await self.initialize()
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("定时任务调度器已启动")

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("定时任务调度器已停止")

    # ------------------------------------------------------------------
    # 触发器管理
    # ------------------------------------------------------------------

    async def initialize(self) -> int:
        """清除已注册的触发器，重新为所有启用的任务注册"""
        for apscheduler_id in list(self._armed):
            if self._scheduler.get_job(apscheduler_id) is not None:
                self._scheduler.remove_job(apscheduler_id)
        self._armed.clear()

        async with self._db.session() as session:
            result = await session.execute(
                select(ScheduledJob).where(ScheduledJob.enabled.is_(True)).order_by(ScheduledJob.id)
            )
            jobs = list(result.scalars().all())

            logger.info(f"初始化 {len(jobs)} 个定时任务")
            for job in jobs:
                try:
                    trigger = build_cron_trigger(job.cron_schedule)
                except ValueError as e:
                    logger.error(f"定时任务 [{job.name}] 的 cron 表达式无效，跳过: {e}")
                    continue

                apscheduler_id = f"{JOB_ID_PREFIX}{job.id}"
                self._scheduler.add_job(
                    self._fire,
                    trigger,
                    args=[job.id],
                    id=apscheduler_id,
                    name=job.name,
                    replace_existing=True,
                )
                self._armed.add(apscheduler_id)
                job.next_run = calculate_next_run(job.cron_schedule)
                logger.info(f"已注册定时任务 [{job.name}]: {job.cron_schedule}")

            await session.commit()

        return len(self._armed)

    async def reload(self) -> int:
        return await self.initialize()

    @property
    def armed_job_ids(self) -> set[str]:
        return set(self._armed)

    async def _fire(self, job_id: int) -> None:
        """触发器回调：重新读取任务，仍然启用时才执行"""
        job = await self.get_job(job_id)
        if job is None or not job.enabled:
            logger.debug(f"定时任务 {job_id} 已删除或已禁用，忽略本次触发")
            return
        try:
            await self.execute(job)
        except Exception as e:
            logger.error(f"执行定时任务 [{job.name}] 出错: {e}")

    # ------------------------------------------------------------------
    # 执行
    # ------------------------------------------------------------------

    async def execute(self, job: ScheduledJob) -> Task:
        """按任务类型投递到任务队列，并更新运行时间"""
        logger.info(f"执行定时任务: {job.name} ({job.job_type})")
        config = job.job_config or {}

        if job.job_type == JobType.SCAN_QUARTER.value:
            quarter, year = config.get("quarter"), config.get("year")
            if not quarter or not year:
                raise ValueError(f"定时任务 [{job.name}] 缺少 quarter 或 year 配置")
            task = await self._task_queue.schedule_refresh_quarter(
                quarter, int(year), force_refresh=bool(config.get("force_refresh", False))
            )
        elif job.job_type == JobType.SCAN_AUTODOWNLOAD.value:
            task = await self._task_queue.schedule_scan_autodownload()
        elif job.job_type == JobType.QUEUE_AUTODOWNLOAD.value:
            task = await self._task_queue.schedule_queue_autodownload()
        else:
            raise ValueError(f"未知的定时任务类型: {job.job_type}")

        now = datetime.now()
        async with self._db.session() as session:
            stored = await session.get(ScheduledJob, job.id)
            if stored is not None:
                stored.last_run = now
                stored.next_run = calculate_next_run(stored.cron_schedule, now)
                await session.commit()

        return task

    async def run_job_now(self, job_id: int) -> Task:
        job = await self.get_job(job_id)
        if job is None:
            raise LookupError(f"定时任务不存在: {job_id}")
        return await self.execute(job)

    # ------------------------------------------------------------------
    # 增删改查
    # ------------------------------------------------------------------

    async def get_job(self, job_id: int) -> Optional[ScheduledJob]:
        async with self._db.session() as session:
            return await session.get(ScheduledJob, job_id)

    async def list_jobs(self) -> list[ScheduledJob]:
        async with self._db.session() as session:
            result = await session.execute(select(ScheduledJob).order_by(ScheduledJob.id))
            return list(result.scalars().all())

    @staticmethod
    def _validate(job_type: str, cron_schedule: str) -> None:
        JobType(job_type)
        build_cron_trigger(cron_schedule)

    async def create_job(
        self,
        name: str,
        job_type: str,
        cron_schedule: str,
        enabled: bool = True,
        job_config: Optional[dict] = None,
    ) -> ScheduledJob:
        self._validate(job_type, cron_schedule)

        async with self._db.session() as session:
            job = ScheduledJob(
                name=name,
                job_type=JobType(job_type).value,
                cron_schedule=cron_schedule,
                enabled=enabled,
                job_config=job_config or {},
                next_run=calculate_next_run(cron_schedule) if enabled else None,
            )
            session.add(job)
            await session.commit()

        logger.info(f"新建定时任务 [{name}] ({job_type}, {cron_schedule})")
        await self.reload()
        return job

    async def update_job(self, job_id: int, **fields) -> ScheduledJob:
        unknown = set(fields) - set(JOB_FIELDS)
        if unknown:
            raise ValueError(f"未知的字段: {', '.join(sorted(unknown))}")

        async with self._db.session() as session:
            job = await session.get(ScheduledJob, job_id)
            if job is None:
                raise LookupError(f"定时任务不存在: {job_id}")

            self._validate(
                fields.get("job_type", job.job_type), fields.get("cron_schedule", job.cron_schedule)
            )
            for key, value in fields.items():
                setattr(job, key, value)
            job.next_run = calculate_next_run(job.cron_schedule) if job.enabled else None
            await session.commit()

        await self.reload()
        return job

    async def delete_job(self, job_id: int) -> None:
        async with self._db.session() as session:
            job = await session.get(ScheduledJob, job_id)
            if job is None:
                raise LookupError(f"定时任务不存在: {job_id}")
            await session.delete(job)
            await session.commit()

        logger.info(f"已删除定时任务 {job_id}")
        await self.reload()

    async def find_equivalent_job(
        self, job_type: str, job_config: Optional[dict] = None
    ) -> Optional[ScheduledJob]:
        """同类型、且 job_config 中给出的字段都相同的任务"""
        job_config = job_config or {}
        async with self._db.session() as session:
            result = await session.execute(
                select(ScheduledJob)
                .where(ScheduledJob.job_type == JobType(job_type).value)
                .order_by(ScheduledJob.id)
            )
            for job in result.scalars().all():
                config = job.job_config or {}
                if all(config.get(k) == v for k, v in job_config.items()):
                    return job
        return None

    async def ensure_quarter_job(
        self, quarter: str, year: int, cron_schedule: str = DEFAULT_QUARTER_CRON
    ) -> ScheduledJob:
        """
        为季度创建每周刷新任务，已存在时直接返回

        任务带 force_refresh，每次运行都不受 14 天缓存限制。
        """
        job_config = {"quarter": quarter, "year": year, "force_refresh": True}
        existing = await self.find_equivalent_job(
            JobType.SCAN_QUARTER.value, {"quarter": quarter, "year": year}
        )
        if existing is not None:
            if not (existing.job_config or {}).get("force_refresh"):
                existing = await self.update_job(
                    existing.id, job_config={**(existing.job_config or {}), "force_refresh": True}
                )
            return existing
        return await self.create_job(
            name=f"刷新 {quarter} {year}",
            job_type=JobType.SCAN_QUARTER.value,
            cron_schedule=cron_schedule,
            job_config=job_config,
        )

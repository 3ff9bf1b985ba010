"""
@description 定时任务模型
@responsibility 记录 cron 表达式、开关状态以及上次/下次运行时间
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String

from app.core.database import Base


class JobType(str, Enum):
    SCAN_QUARTER = "scan_quarter"
    SCAN_AUTODOWNLOAD = "scan_autodownload"
    QUEUE_AUTODOWNLOAD = "queue_autodownload"


class ScheduledJob(Base):
    __tablename__ = "scheduled_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    job_type = Column(String(50), nullable=False)
    cron_schedule = Column(String(100), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    job_config = Column(JSON, nullable=True)
    last_run = Column(DateTime, nullable=True)
    next_run = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    def __repr__(self):
        return f"<ScheduledJob {self.name} ({self.cron_schedule})>"

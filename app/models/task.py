"""
@description 后台任务模型
@responsibility 持久化任务队列中每个任务的类型、状态、输入和结果
"""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text

from app.core.database import Base


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = (TaskStatus.PENDING.value, TaskStatus.RUNNING.value)
FINISHED_STATUSES = (TaskStatus.COMPLETED.value, TaskStatus.FAILED.value)


class TaskType(str, Enum):
    SCAN_RELEASES = "scan_releases"
    REFRESH_QUARTER = "refresh_quarter"
    SCAN_FOLDER = "scan_folder"
    SCAN_AUTODOWNLOAD = "scan_autodownload"
    QUEUE_AUTODOWNLOAD = "queue_autodownload"


class Task(Base):
    __tablename__ = "tasks"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    type = Column(String(50), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=TaskStatus.PENDING.value, index=True)
    anime_id = Column(Integer, nullable=True, index=True)
    payload = Column(JSON, nullable=True)
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.now, index=True)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    def __repr__(self):
        return f"<Task {self.id} {self.type} [{self.status}]>"

"""
@description 路由依赖
@responsibility 从 app.state 取出 lifespan 中创建的服务，供各路由通过 Depends 使用
"""

from dataclasses import dataclass

from fastapi import Request

from app.services.catalog import CatalogStore
from app.services.download_manager import DownloadManager
from app.tasks.scheduler import ScheduledJobService
from app.tasks.task_queue import TaskQueue


@dataclass
class Services:
    catalog: CatalogStore
    task_queue: TaskQueue
    job_service: ScheduledJobService
    download_manager: DownloadManager


def get_services(request: Request) -> Services:
    return request.app.state.services

"""
@description 系统状态接口
@responsibility 汇总任务队列、下载和定时任务的运行状态
"""

from fastapi import APIRouter, Depends

from app.api.deps import Services, get_services
from app.models.task import ACTIVE_STATUSES
from app.schemas.api import ApiResponse, StatusResponse, success_response

router = APIRouter()


@router.get("/status", response_model=ApiResponse[StatusResponse])
async def get_status(services: Services = Depends(get_services)):
    active_tasks = await services.task_queue.list_tasks(statuses=ACTIVE_STATUSES, limit=500)
    return success_response(
        data=StatusResponse(
            task_queue_running=services.task_queue.is_running,
            pending_tasks=len(active_tasks),
            active_transfers=services.download_manager.active_count(),
            scheduled_jobs=len(services.job_service.armed_job_ids),
        ),
        message="获取系统状态成功",
    )

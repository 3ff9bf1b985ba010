"""
@description 后台任务接口
@responsibility 触发种子扫描、季度刷新、目录扫描，并提供任务状态查询
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from loguru import logger

from app.api.deps import Services, get_services
from app.models.task import Task, TaskStatus
from app.schemas.api import (
    ApiResponse,
    PurgeTasksResponse,
    RefreshQuarterRequest,
    ScanFolderRequest,
    ScanReleasesRequest,
    TaskItem,
    TaskListResponse,
    success_response,
)

router = APIRouter()


def task_response(task: Task, response: Response, message: str) -> ApiResponse[TaskItem]:
    """任务仍在等待时返回 202"""
    if task.status == TaskStatus.PENDING.value:
        response.status_code = 202
    return success_response(data=TaskItem.model_validate(task), message=message)


@router.post("/anime/{anime_id}/scan", response_model=ApiResponse[TaskItem])
async def scan_anime(
    anime_id: int,
    response: Response,
    request: Optional[ScanReleasesRequest] = None,
    services: Services = Depends(get_services),
):
    anime = await services.catalog.get_anime(anime_id)
    if anime is None:
        raise HTTPException(status_code=404, detail=f"番剧不存在: {anime_id}")

    wipe_previous = request.wipe_previous if request else False
    task = await services.task_queue.schedule_scan_releases(anime_id, wipe_previous=wipe_previous)
    logger.info(f"[scan_anime] {anime.display_title} -> 任务 {task.id}")
    return task_response(task, response, "种子扫描已安排")


@router.get("/anime/{anime_id}/scan-task", response_model=ApiResponse[Optional[TaskItem]])
async def get_scan_task(anime_id: int, services: Services = Depends(get_services)):
    task = await services.task_queue.get_active_for_subject(anime_id)
    if task is None:
        return success_response(data=None, message="没有进行中的扫描任务")
    return success_response(data=TaskItem.model_validate(task), message="获取扫描任务成功")


@router.post("/quarters/refresh", response_model=ApiResponse[TaskItem])
async def refresh_quarter(
    request: RefreshQuarterRequest,
    response: Response,
    services: Services = Depends(get_services),
):
    try:
        task = await services.task_queue.schedule_refresh_quarter(
            request.quarter, request.year, force_refresh=request.force_refresh
        )
        if request.schedule_weekly:
            await services.job_service.ensure_quarter_job(request.quarter.upper(), request.year)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return task_response(task, response, "季度刷新已安排")


@router.post("/folders/scan", response_model=ApiResponse[TaskItem])
async def scan_folder(
    response: Response,
    request: Optional[ScanFolderRequest] = None,
    services: Services = Depends(get_services),
):
    folder_path = request.folder_path if request else None
    if not folder_path:
        configuration = await services.catalog.get_configuration()
        folder_path = configuration.anime_location
    if not folder_path:
        raise HTTPException(status_code=400, detail="未指定扫描目录且未配置下载目录")

    task = await services.task_queue.schedule_scan_folder(folder_path)
    return task_response(task, response, "目录扫描已安排")


@router.get("/tasks", response_model=ApiResponse[TaskListResponse])
async def list_tasks(
    status: Optional[list[TaskStatus]] = Query(None, description="按状态过滤"),
    limit: int = Query(50, ge=1, le=500),
    services: Services = Depends(get_services),
):
    tasks = await services.task_queue.list_tasks(statuses=status, limit=limit)
    items = [TaskItem.model_validate(task) for task in tasks]
    return success_response(
        data=TaskListResponse(total=len(items), tasks=items),
        message="获取任务列表成功",
    )


@router.get("/tasks/{task_id}", response_model=ApiResponse[TaskItem])
async def get_task(task_id: str, services: Services = Depends(get_services)):
    task = await services.task_queue.get_by_id(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="任务不存在")
    return success_response(data=TaskItem.model_validate(task), message="获取任务详情成功")


@router.delete("/tasks", response_model=ApiResponse[PurgeTasksResponse])
async def purge_tasks(services: Services = Depends(get_services)):
    deleted = await services.task_queue.purge_finished()
    logger.info(f"[purge_tasks] 删除 {deleted} 个已结束的任务")
    return success_response(data=PurgeTasksResponse(deleted=deleted), message="清理完成")

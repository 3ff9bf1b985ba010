"""
@description 定时任务接口
@responsibility 定时任务的增删改查与立即执行，修改后重新加载调度器
"""

from fastapi import APIRouter, Depends, HTTPException, Response

from app.api.deps import Services, get_services
from app.api.tasks import task_response
from app.schemas.api import (
    ApiResponse,
    CreateJobRequest,
    JobItem,
    TaskItem,
    UpdateJobRequest,
    success_response,
)

router = APIRouter()


@router.get("/jobs", response_model=ApiResponse[list[JobItem]])
async def list_jobs(services: Services = Depends(get_services)):
    jobs = await services.job_service.list_jobs()
    return success_response(
        data=[JobItem.model_validate(job) for job in jobs], message="获取定时任务成功"
    )


@router.post("/jobs", response_model=ApiResponse[JobItem])
async def create_job(request: CreateJobRequest, services: Services = Depends(get_services)):
    try:
        job = await services.job_service.create_job(
            name=request.name,
            job_type=request.job_type,
            cron_schedule=request.cron_schedule,
            enabled=request.enabled,
            job_config=request.job_config,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return success_response(data=JobItem.model_validate(job), message="定时任务已创建")


@router.get("/jobs/{job_id}", response_model=ApiResponse[JobItem])
async def get_job(job_id: int, services: Services = Depends(get_services)):
    job = await services.job_service.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="定时任务不存在")
    return success_response(data=JobItem.model_validate(job), message="获取定时任务成功")


@router.put("/jobs/{job_id}", response_model=ApiResponse[JobItem])
async def update_job(
    job_id: int, request: UpdateJobRequest, services: Services = Depends(get_services)
):
    fields = request.model_dump(exclude_none=True)
    try:
        job = await services.job_service.update_job(job_id, **fields)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return success_response(data=JobItem.model_validate(job), message="定时任务已更新")


@router.delete("/jobs/{job_id}", response_model=ApiResponse[None])
async def delete_job(job_id: int, services: Services = Depends(get_services)):
    try:
        await services.job_service.delete_job(job_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return success_response(data=None, message="定时任务已删除")


@router.post("/jobs/{job_id}/run", response_model=ApiResponse[TaskItem])
async def run_job(job_id: int, response: Response, services: Services = Depends(get_services)):
    try:
        task = await services.job_service.run_job_now(job_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return task_response(task, response, "定时任务已执行")

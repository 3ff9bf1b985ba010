"""
@description API 请求/响应模型
@responsibility 定义所有 API 接口的数据结构
"""

from datetime import datetime
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field


class ScanReleasesRequest(BaseModel):
    wipe_previous: bool = Field(False, description="扫描前删除该番剧已有的种子")


class RefreshQuarterRequest(BaseModel):
    quarter: str = Field(..., description="季度（Q1~Q4）")
    year: int = Field(..., description="年份")
    force_refresh: bool = Field(False, description="忽略 14 天缓存强制刷新")
    schedule_weekly: bool = Field(False, description="同时为该季度创建每周刷新的定时任务")


class ScanFolderRequest(BaseModel):
    folder_path: Optional[str] = Field(None, description="扫描目录，为空时使用下载目录")


class TaskItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="任务 ID")
    type: str = Field(..., description="任务类型")
    status: str = Field(..., description="任务状态")
    anime_id: Optional[int] = Field(None, description="关联番剧 ID")
    payload: Optional[dict[str, Any]] = Field(None, description="任务参数")
    result: Optional[dict[str, Any]] = Field(None, description="执行结果")
    error: Optional[str] = Field(None, description="失败原因")
    created_at: Optional[datetime] = Field(None, description="创建时间")
    updated_at: Optional[datetime] = Field(None, description="更新时间")


class TaskListResponse(BaseModel):
    total: int = Field(..., description="任务总数")
    tasks: list[TaskItem] = Field(..., description="任务列表")


class PurgeTasksResponse(BaseModel):
    deleted: int = Field(..., description="删除的任务数")


class JobItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int = Field(..., description="定时任务 ID")
    name: str = Field(..., description="名称")
    job_type: str = Field(..., description="类型")
    cron_schedule: str = Field(..., description="cron 表达式")
    enabled: bool = Field(..., description="是否启用")
    job_config: Optional[dict[str, Any]] = Field(None, description="任务配置")
    last_run: Optional[datetime] = Field(None, description="上次运行时间")
    next_run: Optional[datetime] = Field(None, description="下次运行时间")


class CreateJobRequest(BaseModel):
    name: str = Field(..., description="名称")
    job_type: str = Field(..., description="类型")
    cron_schedule: str = Field(..., description="cron 表达式")
    enabled: bool = Field(True, description="是否启用")
    job_config: Optional[dict[str, Any]] = Field(None, description="任务配置")


class UpdateJobRequest(BaseModel):
    name: Optional[str] = Field(None, description="名称")
    job_type: Optional[str] = Field(None, description="类型")
    cron_schedule: Optional[str] = Field(None, description="cron 表达式")
    enabled: Optional[bool] = Field(None, description="是否启用")
    job_config: Optional[dict[str, Any]] = Field(None, description="任务配置")


class TransferItem(BaseModel):
    info_hash: str = Field(..., description="info_hash")
    source: str = Field(..., description="种子链接")
    name: Optional[str] = Field(None, description="种子名称")
    anime_id: Optional[int] = Field(None, description="番剧 ID")
    torrent_id: Optional[int] = Field(None, description="种子 ID")
    save_path: str = Field(..., description="保存目录")
    status: str = Field(..., description="状态")
    progress: float = Field(..., description="进度（0~1）")
    download_rate: int = Field(..., description="下载速度（字节/秒）")
    upload_rate: int = Field(..., description="上传速度（字节/秒）")
    error: Optional[str] = Field(None, description="错误信息")


class ConfigurationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    anime_location: Optional[str] = Field(None, description="下载目录")
    enable_automatic_anime_folder_classification: bool = Field(
        False, description="按番剧自动分目录"
    )
    enable_auto_download_episodes: bool = Field(False, description="自动下载新剧集")
    max_download_rate: Optional[int] = Field(None, description="下载限速（字节/秒）")
    max_upload_rate: Optional[int] = Field(None, description="上传限速（字节/秒）")


class UpdateConfigurationRequest(BaseModel):
    anime_location: Optional[str] = Field(None, description="下载目录")
    enable_automatic_anime_folder_classification: Optional[bool] = Field(
        None, description="按番剧自动分目录"
    )
    enable_auto_download_episodes: Optional[bool] = Field(None, description="自动下载新剧集")
    max_download_rate: Optional[int] = Field(None, ge=0, description="下载限速（字节/秒）")
    max_upload_rate: Optional[int] = Field(None, ge=0, description="上传限速（字节/秒）")


class StatusResponse(BaseModel):
    task_queue_running: bool = Field(..., description="任务队列是否运行中")
    pending_tasks: int = Field(..., description="等待或执行中的任务数")
    active_transfers: int = Field(..., description="活动下载数")
    scheduled_jobs: int = Field(..., description="已注册的定时任务数")


T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """统一 API 响应格式"""

    code: int = Field(..., description="响应码（0=成功，非0=错误）")
    message: str = Field(..., description="响应消息")
    data: Optional[T] = Field(None, description="响应数据")


def success_response(data: T, message: str = "操作成功") -> ApiResponse[T]:
    """创建成功响应"""
    return ApiResponse(code=0, message=message, data=data)


def error_response(code: int, message: str, data: Optional[T] = None) -> ApiResponse[T]:
    """创建错误响应"""
    return ApiResponse(code=code, message=message, data=data)

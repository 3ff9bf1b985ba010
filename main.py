"""
@description FastAPI 应用入口
@responsibility 创建所有服务、注册任务处理器、启动任务队列/调度器/下载管理器并集成路由
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api import config, downloads, jobs, system, tasks
from app.api.deps import Services
from app.core.config import load_config
from app.core.database import Database
from app.core.logging import setup_logging
from app.models.task import TaskType
from app.schemas.api import ApiResponse, success_response
from app.services.anidb_client import AnidbClient
from app.services.anilist_client import AniListClient
from app.services.autodownload import AutoDownloadService
from app.services.catalog import CatalogStore
from app.services.catalog_refresher import CatalogRefresher
from app.services.download_manager import DownloadManager
from app.services.folder_scanner import FolderScanner
from app.services.nyaa_client import NyaaClient
from app.services.release_scanner import ReleaseScanner
from app.services.subsplease_client import SubsPleaseClient
from app.services.torrent_client import LibtorrentClient
from app.tasks.scheduler import ScheduledJobService
from app.tasks.task_queue import TaskQueue


@asynccontextmanager
async def lifespan(app: FastAPI):
    config_obj = load_config()
    setup_logging(config_obj.log.level, config_obj.log.file)
    logger.info("应用启动中...")

    db = Database(config_obj.database.url)
    await db.init_db()
    logger.info("数据库初始化完成")

    catalog = CatalogStore(db)
    nyaa = NyaaClient(config_obj.indexer, config_obj.http)
    anidb = AnidbClient(config_obj.anidb, catalog, config_obj.http)
    anilist = AniListClient(config_obj.http)
    subsplease = SubsPleaseClient(config_obj.http)
    if not config_obj.anidb.username:
        logger.warning("未配置 AniDB 账户，CRC 校正与 ID 查询将不可用")

    scanner = ReleaseScanner(catalog, nyaa, anidb, config_obj.indexer)
    refresher = CatalogRefresher(catalog, anilist, subsplease, anidb, scanner)

    download_manager = DownloadManager(
        LibtorrentClient(), catalog, max_active=config_obj.download.max_active_transfers
    )
    task_queue = TaskQueue(db)
    folder_scanner = FolderScanner(catalog, download_manager)
    autodownload = AutoDownloadService(catalog, task_queue, download_manager)
    job_service = ScheduledJobService(db, task_queue)

    task_queue.register_handler(TaskType.SCAN_RELEASES, scanner.handle_task)
    task_queue.register_handler(TaskType.REFRESH_QUARTER, refresher.handle_task)
    task_queue.register_handler(TaskType.SCAN_FOLDER, folder_scanner.handle_task)
    task_queue.register_handler(TaskType.SCAN_AUTODOWNLOAD, autodownload.scan_candidates)
    task_queue.register_handler(TaskType.QUEUE_AUTODOWNLOAD, autodownload.queue_downloads)

    app.state.services = Services(
        catalog=catalog,
        task_queue=task_queue,
        job_service=job_service,
        download_manager=download_manager,
    )

    await download_manager.start()
    await task_queue.start()
    await job_service.start()
    logger.info("后台服务已启动")

    yield

    job_service.shutdown()
    await task_queue.stop()
    await download_manager.stop()
    for client in (nyaa, anidb, anilist, subsplease):
        await client.close()
    await db.dispose()
    logger.info("应用已关闭")


# 全局异常处理器
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """处理 HTTP 异常"""
    logger.info(f"HTTP 异常处理器被调用: {exc.status_code} - {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ApiResponse(code=exc.status_code, message=exc.detail, data=None).model_dump(),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """处理请求参数验证错误"""
    logger.info(f"验证错误处理器被调用: {len(exc.errors())} 个错误")
    errors = [
        {"loc": list(error["loc"]), "msg": error["msg"], "type": error["type"]}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content=ApiResponse(
            code=422, message="请求参数验证失败", data={"errors": errors}
        ).model_dump(),
    )


async def value_error_handler(request: Request, exc: ValueError):
    """服务层的参数错误"""
    logger.info(f"参数错误: {exc}")
    return JSONResponse(
        status_code=400,
        content=ApiResponse(code=400, message=str(exc), data=None).model_dump(),
    )


async def lookup_error_handler(request: Request, exc: LookupError):
    """服务层的资源不存在错误"""
    logger.info(f"资源不存在: {exc}")
    return JSONResponse(
        status_code=404,
        content=ApiResponse(code=404, message=str(exc), data=None).model_dump(),
    )


async def general_exception_handler(request: Request, exc: Exception):
    """处理通用异常"""
    logger.info(f"通用异常处理器被调用: {type(exc).__name__}")
    logger.exception(f"服务器内部错误: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content=ApiResponse(code=500, message="服务器内部错误", data=None).model_dump(),
    )


async def root():
    return success_response(
        data={"message": "番剧种子追踪 API", "version": "1.0.0"},
        message="服务运行中",
    )


async def health_check():
    return success_response(data={"status": "healthy"}, message="健康检查通过")


def create_app(lifespan_handler=lifespan) -> FastAPI:
    """创建应用；测试中传入 None 并自行设置 app.state.services"""
    app = FastAPI(
        title="番剧种子追踪",
        description="追踪 nyaa 上的番剧种子，结合 AniDB 校正集数并自动下载",
        version="1.0.0",
        lifespan=lifespan_handler,
    )

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValueError, value_error_handler)
    app.add_exception_handler(LookupError, lookup_error_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(tasks.router, prefix="/api", tags=["tasks"])
    app.include_router(jobs.router, prefix="/api", tags=["jobs"])
    app.include_router(downloads.router, prefix="/api", tags=["downloads"])
    app.include_router(config.router, prefix="/api", tags=["config"])
    app.include_router(system.router, prefix="/api", tags=["system"])

    app.add_api_route("/", root, methods=["GET"])
    app.add_api_route("/health", health_check, methods=["GET"])
    return app


app = create_app()

"""
@description 用户配置接口
@responsibility 查询和修改下载目录、自动下载开关与限速，修改后立即应用限速
"""

from fastapi import APIRouter, Depends, HTTPException
from loguru import logger

from app.api.deps import Services, get_services
from app.schemas.api import (
    ApiResponse,
    ConfigurationResponse,
    UpdateConfigurationRequest,
    success_response,
)

router = APIRouter()

SWITCH_FIELDS = (
    "enable_automatic_anime_folder_classification",
    "enable_auto_download_episodes",
)


@router.get("/configuration", response_model=ApiResponse[ConfigurationResponse])
async def get_configuration(services: Services = Depends(get_services)):
    configuration = await services.catalog.get_configuration()
    return success_response(
        data=ConfigurationResponse.model_validate(configuration), message="获取配置成功"
    )


@router.put("/configuration", response_model=ApiResponse[ConfigurationResponse])
async def update_configuration(
    request: UpdateConfigurationRequest, services: Services = Depends(get_services)
):
    # 目录与限速可以显式置空，开关不可以
    fields = {
        key: value
        for key, value in request.model_dump(exclude_unset=True).items()
        if value is not None or key not in SWITCH_FIELDS
    }
    try:
        configuration = await services.catalog.update_configuration(**fields)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"[update_configuration] 更新字段: {', '.join(fields) or '无'}")
    await services.download_manager.apply_rate_limits()
    return success_response(
        data=ConfigurationResponse.model_validate(configuration), message="配置已更新"
    )

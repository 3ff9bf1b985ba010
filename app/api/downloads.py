"""
@description 下载接口
@responsibility 为番剧的种子开始下载，查询、移除当前的下载
"""

from fastapi import APIRouter, Depends, HTTPException, Response
from loguru import logger

from app.api.deps import Services, get_services
from app.schemas.api import ApiResponse, TransferItem, success_response

router = APIRouter()


@router.post(
    "/anime/{anime_id}/torrents/{torrent_id}/download",
    response_model=ApiResponse[TransferItem],
    status_code=202,
)
async def download_torrent(
    anime_id: int, torrent_id: int, services: Services = Depends(get_services)
):
    anime = await services.catalog.get_anime(anime_id)
    if anime is None:
        raise HTTPException(status_code=404, detail=f"番剧不存在: {anime_id}")
    torrent = await services.catalog.get_anime_torrent(anime_id, torrent_id)
    if torrent is None:
        raise HTTPException(status_code=404, detail=f"种子不存在: {torrent_id}")

    try:
        transfer = await services.download_manager.download(
            torrent.link,
            anime_title=anime.display_title,
            anime_id=anime.id,
            torrent_id=torrent.id,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"[download_torrent] {torrent.title} -> {transfer.status}")
    return success_response(data=TransferItem(**transfer.to_dict()), message="下载已开始")


@router.get("/transfers", response_model=ApiResponse[list[TransferItem]])
async def list_transfers(services: Services = Depends(get_services)):
    transfers = services.download_manager.list_transfers()
    return success_response(
        data=[TransferItem(**t.to_dict()) for t in transfers], message="获取下载列表成功"
    )


@router.get("/transfers/{key}", response_model=ApiResponse[TransferItem])
async def get_transfer(key: str, services: Services = Depends(get_services)):
    transfer = services.download_manager.get_status(key)
    if transfer is None:
        raise HTTPException(status_code=404, detail="下载不存在")
    return success_response(data=TransferItem(**transfer.to_dict()), message="获取下载状态成功")


@router.delete("/transfers/{key}", response_model=ApiResponse[None])
async def remove_transfer(key: str, services: Services = Depends(get_services)):
    removed = await services.download_manager.remove(key)
    if not removed:
        raise HTTPException(status_code=404, detail="下载不存在")
    return success_response(data=None, message="下载已移除")

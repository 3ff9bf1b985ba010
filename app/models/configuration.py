"""
@description 用户可修改的运行时配置
@responsibility 单行记录下载目录、目录分类开关、自动下载开关和限速
"""

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Integer, String

from app.core.database import Base


class Configuration(Base):
    __tablename__ = "configuration"

    # 固定为 1 的单行表
    id = Column(Integer, primary_key=True, default=1)
    anime_location = Column(String(1024), nullable=True)
    enable_automatic_anime_folder_classification = Column(
        Boolean, nullable=False, default=False
    )
    enable_auto_download_episodes = Column(Boolean, nullable=False, default=False)
    # 字节/秒，None 或 0 表示不限速
    max_download_rate = Column(BigInteger, nullable=True)
    max_upload_rate = Column(BigInteger, nullable=True)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

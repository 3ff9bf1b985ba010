"""
@description 本地文件与种子的对应记录
@responsibility 记录下载完成或扫描匹配到的文件属于哪个种子
"""

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String

from app.core.database import Base


class FileDownload(Base):
    __tablename__ = "file_downloads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # 不建外键：目录扫描需要发现并清理种子已被删除的记录
    torrent_id = Column(Integer, nullable=False, unique=True)
    file_path = Column(String(2048), nullable=False, unique=True)
    file_name = Column(String(1024), nullable=False)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

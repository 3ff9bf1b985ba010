"""
@description AniDB 查询缓存模型
@responsibility 以请求 URL 为键缓存 AniDB 查询结果（包括未找到）和页面内容
"""

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, Text

from app.core.database import Base


class MetadataCache(Base):
    __tablename__ = "anidb_cache"

    url = Column(String(1024), primary_key=True)
    last_query = Column(DateTime, nullable=False, default=datetime.now, index=True)
    # None 表示查询过但没有结果（负缓存）
    anidb_id = Column(Integer, nullable=True)
    html = Column(Text, nullable=True)

"""
@description 种子与字幕组数据模型
@responsibility 记录匹配到剧集的种子、字幕组及番剧级别的字幕组开关
"""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.core.database import Base


class SubGroup(Base):
    __tablename__ = "sub_groups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    anidb_id = Column(Integer, nullable=True)
    default_enabled = Column(Boolean, nullable=False, default=True)


class AnimeSubGroup(Base):
    """番剧级别的字幕组开关，覆盖 SubGroup.default_enabled"""

    __tablename__ = "anime_sub_groups"

    anime_id = Column(
        Integer, ForeignKey("anime.id", ondelete="CASCADE"), primary_key=True
    )
    sub_group_id = Column(
        Integer, ForeignKey("sub_groups.id", ondelete="CASCADE"), primary_key=True
    )
    enabled = Column(Boolean, nullable=False, default=True)


class Torrent(Base):
    __tablename__ = "torrents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    episode_id = Column(
        Integer, ForeignKey("episodes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sub_group_id = Column(
        Integer, ForeignKey("sub_groups.id", ondelete="SET NULL"), nullable=True, index=True
    )
    title = Column(String(1024), nullable=False)
    link = Column(String(1024), nullable=False)
    date = Column(DateTime, nullable=False)
    episode_number = Column(Integer, nullable=True)
    season_number = Column(Integer, nullable=True)
    resolved_by_crc = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.now)

    sub_group = relationship("SubGroup", lazy="joined")

    __table_args__ = (UniqueConstraint("link", name="uq_torrent_link"),)

    def __repr__(self):
        return f"<Torrent {self.title}>"

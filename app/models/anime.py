"""
@description 番剧目录数据模型
@responsibility 记录番剧、剧集、别名以及季度抓取时间
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.core.database import Base


class QuarterQuery(Base):
    __tablename__ = "quarter_query"

    quarter = Column(String(2), primary_key=True)
    year = Column(Integer, primary_key=True)
    last_fetched = Column(DateTime, nullable=False, default=datetime.now)


class Anime(Base):
    __tablename__ = "anime"

    # AniList 的 media id，直接作为主键
    id = Column(Integer, primary_key=True, autoincrement=False)
    id_mal = Column(Integer, nullable=True)
    anidb_id = Column(Integer, nullable=True, index=True)
    quarter = Column(String(2), nullable=False)
    year = Column(Integer, nullable=False)
    title_romaji = Column(String(512), nullable=True)
    title_english = Column(String(512), nullable=True)
    title_native = Column(String(512), nullable=True)
    description = Column(Text, nullable=True)
    image = Column(String(1024), nullable=True)
    start_date = Column(Date, nullable=True)
    genres = Column(JSON, default=list)
    season = Column(Integer, nullable=False, default=1)
    autodownload = Column(Boolean, nullable=False, default=False)
    last_torrent_scan = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.now)

    episodes = relationship(
        "Episode",
        back_populates="anime",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Episode.episode_number",
    )
    alternative_titles = relationship(
        "AlternativeTitle",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )

    @property
    def display_title(self) -> str:
        return self.title_english or self.title_romaji or self.title_native or "Unknown"

    def __repr__(self):
        return f"<Anime {self.id} {self.display_title}>"


class Episode(Base):
    __tablename__ = "episodes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    anime_id = Column(
        Integer, ForeignKey("anime.id", ondelete="CASCADE"), nullable=False, index=True
    )
    episode_number = Column(Integer, nullable=False)
    airing_at = Column(DateTime, nullable=True)

    anime = relationship("Anime", back_populates="episodes")

    __table_args__ = (
        UniqueConstraint("anime_id", "episode_number", name="uq_anime_episode"),
    )


class AlternativeTitle(Base):
    __tablename__ = "alternative_titles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    anime_id = Column(
        Integer, ForeignKey("anime.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title = Column(String(512), nullable=False)

    __table_args__ = (
        UniqueConstraint("anime_id", "title", name="uq_anime_alternative_title"),
    )

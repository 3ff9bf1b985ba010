"""
@description AniList GraphQL 客户端
@responsibility 按季度查询番剧列表，供季度刷新使用
"""

import asyncio
from typing import Optional

import httpx
from loguru import logger

from app.core.config import HttpConfig
from app.core.errors import FetchError

ANILIST_GRAPHQL_URL = "https://graphql.anilist.co/"

QUARTER_TO_SEASON = {
    "Q1": "WINTER",
    "Q2": "SPRING",
    "Q3": "SUMMER",
    "Q4": "FALL",
}

MEDIA_QUERY = """
query (
    $season: MediaSeason,
    $year: Int,
    $format: MediaFormat,
    $excludeFormat: MediaFormat,
    $minEpisodes: Int,
    $page: Int
) {
    Page(page: $page) {
        pageInfo { hasNextPage total }
        media(
            season: $season
            seasonYear: $year
            format: $format
            format_not: $excludeFormat
            episodes_greater: $minEpisodes
            isAdult: false
            type: ANIME
            sort: TITLE_ROMAJI
        ) {
            id
            idMal
            title { romaji native english }
            startDate { year month day }
            status
            format
            genres
            episodes
            description
            coverImage { extraLarge }
            airingSchedule { nodes { episode airingAt } }
        }
    }
}
"""

# 上一季度中集数超过该值的番剧视为跨季度长篇
LONG_RUNNING_MIN_EPISODES = 16


def previous_quarter(quarter: str, year: int) -> tuple[str, int]:
    if quarter == "Q1":
        return "Q4", year - 1
    index = ["Q1", "Q2", "Q3", "Q4"].index(quarter)
    return f"Q{index}", year


class AniListClient:
    """无状态的 AniList 查询客户端"""

    def __init__(self, http_config: Optional[HttpConfig] = None, client: Optional[httpx.AsyncClient] = None):
        http_config = http_config or HttpConfig()
        self._client = client or httpx.AsyncClient(timeout=http_config.timeout)

    async def _query(self, season: str, year: int, **options) -> list[dict]:
        variables = {"season": season, "year": year, "page": 1}
        variables.update({k: v for k, v in options.items() if v is not None})

        response = await self._client.post(
            ANILIST_GRAPHQL_URL,
            json={"query": MEDIA_QUERY, "variables": variables},
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )
        if not response.is_success:
            raise FetchError(f"AniList 请求失败: HTTP {response.status_code}")

        data = response.json()
        if data.get("errors"):
            raise FetchError(f"AniList 返回错误: {data['errors'][0].get('message')}")
        return data["data"]["Page"]["media"] or []

    async def fetch_quarter_media(self, quarter: str, year: int) -> list[dict]:
        """
        查询季度番剧：本季 TV、本季非 TV，以及上一季度仍在播出的长篇
        """
        if quarter not in QUARTER_TO_SEASON:
            raise ValueError(f"无效的季度: {quarter}")

        prev_quarter, prev_year = previous_quarter(quarter, year)
        season = QUARTER_TO_SEASON[quarter]
        results = await asyncio.gather(
            self._query(season, year, format="TV"),
            self._query(season, year, excludeFormat="TV"),
            self._query(
                QUARTER_TO_SEASON[prev_quarter], prev_year, minEpisodes=LONG_RUNNING_MIN_EPISODES
            ),
        )

        media = [item for batch in results for item in batch]
        logger.info(f"AniList {quarter} {year}: 共 {len(media)} 部番剧")
        return media

    async def close(self) -> None:
        await self._client.aclose()

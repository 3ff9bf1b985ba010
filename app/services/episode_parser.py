"""
@description 种子标题解析器
@responsibility 从发布标题中提取集数、季数、字幕组、CRC 校验值以及番剧名称片段

纯函数模块，不依赖数据库与网络。
"""

import re
from typing import Optional

from loguru import logger

# 集数匹配规则，按优先级排列，第一个命中的规则生效
EPISODE_PATTERNS = [
    re.compile(r"\bS\d{1,2}E(\d{1,3})(?:v\d+|\s+v\d+)?\b", re.IGNORECASE),
    re.compile(r"\bSeason\s*\d{1,2}\s*Episode\s*(\d{1,3})(?:v\d+|\s+v\d+)?\b", re.IGNORECASE),
    re.compile(r"\bEpisode\s*(\d{1,3})(?:v\d+|\s+v\d+)?\b", re.IGNORECASE),
    re.compile(r"\bEp(?:isode)?\.?\s*(\d{1,3})(?:v\d+|\s+v\d+)?\b", re.IGNORECASE),
    # "- 05" 后紧跟画质、编码或括号
    re.compile(
        r"-\s*(\d{1,3})(?:v\d+|\s+v\d+)?"
        r"(?=\s*(?:\(|\[|1080p|720p|480p|AV1|WEB|HEVC|BILI|VOSTFR|$))",
        re.IGNORECASE,
    ),
    re.compile(r"\b-?\s*(?:#)?(\d{1,3})(?:v\d+|\s+v\d+)?\b(?=\s*(?:v\d+|\(|\[|$))", re.IGNORECASE),
    re.compile(r"\b(\d{1,3})(?:v\d+|\s+v\d+)\b", re.IGNORECASE),
]

SEASON_PATTERNS = [
    re.compile(r"\bS(\d{1,2})E\d{1,3}\b", re.IGNORECASE),
    re.compile(r"\bSeason\s*(\d{1,2})\s*Episode\s*\d{1,3}\b", re.IGNORECASE),
    re.compile(r"\b(\d{1,2})(?:st|nd|rd|th)\s+Season\b", re.IGNORECASE),
    re.compile(r"\bSeason\s*(\d{1,2})\b", re.IGNORECASE),
    re.compile(r"\bS(\d{1,2})\b", re.IGNORECASE),
]

DEFAULT_SEASON = 1

_NAME_BEFORE_EPISODE = re.compile(r"^(.+?)\s*-\s*(?:\d{1,3}|Episode|Ep\.?)", re.IGNORECASE)
_TRAILING_NUMBER = re.compile(r"(?<!\d)(\d{1,2})\s*$")
_SUB_GROUP = re.compile(r"^\[([^\]]+)\]")
_CRC = re.compile(r"\[([A-F0-9]{8})\]", re.IGNORECASE)
_BRACKETS = re.compile(r"\[[^\]]+\]")
_PARENS = re.compile(r"\([^)]*\)")


def _normalize_dots(title: str) -> str:
    return title.replace("。", ".")


def _to_int(digits: str) -> Optional[int]:
    try:
        return int(digits.lstrip("0") or digits)
    except ValueError:
        return None


def parse_episode(title: Optional[str]) -> Optional[int]:
    """解析集数，无法识别时返回 None"""
    if not title or not isinstance(title, str):
        return None

    text = _normalize_dots(title)
    for pattern in EPISODE_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1):
            episode = _to_int(match.group(1))
            if episode is not None:
                logger.debug(f"[episode] {title} -> {episode}")
                return episode

    logger.debug(f"[episode] 未识别集数: {title}")
    return None


def parse_season(title: Optional[str]) -> Optional[int]:
    """
    解析季数

    依次尝试 S01E02、Season N Episode M、2nd Season、Season N、S2，
    都不命中时取集数标记之前的名称片段末尾的数字，最终默认第 1 季。
    """
    if not title or not isinstance(title, str):
        return None

    text = _normalize_dots(title)
    for pattern in SEASON_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1):
            season = _to_int(match.group(1))
            if season is not None:
                logger.debug(f"[season] {title} -> {season}")
                return season

    without_brackets = re.sub(r"\[.*?\]", "", text).strip()
    name_match = _NAME_BEFORE_EPISODE.match(without_brackets)
    if name_match:
        anime_name = name_match.group(1).strip()
    else:
        anime_name = without_brackets.split("-")[0].strip()

    trailing = _TRAILING_NUMBER.search(anime_name)
    if trailing:
        season = _to_int(trailing.group(1))
        if season is not None:
            logger.debug(f"[season] 名称末尾数字 {anime_name} -> {season}")
            return season

    return DEFAULT_SEASON


def parse_sub_group(title: Optional[str]) -> Optional[str]:
    """标题开头方括号内的字幕组名"""
    if not title:
        return None
    match = _SUB_GROUP.match(title.strip())
    if match:
        name = match.group(1).strip()
        return name or None
    return None


def parse_crc(title: Optional[str]) -> Optional[str]:
    """方括号内 8 位十六进制校验值，统一大写"""
    if not title:
        return None
    match = _CRC.search(title)
    return match.group(1).upper() if match else None


def extract_anime_name(title: Optional[str]) -> str:
    """截取最早的集数标记之前的番剧名称片段"""
    if not title:
        return ""

    cutoff = len(title)
    for pattern in EPISODE_PATTERNS:
        match = pattern.search(title)
        if match and match.start() < cutoff:
            cutoff = match.start()

    name = title[:cutoff]
    name = _BRACKETS.sub(" ", name)
    name = _PARENS.sub(" ", name)
    name = re.sub(r"[_.]+", " ", name)
    name = re.sub(r"[-_:]+$", " ", name.rstrip())
    return re.sub(r"\s+", " ", name).strip()


def normalize_title_term(term: Optional[str]) -> str:
    """小写，去掉方括号/圆括号内容和标点，合并空白"""
    if not term:
        return ""

    text = term.lower()
    text = _BRACKETS.sub(" ", text)
    text = _PARENS.sub(" ", text)
    text = re.sub(r"[^\w\s]", " ", text)
    text = re.sub(r"[_\-]+", " ", text)
    return re.sub(r"\s+", " ", text).strip()

"""
@description 标题模糊匹配
@responsibility 为番剧挑选最匹配的别名，并从元数据中推断季数
"""

import re
from typing import Iterable, Optional

from loguru import logger

from app.services.episode_parser import normalize_title_term

ALTERNATE_TITLE_THRESHOLD = 0.7

STOP_WORDS = frozenset(
    ["the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by"]
)

ORDINALS = {
    "first": 1,
    "second": 2,
    "third": 3,
    "fourth": 4,
    "fifth": 5,
    "sixth": 6,
    "seventh": 7,
    "eighth": 8,
    "ninth": 9,
    "tenth": 10,
    "eleventh": 11,
    "twelfth": 12,
    "thirteenth": 13,
    "fourteenth": 14,
    "fifteenth": 15,
    "sixteenth": 16,
    "seventeenth": 17,
    "eighteenth": 18,
    "nineteenth": 19,
    "twentieth": 20,
}
_FIRST_TEN = "|".join(list(ORDINALS)[:10])
_ALL_ORDINALS = "|".join(ORDINALS)

_DESCRIPTION_SEASON_PATTERNS = [
    re.compile(rf"\bthe\s+({_ALL_ORDINALS})\s+and\s+final\s+season\s+of\b"),
    re.compile(rf"\bthe\s+({_FIRST_TEN})\s+season\s+of\b"),
    re.compile(rf"\bthe\s+({_FIRST_TEN})\s+part\s+of\b"),
    re.compile(rf"\bthe\s+({_FIRST_TEN})\s+half\s+of\b"),
]


def _significant_words(text: str) -> list[str]:
    # 只去掉两个字母以内的停用词，the/and/for/but 等仍参与计分
    return [w for w in text.split() if len(w) > 2 or w not in STOP_WORDS]


def matches_anime_title(alternate_title: Optional[str], anime_title: Optional[str]) -> float:
    """
    计算别名与番剧标题的匹配度（0~1）

    别名中有效词出现在番剧标题词集合中的比例。两者完全相同时返回 0，
    那是主标题而不是别名。
    """
    if not alternate_title or not anime_title:
        return 0.0
    if alternate_title == anime_title:
        return 0.0

    alternate_words = _significant_words(normalize_title_term(alternate_title))
    anime_words = set(_significant_words(normalize_title_term(anime_title)))
    if not alternate_words or not anime_words:
        return 0.0

    matched = sum(1 for word in alternate_words if word in anime_words)
    return matched / len(alternate_words)


def best_alternate_title(
    alternates: Iterable[str],
    anime_titles: Iterable[Optional[str]],
    threshold: float = ALTERNATE_TITLE_THRESHOLD,
) -> Optional[str]:
    """只返回得分最高且不低于阈值的一个别名"""
    titles = [t for t in anime_titles if t]
    if not titles:
        return None

    best_title = None
    best_score = 0.0
    for alternate in alternates:
        score = max(matches_anime_title(alternate, title) for title in titles)
        if score > best_score:
            best_score = score
            best_title = alternate

    if best_title is not None and best_score >= threshold:
        logger.debug(f"匹配到别名: {best_title} ({best_score:.1%})")
        return best_title
    return None


def extract_season_from_metadata(
    titles: Iterable[Optional[str]], description: Optional[str] = None
) -> int:
    """从标题和简介推断番剧季数，默认第 1 季"""
    title_text = " ".join(t or "" for t in titles).lower()
    description_text = (description or "").lower()

    match = re.search(r"\bseason\s+(\d+)\b", title_text)
    if match:
        return int(match.group(1))

    for ordinal, number in list(ORDINALS.items())[:10]:
        if f"{ordinal} season" in title_text:
            return number

    match = re.search(r"\s+(\d+)\s*$", title_text)
    if match and 1 <= int(match.group(1)) <= 20:
        return int(match.group(1))

    for pattern in _DESCRIPTION_SEASON_PATTERNS:
        match = pattern.search(description_text)
        if match:
            return ORDINALS[match.group(1)]

    return 1

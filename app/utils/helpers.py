"""
@description 通用工具函数
@responsibility 提供项目级别的辅助功能
"""

from __future__ import annotations

import base64
import binascii
import re
from typing import Optional

INVALID_FOLDER_CHARS = re.compile(r'[<>:"/\\|?*]')


def parse_info_hash_from_magnet(magnet: str) -> Optional[str]:
    """
    从 magnet 链接中解析 info_hash (BTIH)

    支持 40 位 hex 和 32 位 base32 两种格式，统一返回 40 位小写 hex，
    解析失败返回 None。

    Examples:
        >>> parse_info_hash_from_magnet("magnet:?xt=urn:btih:0123456789abcdef0123456789abcdef01234567")
        '0123456789abcdef0123456789abcdef01234567'
    """
    if not magnet or not isinstance(magnet, str):
        return None

    match = re.search(r"xt=urn:btih:([a-fA-F0-9]{40}|[A-Z2-7]{32})", magnet, re.IGNORECASE)
    if not match:
        return None

    hash_str = match.group(1)
    if len(hash_str) == 40:
        return hash_str.lower()

    try:
        return base64.b32decode(hash_str.upper()).hex()
    except binascii.Error:
        return None


def sanitize_folder_name(name: str) -> str:
    """
    把番剧标题转换为可用的目录名

    Windows 不允许的字符替换为空格，合并空白并去掉首尾的点和空格。
    """
    cleaned = INVALID_FOLDER_CHARS.sub(" ", name or "")
    cleaned = re.sub(r"\s+", " ", cleaned).strip().strip(".").strip()
    return cleaned or "Unknown"

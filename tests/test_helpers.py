"""
@description 通用工具函数测试
"""

import pytest

from app.utils.helpers import parse_info_hash_from_magnet, sanitize_folder_name


class TestParseInfoHash:
    def test_hex_lowercased(self):
        magnet = "magnet:?xt=urn:btih:0123456789ABCDEF0123456789ABCDEF01234567&dn=x"
        assert parse_info_hash_from_magnet(magnet) == "0123456789abcdef0123456789abcdef01234567"

    def test_base32(self):
        magnet = "magnet:?xt=urn:btih:AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
        assert parse_info_hash_from_magnet(magnet) == "0" * 40

    @pytest.mark.parametrize("value", [None, "", "https://nyaa.si/download/1.torrent", "magnet:?dn=x"])
    def test_invalid(self, value):
        assert parse_info_hash_from_magnet(value) is None


class TestSanitizeFolderName:
    @pytest.mark.parametrize(
        "name, expected",
        [
            ("Re:Zero / Season 3", "Re Zero Season 3"),
            ("Dr. Stone.", "Dr. Stone"),
            ("  ", "Unknown"),
            (None, "Unknown"),
        ],
    )
    def test_sanitize(self, name, expected):
        assert sanitize_folder_name(name) == expected

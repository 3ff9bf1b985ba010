"""
@description AniDB 客户端测试
@responsibility 验证 id 查询与缓存、字幕组搜索结果解析、CRC 查集数和会话失效重登录
"""

import asyncio
import time

import httpx
import pytest

from app.core.config import AnidbConfig
from app.services.anidb_client import (
    LOGIN_URL,
    AnidbClient,
    find_episode_by_crc,
    find_group_in_results,
)
from conftest import add_anime

GROUP_RESULTS = """
<table class="grouplist">
  <thead><tr><th>Name</th></tr></thead>
  <tbody>
    <tr><td data-label="Title"><a href="/group/100">SubsPlease Fansubs</a></td></tr>
    <tr><td data-label="Title"><a href="/group/15000">SubsPlease</a></td></tr>
  </tbody>
</table>
"""

RELEASE_PAGE = """
<div class="g_definitionlist">
  <table>
    <tr class="anime"><th class="field">Anime</th>
      <td class="value"><a href="/anime/18000">Tougen Anki</a></td></tr>
  </table>
</div>
<table class="filelist">
  <tbody>
    <tr><td class="epno"><a href="/episode/1">5</a></td><td class="crc">abcd1234</td></tr>
    <tr><td class="epno">6</td><td class="crc">FFFF0000</td></tr>
  </tbody>
</table>
"""


def make_client(catalog, handler, **config) -> AnidbClient:
    values = {"min_interval": 0}
    values.update(config)
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AnidbClient(AnidbConfig(**values), catalog, client=http)


class TestPageParsing:
    def test_find_group_in_results(self):
        assert find_group_in_results(GROUP_RESULTS, "SubsPlease") == 15000
        assert find_group_in_results(GROUP_RESULTS, "Erai-raws") is None

    def test_find_episode_by_crc(self):
        assert find_episode_by_crc(RELEASE_PAGE, "ABCD1234") == 5
        assert find_episode_by_crc(RELEASE_PAGE, "ffff0000") == 6
        assert find_episode_by_crc(RELEASE_PAGE, "00000000") is None
        assert find_episode_by_crc("<html></html>", "ABCD1234") is None


class TestLookupId:
    @pytest.mark.asyncio
    async def test_redirect_gives_id_and_is_cached(self, catalog):
        requests = []

        def handler(request: httpx.Request):
            requests.append(request)
            return httpx.Response(302, headers={"location": "https://anidb.net/anime/18000"})

        client = make_client(catalog, handler)

        assert await client.get_anime_id("Tougen Anki") == 18000
        assert await client.get_anime_id("Tougen Anki") == 18000
        assert len(requests) == 1
        assert requests[0].url.params["adb.search"] == "Tougen Anki"

    @pytest.mark.asyncio
    async def test_group_search_results(self, catalog):
        client = make_client(catalog, lambda request: httpx.Response(200, text=GROUP_RESULTS))
        assert await client.get_group_id("SubsPlease") == 15000

    @pytest.mark.asyncio
    async def test_errors_are_negatively_cached(self, catalog):
        requests = []

        def handler(request: httpx.Request):
            requests.append(request)
            raise httpx.ConnectError("boom", request=request)

        client = make_client(catalog, handler)

        assert await client.get_group_id("Nobody") is None
        assert await client.get_group_id("Nobody") is None
        assert len(requests) == 1

    @pytest.mark.asyncio
    async def test_blank_term(self, catalog):
        client = make_client(catalog, lambda request: httpx.Response(500))
        assert await client.get_anime_id("  ") is None


class TestEpisodeByCrc:
    @pytest.mark.asyncio
    async def test_episode_and_season_from_release_page(self, db, catalog):
        await add_anime(db, anime_id=1, anidb_id=18000, season=2)
        requests = []

        def handler(request: httpx.Request):
            requests.append(request)
            return httpx.Response(200, text=RELEASE_PAGE)

        client = make_client(catalog, handler)

        assert await client.get_episode_by_crc(15000, 18000, "ABCD1234") == (5, 2)
        # 发布页已缓存
        assert await client.get_episode_by_crc(15000, 18000, "FFFF0000") == (6, 2)
        assert len(requests) == 1
        assert requests[0].url.path == "/group/15000/anime/18000/release"

    @pytest.mark.asyncio
    async def test_missing_inputs(self, catalog):
        client = make_client(catalog, lambda request: httpx.Response(500))
        assert await client.get_episode_by_crc(None, 18000, "ABCD1234") == (None, None)
        assert await client.get_episode_by_crc(15000, 18000, None) == (None, None)


class TestSession:
    @pytest.mark.asyncio
    async def test_relogin_when_session_expired(self, catalog):
        logins = []
        lookups = []

        def handler(request: httpx.Request):
            if request.method == "POST" and str(request.url) == LOGIN_URL:
                logins.append(request)
                return httpx.Response(
                    302,
                    headers=[
                        ("location", "https://anidb.net/"),
                        ("set-cookie", f"adbsess=s{len(logins)}; path=/"),
                        ("set-cookie", "adbuin=1; path=/"),
                    ],
                )
            lookups.append(request)
            if len(lookups) == 1:
                return httpx.Response(
                    302, headers={"location": "https://anidb.net/perl-bin/animedb.pl?show=login"}
                )
            return httpx.Response(302, headers={"location": "https://anidb.net/anime/5"})

        client = make_client(catalog, handler, username="user", password="pass")

        assert await client.get_anime_id("Some Show") == 5
        assert len(logins) == 2
        assert "adbsess=s2" in lookups[-1].headers["cookie"]

    @pytest.mark.asyncio
    async def test_login_rejected_is_anonymous(self, catalog):
        def handler(request: httpx.Request):
            if request.method == "POST":
                return httpx.Response(200, text="wrong password")
            assert "cookie" not in request.headers
            return httpx.Response(302, headers={"location": "https://anidb.net/anime/7"})

        client = make_client(catalog, handler, username="user", password="bad")
        assert await client.get_anime_id("Another Show") == 7


class TestRequestPacing:
    @pytest.mark.asyncio
    async def test_requests_spaced_including_login(self, catalog):
        """登录请求和随后的查询之间同样保持最小间隔"""
        starts = []

        def handler(request: httpx.Request):
            starts.append((request.method, time.monotonic()))
            if request.method == "POST":
                return httpx.Response(
                    302,
                    headers=[("location", "https://anidb.net/"), ("set-cookie", "adbsess=s1; path=/")],
                )
            return httpx.Response(302, headers={"location": "https://anidb.net/anime/5"})

        client = make_client(catalog, handler, username="user", password="pass", min_interval=0.2)

        results = await asyncio.gather(client.get_anime_id("Show A"), client.get_anime_id("Show B"))

        assert results == [5, 5]
        assert [method for method, _ in starts] == ["POST", "GET", "GET"]
        gaps = [later - earlier for (_, earlier), (_, later) in zip(starts, starts[1:])]
        assert all(gap >= 0.18 for gap in gaps)

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_login(self, catalog):
        logins = []

        async def handler(request: httpx.Request):
            logins.append(request)
            await asyncio.sleep(0.05)
            return httpx.Response(
                302,
                headers=[("location", "https://anidb.net/"), ("set-cookie", "adbsess=shared; path=/")],
            )

        client = make_client(catalog, handler, username="user", password="pass")

        cookies = await asyncio.gather(*(client._ensure_session() for _ in range(3)))

        assert len(logins) == 1
        assert cookies == ["adbsess=shared"] * 3

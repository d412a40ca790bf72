"""Tests for the rate-limited JSON client against a local aiohttp server."""

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from tenacity import wait_none

from market_aggregator.core.http import ApiClient
from market_aggregator.core.rate_limiter import RateLimiter
from market_aggregator.errors import UpstreamFetchError


@pytest.fixture
def no_backoff(monkeypatch):
    monkeypatch.setattr(ApiClient._request_with_retry.retry, "wait", wait_none())


@pytest.fixture
async def upstream():
    hits = {"flaky": 0, "broken": 0, "limited": 0}
    seen_headers = []

    async def markets(request):
        seen_headers.append(dict(request.headers))
        return web.json_response({"markets": [{"ticker": "KX-A"}], "q": dict(request.query)})

    async def flaky(request):
        hits["flaky"] += 1
        if hits["flaky"] < 2:
            return web.Response(status=502, text="bad gateway")
        return web.json_response({"ok": True})

    async def broken(request):
        hits["broken"] += 1
        return web.Response(status=500, text="boom")

    async def limited(request):
        hits["limited"] += 1
        if hits["limited"] == 1:
            return web.Response(status=429, headers={"Retry-After": "0"})
        return web.json_response([1, 2, 3])

    app = web.Application()
    app.router.add_get("/markets", markets)
    app.router.add_get("/flaky", flaky)
    app.router.add_get("/broken", broken)
    app.router.add_get("/limited", limited)

    server = TestServer(app)
    await server.start_server()
    server.hits = hits
    server.seen_headers = seen_headers
    yield server
    await server.close()


def _client(server, **kwargs):
    base_url = str(server.make_url(""))
    return ApiClient(base_url, RateLimiter("test", 100), **kwargs)


class TestApiClient:
    async def test_get_json_with_cleaned_params(self, upstream):
        client = _client(upstream)
        try:
            data = await client.get("/markets", params={"limit": 10, "closed": False, "cursor": None})
        finally:
            await client.close()

        assert data["markets"] == [{"ticker": "KX-A"}]
        assert data["q"] == {"limit": "10", "closed": "false"}

    async def test_404_returns_none(self, upstream):
        client = _client(upstream)
        try:
            assert await client.get("/missing") is None
        finally:
            await client.close()

    async def test_transient_error_is_retried(self, upstream, no_backoff):
        client = _client(upstream)
        try:
            assert await client.get("/flaky") == {"ok": True}
        finally:
            await client.close()

        assert upstream.hits["flaky"] == 2

    async def test_exhausted_retries_raise_upstream_error(self, upstream, no_backoff):
        client = _client(upstream)
        try:
            with pytest.raises(UpstreamFetchError) as exc_info:
                await client.get("/broken")
        finally:
            await client.close()

        assert exc_info.value.status == 500
        assert upstream.hits["broken"] == 3

    async def test_429_honours_retry_after(self, upstream, no_backoff):
        client = _client(upstream)
        try:
            assert await client.get("/limited") == [1, 2, 3]
        finally:
            await client.close()

        assert upstream.hits["limited"] == 2

    async def test_credentials_are_sent_per_request(self, upstream):
        client = _client(upstream, credentials=lambda method, path: {"X-Signed": f"{method} {path}"})
        try:
            await client.get("/markets")
        finally:
            await client.close()

        assert upstream.seen_headers[0]["X-Signed"] == "GET /markets"

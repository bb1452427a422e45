"""
API response memoization tests.

Upstream calls go through ``httpx.MockTransport``.
"""

import httpx
import pytest

from kanghoo.app.core.exceptions import UpstreamServiceError
from kanghoo.app.services.cache_manager import CacheManager


class Upstream:
    """Records requests and answers from a route table."""

    def __init__(self):
        self.calls = []
        self.routes = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((request.method, str(request.url), request.content))
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"error": "not found"})
        if isinstance(route, Exception):
            raise route
        return route


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
async def api_cache(clock, redis, upstream):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))
    manager = CacheManager(redis, http_client=http_client, clock=clock.time)
    yield manager
    await manager.shutdown()
    await http_client.aclose()


async def test_second_call_within_ttl_is_served_from_cache(api_cache, upstream):
    upstream.routes["/api/trips/active"] = httpx.Response(200, json={"trip": "t1"})

    first = await api_cache.cache_api_call("http://upstream/api/trips/active")
    second = await api_cache.cache_api_call("http://upstream/api/trips/active")

    assert first == second == {"trip": "t1"}
    assert len(upstream.calls) == 1


async def test_distinct_bodies_are_distinct_entries(api_cache, upstream):
    upstream.routes["/api/search"] = httpx.Response(200, json={"results": []})
    url = "http://upstream/api/search"

    await api_cache.cache_api_call(url, method="POST", body={"school": "A"})
    await api_cache.cache_api_call(url, method="POST", body={"school": "B"})
    await api_cache.cache_api_call(url, method="POST", body={"school": "A"})
    await api_cache.cache_api_call(url)

    assert len(upstream.calls) == 3


async def test_refetch_after_ttl(api_cache, upstream, clock):
    upstream.routes["/api/stats"] = httpx.Response(200, json={"n": 1})
    url = "http://upstream/api/stats"

    await api_cache.cache_api_call(url, ttl_seconds=30)
    clock.advance(31)
    await api_cache.cache_api_call(url, ttl_seconds=30)

    assert len(upstream.calls) == 2


async def test_error_response_is_raised_and_not_cached(api_cache, upstream):
    upstream.routes["/api/broken"] = httpx.Response(500, json={"error": "boom"})
    url = "http://upstream/api/broken"

    with pytest.raises(UpstreamServiceError) as exc_info:
        await api_cache.cache_api_call(url)
    assert exc_info.value.upstream_status == 500

    with pytest.raises(UpstreamServiceError):
        await api_cache.cache_api_call(url)
    assert len(upstream.calls) == 2


async def test_network_failure_is_raised(api_cache, upstream):
    upstream.routes["/api/down"] = httpx.ConnectError("connection refused")

    with pytest.raises(UpstreamServiceError) as exc_info:
        await api_cache.cache_api_call("http://upstream/api/down")

    assert exc_info.value.upstream_status is None
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


async def test_non_json_body_is_raised(api_cache, upstream):
    upstream.routes["/api/html"] = httpx.Response(200, text="<html></html>")

    with pytest.raises(UpstreamServiceError):
        await api_cache.cache_api_call("http://upstream/api/html")


async def test_preload_counts_successes(api_cache, upstream):
    upstream.routes["/api/trips/active"] = httpx.Response(200, json={"trip": None})
    upstream.routes["/api/statistics"] = httpx.Response(200, json={"trips": 0})

    warmed = await api_cache.preload([
        "http://upstream/api/trips/active",
        "http://upstream/api/statistics",
        "http://upstream/api/missing",
    ])

    assert warmed == 2


def test_cache_key_shape():
    key = CacheManager.api_cache_key("/api/x", "post", '{"a": 1}')

    assert key.startswith("api_POST_/api/x_")
    assert key == CacheManager.api_cache_key("/api/x", "POST", {"a": 1})


async def test_owned_http_client_is_closed_on_shutdown(clock):
    manager = CacheManager(clock=clock.time)
    client = manager.http_client

    await manager.shutdown()

    assert client.is_closed

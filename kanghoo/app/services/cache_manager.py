"""
Caching Service.

Two-tier cache: a bounded in-memory dict in front of Redis. Only keys
matching the persist allow-list are mirrored to Redis, under a namespace
prefix so a restart can recover them.

Storage faults never reach the caller: a failed read is a miss and a
failed write is logged. ``cache_api_call`` is the one operation that
raises, because an absent upstream result is not a safe default.
"""

import asyncio
import functools
import hashlib
import inspect
import json
import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Sequence

import httpx
from fastapi import Request, Response
from fastapi.encoders import jsonable_encoder
from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from kanghoo.app.core.exceptions import UpstreamServiceError
from kanghoo.app.core.scheduler import PeriodicTask
from kanghoo.app.schemas.cache import CacheEntry, CacheStats

logger = logging.getLogger(__name__)

DEFAULT_PERSIST_KEYS = ("user_data", "statistics", "settings", "theme_preference")

# Lifetimes per data class (seconds)
RESOURCE_TTL = 30 * 60
USER_DATA_TTL = 60 * 60
ACTIVE_TRIP_TTL = 2 * 60
STATISTICS_TTL = 10 * 60

USER_DATA_KEY = "user_data"
ACTIVE_TRIP_KEY = "active_trip"
STATISTICS_KEY = "statistics"


def _serialized_size(entry: CacheEntry) -> int:
    try:
        return len(entry.dumps().encode("utf-8"))
    except PydanticSerializationError:
        return len(repr(entry.data))


class CacheManager:
    """Memory + Redis cache with TTL and least-recently-accessed eviction."""

    def __init__(
        self,
        storage: Any = None,
        *,
        default_ttl_seconds: float = 300,
        max_memory_items: int = 100,
        storage_prefix: str = "kanghoo_cache_",
        persist_keys: Iterable[str] = DEFAULT_PERSIST_KEYS,
        cleanup_interval_seconds: float = 300,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.default_ttl = default_ttl_seconds
        self.max_memory_items = max_memory_items
        self.storage_prefix = storage_prefix
        self.persist_keys = tuple(persist_keys)
        self._clock = clock

        self._memory: Dict[str, CacheEntry] = {}
        self.hits = 0
        self.misses = 0
        self.last_cleanup: Optional[datetime] = None

        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._cleaner = PeriodicTask("cache-cleanup", cleanup_interval_seconds, self.cleanup)

    # Lifecycle

    def start(self) -> None:
        """Start the periodic cleanup."""
        self._cleaner.start()

    async def shutdown(self) -> None:
        """Stop the periodic cleanup and release the HTTP client we created."""
        await self._cleaner.stop()
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    # Core operations

    def should_persist(self, key: str) -> bool:
        return any(persist_key in key for persist_key in self.persist_keys)

    def _storage_key(self, key: str) -> str:
        return self.storage_prefix + key

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        entry = CacheEntry.create(value, ttl, self._clock())
        self._remember(key, entry)

        if self.storage is not None and self.should_persist(key):
            try:
                await self.storage.set(
                    self._storage_key(key), entry.dumps(), ex=max(1, math.ceil(ttl))
                )
            except Exception as e:
                logger.warning("Cache: failed to persist %s: %s", key, e)

    def _remember(self, key: str, entry: CacheEntry) -> None:
        if key not in self._memory and len(self._memory) >= self.max_memory_items:
            self._evict_least_recent()
        self._memory[key] = entry

    def _evict_least_recent(self) -> None:
        if not self._memory:
            return
        victim = min(self._memory, key=lambda k: self._memory[k].recency)
        del self._memory[victim]
        logger.debug("Cache: evicted %s", victim)

    async def get(self, key: str) -> Any:
        now = self._clock()
        entry = self._memory.get(key)

        if entry is None and self.storage is not None and self.should_persist(key):
            entry = await self._load(key)
            # Only live entries may take a memory slot
            if entry is not None and not entry.is_expired(now):
                self._remember(key, entry)

        if entry is None:
            self.misses += 1
            return None

        if entry.is_expired(now):
            await self.delete(key)
            self.misses += 1
            return None

        entry.last_access = now
        self.hits += 1
        return entry.data

    async def has(self, key: str) -> bool:
        """Whether a live entry exists. Hit counters and recency are untouched."""
        entry = self._memory.get(key)
        if entry is None and self.storage is not None and self.should_persist(key):
            entry = await self._load(key)
        if entry is None:
            return False
        if entry.is_expired(self._clock()):
            await self.delete(key)
            return False
        return True

    async def _load(self, key: str) -> Optional[CacheEntry]:
        try:
            raw = await self.storage.get(self._storage_key(key))
        except Exception as e:
            logger.warning("Cache: failed to read %s: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            return CacheEntry.model_validate_json(raw)
        except ValidationError:
            logger.warning("Cache: discarding corrupt entry %s", key)
            await self._storage_delete(self._storage_key(key))
            return None

    async def delete(self, key: str) -> None:
        self._memory.pop(key, None)
        if self.storage is not None:
            await self._storage_delete(self._storage_key(key))

    async def _storage_delete(self, storage_key: str) -> None:
        try:
            await self.storage.delete(storage_key)
        except Exception as e:
            logger.warning("Cache: failed to delete %s: %s", storage_key, e)

    async def clear(self) -> None:
        """Empty memory and every Redis key under our prefix."""
        self._memory.clear()
        if self.storage is None:
            return
        try:
            keys = [k async for k in self.storage.scan_iter(match=self.storage_prefix + "*")]
        except Exception as e:
            logger.warning("Cache: failed to list stored keys: %s", e)
            return
        for storage_key in keys:
            await self._storage_delete(storage_key)

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl_seconds: Optional[float] = None,
    ) -> Any:
        value = await self.get(key)
        if value is None:
            value = await factory()
            if value is not None:
                await self.set(key, value, ttl_seconds)
        return value

    # API responses

    @staticmethod
    def api_cache_key(url: str, method: str = "GET", body: Any = None) -> str:
        if body is None:
            body = ""
        if not isinstance(body, (str, bytes)):
            try:
                body = json.dumps(body, sort_keys=True)
            except TypeError as e:
                raise ValueError(
                    f"Request body for {method.upper()} {url} is not JSON serializable"
                ) from e
        if isinstance(body, str):
            body = body.encode("utf-8")
        digest = hashlib.sha1(body).hexdigest()[:12]
        return f"api_{method.upper()}_{url}_{digest}"

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=10.0)
        return self._http_client

    async def cache_api_call(
        self,
        url: str,
        method: str = "GET",
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        ttl_seconds: Optional[float] = None,
    ) -> Any:
        """
        Memoize a JSON API call per (method, url, body).

        Raises:
            UpstreamServiceError: network failure, non-2xx status or a body
                that is not JSON. Nothing is cached in that case.
            ValueError: ``body`` is neither text nor JSON serializable.
        """
        cache_key = self.api_cache_key(url, method, body)
        cached = await self.get(cache_key)
        if cached is not None:
            return cached

        request_kwargs: Dict[str, Any] = {"headers": headers}
        if isinstance(body, (str, bytes)):
            request_kwargs["content"] = body
        elif body is not None:
            request_kwargs["json"] = body

        try:
            response = await self.http_client.request(method.upper(), url, **request_kwargs)
        except httpx.HTTPError as e:
            logger.error("Cache: API request to %s failed: %s", url, e)
            raise UpstreamServiceError(f"Request to {url} failed: {e}", url) from e

        if not response.is_success:
            logger.error("Cache: API request to %s returned %s", url, response.status_code)
            raise UpstreamServiceError(
                f"Request to {url} returned {response.status_code}", url, response.status_code
            )

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamServiceError(f"Response from {url} is not JSON", url, response.status_code) from e

        await self.set(cache_key, data, ttl_seconds)
        return data

    async def preload(self, urls: Sequence[str]) -> int:
        """Warm the cache for critical endpoints. Returns how many succeeded."""
        results = await asyncio.gather(
            *(self.cache_api_call(url) for url in urls), return_exceptions=True
        )
        for url, result in zip(urls, results):
            if isinstance(result, Exception):
                logger.warning("Cache: preload failed for %s: %s", url, result)
        return sum(1 for result in results if not isinstance(result, Exception))

    # Named wrappers

    async def cache_resource(self, url: str, resource_type: str = "unknown") -> None:
        """Record a static resource URL as it is loaded by the caller."""
        cache_key = f"resource_{resource_type}_{url}"
        if await self.get(cache_key) is None:
            await self.set(
                cache_key,
                {"url": url, "type": resource_type, "cached": self._clock()},
                RESOURCE_TTL,
            )

    async def cache_user_data(self, user_data: Any, ttl_seconds: float = USER_DATA_TTL) -> None:
        await self.set(USER_DATA_KEY, user_data, ttl_seconds)

    async def get_user_data(self) -> Any:
        return await self.get(USER_DATA_KEY)

    async def cache_active_trip(self, trip_data: Any, ttl_seconds: float = ACTIVE_TRIP_TTL) -> None:
        await self.set(ACTIVE_TRIP_KEY, trip_data, ttl_seconds)

    async def get_active_trip(self) -> Any:
        return await self.get(ACTIVE_TRIP_KEY)

    async def cache_statistics(self, stats: Any, ttl_seconds: float = STATISTICS_TTL) -> None:
        await self.set(STATISTICS_KEY, stats, ttl_seconds)

    async def get_statistics(self) -> Any:
        return await self.get(STATISTICS_KEY)

    # Maintenance

    async def cleanup(self) -> int:
        """Drop expired memory entries and expired or corrupt stored entries."""
        now = self._clock()
        removed = 0

        for key in [k for k, entry in self._memory.items() if entry.is_expired(now)]:
            del self._memory[key]
            removed += 1

        if self.storage is not None:
            try:
                keys = [k async for k in self.storage.scan_iter(match=self.storage_prefix + "*")]
            except Exception as e:
                logger.warning("Cache: cleanup could not list stored keys: %s", e)
                keys = []
            for storage_key in keys:
                try:
                    raw = await self.storage.get(storage_key)
                except Exception as e:
                    logger.warning("Cache: cleanup could not read %s: %s", storage_key, e)
                    continue
                if raw is None:
                    continue
                try:
                    expired = CacheEntry.model_validate_json(raw).is_expired(now)
                except ValidationError:
                    expired = True  # corrupt
                if expired:
                    await self._storage_delete(storage_key)
                    removed += 1

        self.last_cleanup = datetime.now(timezone.utc)
        if removed:
            logger.info("Cache cleanup: %d expired entries removed", removed)
        return removed

    async def get_stats(self) -> CacheStats:
        storage_items = 0
        if self.storage is not None:
            try:
                async for _ in self.storage.scan_iter(match=self.storage_prefix + "*"):
                    storage_items += 1
            except Exception as e:
                logger.warning("Cache: stats could not list stored keys: %s", e)

        memory_bytes = sum(
            len(key.encode("utf-8")) + _serialized_size(entry)
            for key, entry in self._memory.items()
        )
        requests = self.hits + self.misses
        return CacheStats(
            memory_items=len(self._memory),
            storage_items=storage_items,
            memory_bytes=memory_bytes,
            memory_kb=round(memory_bytes / 1024, 2),
            hits=self.hits,
            misses=self.misses,
            hit_rate=round(self.hits / requests * 100, 2) if requests else 0.0,
            last_cleanup=self.last_cleanup,
        )


# Decorator for caching GET endpoint responses

HTTP_KEY_PREFIX = "http"


def response_cache_key(request: Request) -> str:
    target = request.url.path
    if request.url.query:
        target += "?" + request.url.query
    return f"{HTTP_KEY_PREFIX}:{request.method}:{target}"


def cache_response(ttl_seconds: float):
    """
    Serve a GET endpoint from the cache manager for ``ttl_seconds``.

    The endpoint must declare ``request: Request``, ``response: Response``
    and ``cache: CacheManager = Depends(get_cache_manager)``. Responses are
    keyed by method, path and query string and tagged ``X-Cache: HIT|MISS``.
    Only 2xx results are stored; a raised exception is never cached.
    """
    def decorator(func):
        missing = {"request", "response", "cache"} - set(inspect.signature(func).parameters)
        if missing:
            raise TypeError(f"{func.__name__} needs parameters: {', '.join(sorted(missing))}")

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            request: Request = kwargs["request"]
            response: Response = kwargs["response"]
            cache: CacheManager = kwargs["cache"]

            if request.method != "GET":
                return await func(*args, **kwargs)

            cache_key = response_cache_key(request)
            cached = await cache.get(cache_key)
            if cached is not None:
                if cached["status"] is not None:
                    response.status_code = cached["status"]
                response.headers["X-Cache"] = "HIT"
                return cached["body"]

            result = await func(*args, **kwargs)
            if isinstance(result, Response):
                return result  # already rendered, passed through untouched

            status_code = response.status_code
            if status_code is None or 200 <= status_code < 300:
                body = jsonable_encoder(result)
                await cache.set(cache_key, {"status": status_code, "body": body}, ttl_seconds)
                response.headers["X-Cache"] = "MISS"
                return body
            return result
        return wrapper
    return decorator

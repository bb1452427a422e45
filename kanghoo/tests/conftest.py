"""
Centralized Test Configuration.
"""

import fnmatch
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from kanghoo.app.main import app
from kanghoo.app.db.session import Base
from kanghoo.app.core.dependencies import get_cache_manager, get_tracking_service
import kanghoo.app.core.redis_client as redis_client_module
from kanghoo.app.models.location_history import LocationHistory  # noqa: F401
from kanghoo.app.services.cache_manager import CacheManager
from kanghoo.app.services.location_history import LocationHistoryStore
from kanghoo.app.services.tracking_persistence import TrackingPersistenceService

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


class FakeClock:
    """Controllable clock. Call for a datetime, ``.time()`` for epoch seconds."""

    def __init__(self, start: datetime = datetime(2024, 3, 4, 7, 30, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def time(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self.expiries = {}
        self.failing = False
        self._closed = False

    def _check(self):
        if self.failing:
            raise ConnectionError("redis unavailable")

    async def ping(self):
        if self._closed or self.failing:
            return False
        return True

    async def get(self, key):
        self._check()
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.store[key] = value
        self.expiries[key] = ex
        return True

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if key in self.store:
                del self.store[key]
                self.expiries.pop(key, None)
                removed += 1
        return removed

    async def scan_iter(self, match=None):
        self._check()
        for key in list(self.store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def flushdb(self):
        self.store = {}
        self.expiries = {}

    async def aclose(self):
        self._closed = True
        self.store = {}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis():
    return MockRedis()


@pytest.fixture
async def setup_database():
    """Create tables before the test and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def history_store(setup_database):
    return LocationHistoryStore(TestingSessionLocal)


@pytest.fixture
async def tracking_service(clock, history_store):
    service = TrackingPersistenceService(history_store, clock=clock)
    yield service
    await service.shutdown()


@pytest.fixture
async def cache_manager(clock, redis):
    manager = CacheManager(redis, clock=clock.time)
    yield manager
    await manager.shutdown()


@pytest.fixture
async def client(tracking_service, cache_manager, redis):
    """Async client wired to the test services."""
    original_client = redis_client_module.redis_client
    redis_client_module.redis_client = redis
    app.dependency_overrides[get_tracking_service] = lambda: tracking_service
    app.dependency_overrides[get_cache_manager] = lambda: cache_manager

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides = {}
    redis_client_module.redis_client = original_client

"""
Cache manager tests: TTL, tiers, eviction and maintenance.
"""

import json

import pytest

from kanghoo.app.services.cache_manager import CacheManager

PREFIX = "kanghoo_cache_"


@pytest.fixture
def small_cache(clock, redis):
    return CacheManager(redis, max_memory_items=3, clock=clock.time)


async def test_set_then_get(cache_manager):
    await cache_manager.set("route_list", ["a", "b"], 60)

    assert await cache_manager.get("route_list") == ["a", "b"]


async def test_missing_key_is_none(cache_manager):
    assert await cache_manager.get("nothing") is None
    assert cache_manager.misses == 1


async def test_expired_entry_is_removed_from_both_tiers(cache_manager, redis, clock):
    await cache_manager.set("user_data", {"name": "Ana"}, 60)
    assert PREFIX + "user_data" in redis.store

    clock.advance(61)

    assert await cache_manager.get("user_data") is None
    assert PREFIX + "user_data" not in redis.store
    assert (await cache_manager.get_stats()).memory_items == 0


async def test_entry_alive_at_expiry_instant(cache_manager, clock):
    await cache_manager.set("k", "v", 60)
    clock.advance(60)

    assert await cache_manager.get("k") == "v"


async def test_only_persist_eligible_keys_reach_storage(cache_manager, redis):
    await cache_manager.set("theme_preference", "dark")
    await cache_manager.set("route_list", [1])

    assert set(redis.store) == {PREFIX + "theme_preference"}
    assert redis.expiries[PREFIX + "theme_preference"] == 300


async def test_stored_entry_format(cache_manager, redis, clock):
    await cache_manager.set("statistics", {"trips": 3}, 600)

    stored = json.loads(redis.store[PREFIX + "statistics"])

    assert stored == {
        "data": {"trips": 3},
        "timestamp": clock.time(),
        "ttl": 600,
        "expires": clock.time() + 600,
    }


async def test_durable_tier_survives_new_manager(cache_manager, redis, clock):
    await cache_manager.cache_user_data({"id": 7})

    restarted = CacheManager(redis, clock=clock.time)

    assert await restarted.get_user_data() == {"id": 7}
    assert (await restarted.get_stats()).memory_items == 1


async def test_eviction_drops_least_recently_accessed(small_cache, clock):
    await small_cache.set("a", 1)
    clock.advance(1)
    await small_cache.set("b", 2)
    clock.advance(1)
    await small_cache.set("c", 3)
    clock.advance(1)
    await small_cache.get("a")
    clock.advance(1)

    await small_cache.set("d", 4)

    assert await small_cache.get("b") is None
    assert await small_cache.get("a") == 1
    assert await small_cache.get("c") == 3
    assert await small_cache.get("d") == 4


async def test_memory_tier_never_exceeds_capacity(small_cache, clock):
    for i in range(10):
        await small_cache.set(f"key{i}", i)
        clock.advance(1)
        assert (await small_cache.get_stats()).memory_items <= 3


async def test_overwrite_at_capacity_does_not_evict(small_cache):
    await small_cache.set("a", 1)
    await small_cache.set("b", 2)
    await small_cache.set("c", 3)

    await small_cache.set("a", 10)

    assert [await small_cache.get(k) for k in ("a", "b", "c")] == [10, 2, 3]


async def test_delete_removes_both_tiers(cache_manager, redis):
    await cache_manager.set("settings", {"lang": "pt"})

    await cache_manager.delete("settings")

    assert await cache_manager.get("settings") is None
    assert redis.store == {}


async def test_clear_only_touches_namespace(cache_manager, redis):
    redis.store["other_app_key"] = "keep"
    await cache_manager.set("user_data", 1)
    await cache_manager.set("statistics", 2)
    await cache_manager.set("plain", 3)

    await cache_manager.clear()

    assert redis.store == {"other_app_key": "keep"}
    assert await cache_manager.get("plain") is None


async def test_storage_outage_degrades_to_miss(cache_manager, redis):
    redis.failing = True

    await cache_manager.set("user_data", {"id": 1})  # must not raise
    cache_manager._memory.clear()

    assert await cache_manager.get("user_data") is None


async def test_corrupt_stored_entry_is_discarded(cache_manager, redis):
    redis.store[PREFIX + "user_data"] = "{not json"

    assert await cache_manager.get("user_data") is None
    assert PREFIX + "user_data" not in redis.store


async def test_cleanup_removes_expired_entries(cache_manager, redis, clock):
    await cache_manager.set("short", 1, 10)
    await cache_manager.set("statistics", 2, 10)
    await cache_manager.set("long", 3, 1000)
    redis.store[PREFIX + "garbage"] = "???"
    clock.advance(11)

    removed = await cache_manager.cleanup()

    assert removed == 4
    assert set(redis.store) == set()
    assert await cache_manager.get("long") == 3
    assert cache_manager.last_cleanup is not None


async def test_stats(cache_manager):
    await cache_manager.set("user_data", {"id": 1})
    await cache_manager.set("plain", "x")
    await cache_manager.get("plain")
    await cache_manager.get("absent")

    stats = await cache_manager.get_stats()

    assert stats.memory_items == 2
    assert stats.storage_items == 1
    assert stats.memory_bytes > 0
    assert stats.hits == 1
    assert stats.misses == 1
    assert stats.hit_rate == 50.0


async def test_named_wrapper_lifetimes(cache_manager, clock):
    await cache_manager.cache_user_data({"id": 1})
    await cache_manager.cache_active_trip({"trip_id": "t1"})
    await cache_manager.cache_statistics({"trips": 2})

    clock.advance(2 * 60 + 1)
    assert await cache_manager.get_active_trip() is None
    assert await cache_manager.get_statistics() == {"trips": 2}

    clock.advance(10 * 60)
    assert await cache_manager.get_statistics() is None
    assert await cache_manager.get_user_data() == {"id": 1}

    clock.advance(60 * 60)
    assert await cache_manager.get_user_data() is None


async def test_cache_resource_records_once(cache_manager, clock):
    await cache_manager.cache_resource("/img/bus.png", "image")
    first = await cache_manager.get("resource_image_/img/bus.png")
    clock.advance(5)

    await cache_manager.cache_resource("/img/bus.png", "image")

    assert await cache_manager.get("resource_image_/img/bus.png") == first
    assert first["url"] == "/img/bus.png"


async def test_get_or_set_calls_factory_once(cache_manager):
    calls = []

    async def factory():
        calls.append(1)
        return {"routes": 4}

    assert await cache_manager.get_or_set("routes", factory) == {"routes": 4}
    assert await cache_manager.get_or_set("routes", factory) == {"routes": 4}
    assert len(calls) == 1


async def test_memory_only_without_storage(clock):
    manager = CacheManager(clock=clock.time)

    await manager.set("user_data", 1)
    await manager.clear()

    assert await manager.get("user_data") is None
    assert (await manager.get_stats()).storage_items == 0


async def test_expired_stored_entry_does_not_evict_live_entries(redis, clock):
    writer = CacheManager(redis, clock=clock.time)
    await writer.cache_user_data({"id": 1}, ttl_seconds=10)
    clock.advance(11)

    reader = CacheManager(redis, max_memory_items=2, clock=clock.time)
    await reader.set("a", 1)
    await reader.set("b", 2)

    assert await reader.get("user_data") is None
    assert await reader.get("a") == 1
    assert await reader.get("b") == 2
    assert PREFIX + "user_data" not in redis.store


async def test_has_reports_live_entries_only(cache_manager, clock):
    await cache_manager.set("route_list", [1], 60)

    assert await cache_manager.has("route_list")
    assert not await cache_manager.has("absent")

    clock.advance(61)
    assert not await cache_manager.has("route_list")
    assert (await cache_manager.get_stats()).memory_items == 0


async def test_has_sees_durable_tier_without_counting(redis, clock):
    await CacheManager(redis, clock=clock.time).cache_statistics({"trips": 1})
    restarted = CacheManager(redis, clock=clock.time)

    assert await restarted.has("statistics")
    assert restarted.hits == restarted.misses == 0


def test_unserializable_body_is_rejected_with_context():
    with pytest.raises(ValueError, match="POST /api/x"):
        CacheManager.api_cache_key("/api/x", "post", {"when": object()})

"""
Unit tests for the read-through cache wrapper.
"""

import asyncio
import gc
import json
from unittest.mock import AsyncMock

import pytest

from service_videos.app.caching.keys import ResourceKind
from service_videos.app.caching.read_through import CacheEntry, ReadThroughCache, format_iso, parse_iso
from service_videos.app.caching.store import CacheStore
from service_videos.app.caching.ttl_policy import TTLPolicy
from shared.errors import NotFoundError
from shared.metrics import MetricsCollector
from shared.test_helpers import FakeClock, InMemoryRedis


VIDEO = {"id": "v1", "title": "Intro to Python"}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client():
    return InMemoryRedis()


@pytest.fixture
def metrics():
    return MetricsCollector("videos")


@pytest.fixture
def store(client):
    return CacheStore(client=client, operation_timeout=0.2, backoff_step=0.0, backoff_max=0.0)


@pytest.fixture
def cache(store, metrics, clock):
    return ReadThroughCache(store, TTLPolicy(), metrics=metrics, clock=clock)


class TestCacheEntry:
    """Test cases for the stored envelope."""

    def test_round_trip(self, clock):
        entry = CacheEntry("video:v1", VIDEO, clock(), clock.advance(60))

        restored = CacheEntry.from_dict("video:v1", json.loads(json.dumps(entry.to_dict())))

        assert restored == entry

    @pytest.mark.parametrize("payload", [{"id": "v1"}, ["v1"], {"value": 1, "cached_at": "soon"}])
    def test_rejects_payloads_without_envelope(self, payload):
        assert CacheEntry.from_dict("video:v1", payload) is None

    def test_expiry_boundary(self, clock):
        entry = CacheEntry("video:v1", VIDEO, clock(), clock.now.replace(minute=30))

        assert entry.is_expired(clock.advance(29 * 60)) is False
        assert entry.is_expired(clock.advance(60)) is True

    def test_iso_helpers(self, clock):
        assert format_iso(clock()) == "2024-01-01T12:00:00.000Z"
        assert parse_iso("2024-01-01T12:00:00.000Z") == clock()
        assert parse_iso("yesterday") is None


class TestReadThroughCache:
    """Test cases for ReadThroughCache."""

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, cache, store, client):
        await store.connect()
        loader = AsyncMock(return_value=VIDEO)

        first = await cache.cache_read(ResourceKind.VIDEO, "v1", loader)
        second = await cache.cache_read(ResourceKind.VIDEO, "v1", loader)

        assert first == VIDEO
        assert second == VIDEO
        loader.assert_awaited_once()
        assert await client.ttl("video:v1") == 1800

    @pytest.mark.asyncio
    async def test_read_reports_hit_and_cached_at(self, cache, store, clock):
        await store.connect()
        loader = AsyncMock(return_value=VIDEO)

        miss = await cache.read("video:v1", ResourceKind.VIDEO, loader)
        stored_at = clock()
        clock.advance(5)
        hit = await cache.read("video:v1", ResourceKind.VIDEO, loader)

        assert miss.hit is False
        assert miss.cached_at is None
        assert hit.hit is True
        assert hit.cached_at == stored_at

    @pytest.mark.asyncio
    async def test_passthrough_when_store_unavailable(self, cache, client, store):
        client.available = False
        await store.connect()
        loader = AsyncMock(return_value=VIDEO)

        for _ in range(3):
            assert await cache.cache_read(ResourceKind.VIDEO, "v1", loader) == VIDEO

        assert loader.await_count == 3
        assert cache.cache_health() == {"connected": False}

    @pytest.mark.asyncio
    async def test_store_lost_mid_flight_still_returns_loader_value(self, cache, client, store):
        await store.connect()
        client.available = False
        loader = AsyncMock(return_value=VIDEO)

        assert await cache.cache_read(ResourceKind.VIDEO, "v1", loader) == VIDEO
        loader.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_ttl_override(self, cache, store, client):
        await store.connect()

        await cache.cache_read(ResourceKind.TRENDING, {"limit": 5}, AsyncMock(return_value=[VIDEO]), ttl_override=42)

        assert await client.ttl('trending:{"limit":"5"}') == 42

    @pytest.mark.asyncio
    async def test_expired_envelope_is_reloaded(self, cache, store, client, clock):
        await store.connect()
        loader = AsyncMock(side_effect=[{"id": "v1", "views": 1}, {"id": "v1", "views": 2}])

        await cache.cache_read(ResourceKind.TRENDING, None, loader)
        clock.advance(601)
        value = await cache.cache_read(ResourceKind.TRENDING, None, loader)

        assert value == {"id": "v1", "views": 2}
        assert loader.await_count == 2
        assert "delete" in client.commands

    @pytest.mark.asyncio
    async def test_store_expiry_is_reloaded(self, clock):
        client = InMemoryRedis(clock=clock.timestamp)
        store = CacheStore(client=client)
        cache = ReadThroughCache(store, TTLPolicy({"video": 10}), clock=clock)
        await store.connect()
        loader = AsyncMock(return_value=VIDEO)

        await cache.cache_read(ResourceKind.VIDEO, "v1", loader)
        clock.advance(11)
        await cache.cache_read(ResourceKind.VIDEO, "v1", loader)

        assert loader.await_count == 2

    @pytest.mark.asyncio
    async def test_loader_failure_propagates_and_is_not_cached(self, cache, store, client):
        await store.connect()
        loader = AsyncMock(side_effect=NotFoundError("video", "v404"))

        with pytest.raises(NotFoundError):
            await cache.cache_read(ResourceKind.VIDEO, "v404", loader)

        assert await client.dbsize() == 0

    @pytest.mark.asyncio
    async def test_none_is_not_cached(self, cache, store, client):
        await store.connect()
        loader = AsyncMock(return_value=None)

        assert await cache.cache_read(ResourceKind.VIDEO, "v1", loader) is None
        assert await cache.cache_read(ResourceKind.VIDEO, "v1", loader) is None

        assert loader.await_count == 2
        assert "set" not in client.commands

    @pytest.mark.asyncio
    async def test_unserializable_value_is_still_returned(self, cache, store, client):
        await store.connect()
        value = {"id": "v1", "handle": object()}

        assert await cache.cache_read(ResourceKind.VIDEO, "v1", AsyncMock(return_value=value)) is value
        assert await client.dbsize() == 0

    @pytest.mark.asyncio
    async def test_deeply_nested_value_is_still_returned(self, cache, store, client):
        await store.connect()
        value = []
        for _ in range(100000):
            value = [value]

        assert await cache.cache_read(ResourceKind.VIDEO, "v1", AsyncMock(return_value=value)) is value
        assert await client.dbsize() == 0

    @pytest.mark.asyncio
    async def test_undecodable_store_reply_falls_back_to_loader(self, cache, store, client):
        await store.connect()
        client.fail_with = UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
        loader = AsyncMock(return_value=VIDEO)

        assert await cache.cache_read(ResourceKind.VIDEO, "v1", loader) == VIDEO
        loader.assert_awaited_once()
        assert store.connected is True

    @pytest.mark.asyncio
    async def test_foreign_payload_is_a_miss(self, cache, store, client):
        await store.connect()
        client.put_raw("video:v1", json.dumps({"id": "stale"}))
        loader = AsyncMock(return_value=VIDEO)

        assert await cache.cache_read(ResourceKind.VIDEO, "v1", loader) == VIDEO
        loader.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_concurrent_misses_without_coalescing(self, cache, store):
        await store.connect()
        release = asyncio.Event()
        calls = []

        async def loader():
            calls.append(1)
            await release.wait()
            return VIDEO

        pending = [asyncio.ensure_future(cache.cache_read(ResourceKind.VIDEO, "v1", loader)) for _ in range(3)]
        await asyncio.sleep(0.01)
        release.set()
        results = await asyncio.gather(*pending)

        assert results == [VIDEO, VIDEO, VIDEO]
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_concurrent_misses_coalesce(self, store, clock):
        cache = ReadThroughCache(store, coalesce=True, clock=clock)
        await store.connect()
        release = asyncio.Event()
        calls = []

        async def loader():
            calls.append(1)
            await release.wait()
            return VIDEO

        pending = [asyncio.ensure_future(cache.cache_read(ResourceKind.VIDEO, "v1", loader)) for _ in range(3)]
        await asyncio.sleep(0.01)
        release.set()
        results = await asyncio.gather(*pending)

        assert results == [VIDEO, VIDEO, VIDEO]
        assert len(calls) == 1
        assert cache._inflight == {}

    @pytest.mark.asyncio
    async def test_coalesced_failure_reaches_every_waiter(self, store, clock):
        cache = ReadThroughCache(store, coalesce=True, clock=clock)
        await store.connect()
        release = asyncio.Event()

        async def loader():
            await release.wait()
            raise NotFoundError("video", "v1")

        pending = [asyncio.ensure_future(cache.cache_read(ResourceKind.VIDEO, "v1", loader)) for _ in range(2)]
        await asyncio.sleep(0.01)
        release.set()
        results = await asyncio.gather(*pending, return_exceptions=True)

        assert all(isinstance(result, NotFoundError) for result in results)

    @pytest.mark.asyncio
    async def test_coalesced_failure_without_waiters_is_retrieved(self, store, clock):
        cache = ReadThroughCache(store, coalesce=True, clock=clock)
        await store.connect()
        release = asyncio.Event()
        unhandled = []
        loop = asyncio.get_running_loop()
        previous_handler = loop.get_exception_handler()
        loop.set_exception_handler(lambda _loop, context: unhandled.append(context))

        async def loader():
            await release.wait()
            raise NotFoundError("video", "v1")

        try:
            waiter = asyncio.ensure_future(cache.cache_read(ResourceKind.VIDEO, "v1", loader))
            await asyncio.sleep(0.01)
            waiter.cancel()
            release.set()
            await asyncio.sleep(0.01)

            assert waiter.cancelled()
            assert cache._inflight == {}

            del waiter
            gc.collect()
        finally:
            loop.set_exception_handler(previous_handler)

        assert unhandled == []

    @pytest.mark.asyncio
    async def test_stats_and_metrics(self, cache, store, metrics):
        await store.connect()
        loader = AsyncMock(return_value=VIDEO)

        await cache.cache_read(ResourceKind.VIDEO, "v1", loader)
        await cache.cache_read(ResourceKind.VIDEO, "v1", loader)
        await cache.cache_read(ResourceKind.SEARCH, {"q": "cats"}, AsyncMock(return_value=[]))

        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 2
        assert stats["hit_ratio"] == pytest.approx(1 / 3)
        assert stats["by_kind"]["video"] == {"hits": 1, "misses": 1}
        assert metrics.registry.get_sample_value("cache_hits_total", {"cache_type": "video"}) == 1
        assert metrics.registry.get_sample_value("cache_misses_total", {"cache_type": "search"}) == 1
        assert metrics.registry.get_sample_value(
            "cache_loader_duration_seconds_count", {"cache_type": "video"}
        ) == 1

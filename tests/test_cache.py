"""
Tests for the caching layer.

These tests verify:
- Cache configuration and TTLs
- Entry store expiry and prefix deletion
- Keyed query cache canonicalization, get-or-fetch and invalidation
- Cache service lifecycle and health

Requires Redis running locally for integration tests.
Unit tests work without Redis.
"""

import asyncio
import itertools
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tourdash.cache.config import CacheConfig, CacheTTL, QUERY_PRESETS, get_cache_config
from tourdash.cache.entry_store import MISS, CacheEntryStore
from tourdash.cache.query_cache import KeyedQueryCache, canonicalize
from tourdash.cache.service import CacheService
from tourdash.integrations.base import RemoteFetchError
from tourdash.realtime.events import ChangeEvent, ChangeKind
from tourdash.realtime.stream import RedisChangeBridge, publish_change


# =============================================================================
# CONFIG TESTS
# =============================================================================

class TestCacheConfig:
    """Test cache configuration."""

    def test_ttl_values(self):
        """Analytics churns fastest, assets least."""
        assert CacheTTL.ANALYTICS < CacheTTL.CLIENTS
        assert CacheTTL.ASSETS == timedelta(minutes=15)

    def test_ttl_for_resource(self):
        assert CacheTTL.for_resource("clients") == CacheTTL.CLIENTS
        assert CacheTTL.for_resource("end_clients") == CacheTTL.CLIENTS
        assert CacheTTL.for_resource("imported_analytics") == CacheTTL.IMPORTED_ANALYTICS

    def test_ttl_unknown_resource_uses_default(self):
        assert CacheTTL.for_resource("nope") == timedelta(minutes=5)

    def test_presets(self):
        assert QUERY_PRESETS["dashboard"]["stale_time"] == timedelta(minutes=5)
        assert QUERY_PRESETS["static"]["refetch_interval"] is None

    def test_env_override(self, monkeypatch):
        """Test environment variable override."""
        monkeypatch.setenv("CACHE_ENABLED", "false")
        monkeypatch.setenv("REALTIME_DEBOUNCE_SECONDS", "2.5")
        get_cache_config.cache_clear()
        try:
            config = get_cache_config()
            assert config.enabled is False
            assert config.debounce_seconds == 2.5
        finally:
            get_cache_config.cache_clear()  # Reset

    def test_default_ttl_property(self):
        config = CacheConfig(default_ttl_seconds=60)
        assert config.default_ttl == timedelta(seconds=60)


# =============================================================================
# ENTRY STORE TESTS
# =============================================================================

class TestCacheEntryStore:
    """Test the in-memory TTL store."""

    def test_set_and_get(self, clock):
        store = CacheEntryStore(clock=clock)
        store.set("k", {"a": 1}, 10)
        assert store.get("k") == {"a": 1}

    def test_get_missing_returns_miss(self, clock):
        store = CacheEntryStore(clock=clock)
        assert store.get("missing") is MISS
        assert not MISS

    def test_valid_up_to_ttl_inclusive(self, clock):
        store = CacheEntryStore(clock=clock)
        store.set("k", "v", timedelta(seconds=10))
        clock.advance(10)
        assert store.get("k") == "v"

    def test_expired_entry_is_evicted(self, clock):
        store = CacheEntryStore(clock=clock)
        store.set("k", "v", 10)
        clock.advance(10.5)
        assert store.get("k") is MISS
        assert "k" not in store.keys()
        assert store.get_stats()["evictions"] == 1

    def test_reads_inside_window_are_idempotent(self, clock):
        store = CacheEntryStore(clock=clock)
        store.set("k", [1, 2], 30)
        values = []
        for _ in range(5):
            values.append(store.get("k"))
            clock.advance(5)
        assert all(v == [1, 2] for v in values)

    def test_set_refreshes_timestamp(self, clock):
        store = CacheEntryStore(clock=clock)
        store.set("k", 1, 10)
        clock.advance(8)
        store.set("k", 2, 10)
        clock.advance(8)
        assert store.get("k") == 2

    def test_falsy_values_are_hits(self, clock):
        store = CacheEntryStore(clock=clock)
        store.set("empty", [], 10)
        store.set("none", None, 10)
        assert store.get("empty") == []
        assert store.get("none") is None
        assert store.has("none")

    def test_delete_prefix(self, clock):
        store = CacheEntryStore(clock=clock)
        store.set("clients:{}", 1, 10)
        store.set('clients:{"a": 1}', 2, 10)
        store.set("projects:{}", 3, 10)
        assert store.delete_prefix("clients:") == 2
        assert store.keys() == ["projects:{}"]

    def test_delete_and_clear(self, clock):
        store = CacheEntryStore(clock=clock)
        store.set("a", 1, 10)
        store.set("b", 2, 10)
        assert store.delete("a") is True
        assert store.delete("a") is False
        store.clear()
        assert len(store) == 0

    def test_stats(self, clock):
        store = CacheEntryStore(clock=clock)
        store.set("k", 1, 10)
        store.get("k")
        store.get("x")
        stats = store.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["writes"] == 1
        assert stats["hit_rate_percent"] == 50.0
        assert stats["entries"] == 1


# =============================================================================
# KEYED QUERY CACHE TESTS
# =============================================================================

class TestCanonicalize:
    """Test cache key generation."""

    def test_permutation_invariance(self):
        filters = {"creator_id": "c1", "status": "active", "limit": 10}
        keys = {
            canonicalize("projects", dict(order))
            for order in itertools.permutations(filters.items())
        }
        assert len(keys) == 1

    def test_resource_is_prefix(self):
        assert canonicalize("clients", {"a": 1}).startswith("clients:")

    def test_none_and_empty_filters_match(self):
        assert canonicalize("assets") == canonicalize("assets", {})

    def test_different_values_differ(self):
        assert canonicalize("leads", {"chatbot_id": "a"}) != canonicalize("leads", {"chatbot_id": "b"})


class TestKeyedQueryCache:
    """Test get-or-fetch behavior."""

    @pytest.fixture
    def query_cache(self, clock, cache_config):
        return KeyedQueryCache(CacheEntryStore(clock=clock), cache_config)

    async def test_fetches_once_within_ttl(self, query_cache):
        calls = []

        async def fetch():
            calls.append(1)
            return [{"id": 1}]

        first = await query_cache.get_or_fetch("clients", {"creator_id": "c1"}, fetch, 60)
        second = await query_cache.get_or_fetch("clients", {"creator_id": "c1"}, fetch, 60)
        assert first == second == [{"id": 1}]
        assert len(calls) == 1

    async def test_refetches_after_ttl(self, query_cache, clock):
        calls = []

        async def fetch():
            calls.append(1)
            return len(calls)

        await query_cache.get_or_fetch("clients", None, fetch, 60)
        clock.advance(61)
        assert await query_cache.get_or_fetch("clients", None, fetch, 60) == 2

    async def test_failed_fetch_stores_nothing(self, query_cache):
        async def broken():
            raise RemoteFetchError("boom", table="clients")

        with pytest.raises(RemoteFetchError):
            await query_cache.get_or_fetch("clients", None, broken, 60)
        assert query_cache.peek("clients") is MISS

    async def test_invalidate_single_entry(self, query_cache):
        async def fetch():
            return "v"

        await query_cache.get_or_fetch("clients", {"a": 1}, fetch, 60)
        await query_cache.get_or_fetch("clients", {"a": 2}, fetch, 60)
        assert query_cache.invalidate("clients", {"a": 1}) is True
        assert query_cache.peek("clients", {"a": 1}) is MISS
        assert query_cache.peek("clients", {"a": 2}) == "v"

    async def test_invalidate_resource_ignores_filters(self, query_cache):
        async def fetch():
            return "v"

        await query_cache.get_or_fetch("clients", {"a": 1}, fetch, 60)
        await query_cache.get_or_fetch("clients", {"b": 2}, fetch, 60)
        await query_cache.get_or_fetch("projects", {"a": 1}, fetch, 60)
        assert query_cache.invalidate_resource("clients") == 2
        assert query_cache.peek("projects", {"a": 1}) == "v"

    async def test_invalidate_resource_does_not_match_longer_names(self, query_cache):
        async def fetch():
            return "v"

        await query_cache.get_or_fetch("analytics", None, fetch, 60)
        await query_cache.get_or_fetch("analytics_daily", None, fetch, 60)
        assert query_cache.invalidate_resource("analytics") == 1
        assert query_cache.peek("analytics_daily") == "v"

    async def test_put_seeds_entry(self, query_cache):
        query_cache.put("clients", {"user_id": "u1"}, [{"id": "x"}], 60)
        assert query_cache.peek("clients", {"user_id": "u1"}) == [{"id": "x"}]

    async def test_disabled_cache_always_fetches(self, clock):
        config = CacheConfig(enabled=False, redis_url=None)
        query_cache = KeyedQueryCache(CacheEntryStore(clock=clock), config)
        calls = []

        async def fetch():
            calls.append(1)
            return 1

        await query_cache.get_or_fetch("clients", None, fetch)
        await query_cache.get_or_fetch("clients", None, fetch)
        assert len(calls) == 2

    async def test_concurrent_first_callers_both_fetch_without_coalescing(self, query_cache):
        calls = []
        release = asyncio.Event()

        async def fetch():
            calls.append(1)
            await release.wait()
            return len(calls)

        tasks = [
            asyncio.create_task(query_cache.get_or_fetch("clients", None, fetch, 60))
            for _ in range(2)
        ]
        await asyncio.sleep(0)
        release.set()
        await asyncio.gather(*tasks)
        assert len(calls) == 2

    async def test_coalescing_shares_inflight_fetch(self, clock, cache_config):
        query_cache = KeyedQueryCache(CacheEntryStore(clock=clock), cache_config, coalesce=True)
        calls = []
        release = asyncio.Event()

        async def fetch():
            calls.append(1)
            await release.wait()
            return "shared"

        tasks = [
            asyncio.create_task(query_cache.get_or_fetch("clients", None, fetch, 60))
            for _ in range(3)
        ]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks)
        assert results == ["shared"] * 3
        assert len(calls) == 1

    async def test_coalesced_failure_reaches_every_waiter(self, clock, cache_config):
        query_cache = KeyedQueryCache(CacheEntryStore(clock=clock), cache_config, coalesce=True)
        release = asyncio.Event()

        async def fetch():
            await release.wait()
            raise RemoteFetchError("down")

        tasks = [
            asyncio.create_task(query_cache.get_or_fetch("clients", None, fetch, 60))
            for _ in range(2)
        ]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, RemoteFetchError) for r in results)
        assert query_cache.get_stats()["inflight"] == 0

    async def test_stats(self, query_cache):
        async def fetch():
            return 1

        await query_cache.get_or_fetch("clients", None, fetch, 60)
        await query_cache.get_or_fetch("clients", None, fetch, 60)
        stats = query_cache.get_stats()
        assert stats["remote_fetches"] == 1
        assert stats["hits"] == 1
        assert stats["enabled"] is True

    def test_keeps_injected_empty_store(self, clock, cache_config):
        """An empty store is falsy but must still be used."""
        store = CacheEntryStore(clock=clock)
        assert len(store) == 0
        assert KeyedQueryCache(store, cache_config).store is store

    async def test_fetch_invalidated_midway_is_not_stored(self, query_cache):
        release = asyncio.Event()
        rows = [{"id": "a"}]

        async def fetch():
            seen = list(rows)
            await release.wait()
            return seen

        pending = asyncio.create_task(query_cache.get_or_fetch("clients", None, fetch, 60))
        await asyncio.sleep(0)
        rows.append({"id": "b"})
        query_cache.invalidate_resource("clients")
        release.set()

        # The caller still gets its rows, later readers do not
        assert await pending == [{"id": "a"}]
        assert query_cache.peek("clients") is MISS
        assert query_cache.get_stats()["discarded"] == 1
        assert await query_cache.get_or_fetch("clients", None, fetch, 60) == [{"id": "a"}, {"id": "b"}]
        assert query_cache.peek("clients") == [{"id": "a"}, {"id": "b"}]

    async def test_invalidate_all_discards_inflight_fetch(self, query_cache):
        release = asyncio.Event()

        async def fetch():
            await release.wait()
            return "old"

        pending = asyncio.create_task(query_cache.get_or_fetch("projects", {"a": 1}, fetch, 60))
        await asyncio.sleep(0)
        query_cache.invalidate_all()
        release.set()
        await pending
        assert query_cache.peek("projects", {"a": 1}) is MISS

    async def test_coalesced_callers_do_not_join_invalidated_fetch(self, clock, cache_config):
        query_cache = KeyedQueryCache(CacheEntryStore(clock=clock), cache_config, coalesce=True)
        first_release = asyncio.Event()
        versions = iter(["old", "new"])

        async def fetch():
            value = next(versions)
            if value == "old":
                await first_release.wait()
            return value

        old = asyncio.create_task(query_cache.get_or_fetch("leads", None, fetch, 60))
        await asyncio.sleep(0)
        query_cache.invalidate_resource("leads")

        assert await query_cache.get_or_fetch("leads", None, fetch, 60) == "new"
        first_release.set()
        assert await old == "old"
        assert query_cache.peek("leads") == "new"
        assert query_cache.get_stats()["inflight"] == 0


# =============================================================================
# CACHE SERVICE TESTS
# =============================================================================

class TestCacheService:
    """Test the service lifecycle."""

    @pytest.fixture
    def service(self, cache_config, session_factory):
        return CacheService(config=cache_config, session_factory=session_factory)

    async def test_init_without_redis_is_local(self, service):
        await service.init()
        health = await service.health_check()
        assert health["healthy"] is True
        assert health["status"] == "local"
        await service.dispose()

    def test_query_cache_uses_service_store(self, service):
        assert service.query_cache.store is service.entry_store

    async def test_not_initialized_is_unhealthy(self, service):
        health = await service.health_check()
        assert health == {"healthy": False, "status": "not_initialized"}

    async def test_disabled_cache_reports_disabled(self, session_factory):
        config = CacheConfig(enabled=False, redis_url=None)
        service = CacheService(config=config, session_factory=session_factory)
        health = await service.health_check()
        assert health["status"] == "disabled"

    async def test_init_is_idempotent(self, service):
        await service.init()
        await service.init()
        assert service.initialized
        await service.dispose()

    async def test_dispose_cancels_subscriptions(self, service):
        await service.init()
        sub = service.listener.subscribe(["leads"], lambda tables: None)
        raw = service.stream.subscribe()
        await service.dispose()
        assert not sub.active
        assert raw.closed
        assert service.listener.subscription_count == 0

    async def test_init_after_dispose_raises(self, service):
        await service.dispose()
        with pytest.raises(RuntimeError):
            await service.init()

    async def test_unreachable_redis_degrades_to_local(self, session_factory):
        config = CacheConfig(namespace="test", redis_url="redis://127.0.0.1:1/0")
        service = CacheService(config=config, session_factory=session_factory)
        await service.init()
        assert service.bridge is None
        assert (await service.health_check())["status"] == "local"
        await service.dispose()

    async def test_clear_drops_cached_values(self, service):
        async def fetch():
            return 1

        await service.query_cache.get_or_fetch("clients", None, fetch, 60)
        service.managed.set_query_data(("dashboard", "u1"), {"x": 1})
        service.clear()
        assert service.query_cache.peek("clients") is MISS
        assert service.managed.keys() == []

    async def test_stats_shape(self, service):
        stats = service.get_stats()
        assert set(stats) == {"initialized", "query_cache", "managed", "preferences", "realtime"}
        assert stats["realtime"]["bridge"] is False


# =============================================================================
# REDIS CHANGE BRIDGE TESTS (Integration - requires Redis)
# =============================================================================

class DroppingPubSub:
    """Pub/sub whose connection drops once listening starts."""

    def __init__(self):
        self.closed = False

    async def psubscribe(self, pattern):
        return None

    async def punsubscribe(self, pattern):
        raise RedisConnectionError("Connection closed by server.")

    async def close(self):
        self.closed = True

    async def listen(self):
        yield {"type": "psubscribe", "data": 1}
        raise RedisConnectionError("Connection closed by server.")


class DroppingRedis:
    def __init__(self):
        self.pubsubs = []

    def pubsub(self):
        self.pubsubs.append(DroppingPubSub())
        return self.pubsubs[-1]


class TestBridgeConnectionLoss:
    """Test a bridge whose Redis connection drops after start."""

    async def test_dead_forwarder_is_logged_and_reported(self, cache_config, session_factory, caplog):
        from tourdash.realtime.stream import ChangeStream

        bridge = RedisChangeBridge(ChangeStream(), cache_config, redis=DroppingRedis())
        service = CacheService(config=cache_config, session_factory=session_factory, bridge=bridge)

        with caplog.at_level("ERROR", logger="tourdash.realtime.stream"):
            await service.init()
            for _ in range(10):
                await asyncio.sleep(0)

        assert bridge.running is False
        assert "stopped forwarding" in caplog.text
        health = await service.health_check()
        assert health["healthy"] is False
        assert health["status"] == "disconnected"
        assert service.get_stats()["realtime"]["bridge"] is False

        # Shutdown still completes on a dead connection
        await service.dispose()


class TestRedisChangeBridge:
    """
    Integration tests for the Redis change bridge.

    These require a running Redis instance.
    Skip if Redis is not available.
    """

    @pytest.fixture
    async def bridge(self, cache_config):
        from redis.asyncio import Redis
        from tourdash.realtime.stream import ChangeStream

        client = Redis.from_url("redis://localhost:6379/0", decode_responses=True)
        try:
            await client.ping()
        except Exception:
            await client.close()
            pytest.skip("Redis not available")

        bridge = RedisChangeBridge(ChangeStream(), cache_config, redis=client)
        await bridge.start()
        yield bridge
        await bridge.stop()
        await client.close()

    async def test_published_change_reaches_stream(self, bridge):
        sub = bridge.stream.subscribe()
        await asyncio.sleep(0.05)
        await bridge.publish(ChangeEvent(table="leads", kind=ChangeKind.INSERT, payload={"id": "l1"}))
        event = await asyncio.wait_for(sub.get(), timeout=2)
        assert event.table == "leads"
        assert event.payload == {"id": "l1"}

    async def test_malformed_message_is_skipped(self, bridge):
        sub = bridge.stream.subscribe()
        await asyncio.sleep(0.05)
        await bridge._redis.publish("test:changes:leads", "not json")
        await publish_change(bridge._redis, ChangeEvent(table="assets", kind=ChangeKind.UPDATE), "test")
        event = await asyncio.wait_for(sub.get(), timeout=2)
        assert event.table == "assets"
        assert bridge.running

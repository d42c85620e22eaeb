"""
Unit Tests for the layered (L1 memory-aware + L2 Redis) cache
"""

import pytest
import fnmatch
import json

from adaptive_search.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from adaptive_search.layered_cache import (
    LayeredCache,
    MB,
    MemoryAwareCache,
    WARMUP_RESPONSES,
    estimate_size,
    process_rss_bytes,
)


class FakeRedis:
    """Dict-backed stand-in for the redis.asyncio client calls the cache makes."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise ConnectionError("redis unreachable")

    async def ping(self):
        self._check()
        return True

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def setex(self, key, seconds, value):
        self._check()
        self.data[key] = value
        self.ttls[key] = seconds
        return True

    async def delete(self, key):
        self._check()
        return 1 if self.data.pop(key, None) is not None else 0

    async def scan_iter(self, match="*"):
        self._check()
        for key in list(self.data):
            if fnmatch.fnmatch(key, match):
                yield key


class MemoryProbe:
    """Adjustable process memory reading in bytes."""

    def __init__(self, used_mb: float = 0):
        self.used_mb = used_mb

    def __call__(self) -> int:
        return int(self.used_mb * MB)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def probe():
    return MemoryProbe()


@pytest.fixture
def tier(clock, probe):
    return MemoryAwareCache(
        "memory", ttl=60.0, max_entries=3, memory_budget_mb=100, pressure_threshold=0.8,
        clock=clock, memory_probe=probe,
    )


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def redis_breaker(monotonic_clock):
    return CircuitBreaker(
        "redis", CircuitBreakerConfig(failure_threshold=2, reset_timeout=30.0), clock=monotonic_clock
    )


def _layered(settings, clock, no_pressure, redis_client=None, version="1"):
    cache = LayeredCache.from_settings(settings, redis_client=redis_client, clock=clock, memory_probe=no_pressure)
    cache.version = version
    return cache


# =============================================================================
# L1 TIER TESTS
# =============================================================================

class TestMemoryAwareCache:

    def test_get_set_and_ttl(self, tier, clock):
        assert tier.set("k", {"a": 1}) is True
        assert tier.get("k") == {"a": 1}

        clock.advance(61)
        assert tier.get("k") is None
        assert len(tier) == 0

    def test_custom_ttl(self, tier, clock):
        tier.set("k", "v", ttl=5)
        clock.advance(6)
        assert tier.get("k") is None

    def test_oversized_entry_rejected(self, clock, probe):
        tier = MemoryAwareCache("small", max_entry_bytes=10, clock=clock, memory_probe=probe)

        assert tier.set("big", "x" * 10) is False
        assert tier.get("big") is None
        assert tier.get_stats()["rejected"] == 1

    def test_entry_limit_evicts_least_recently_used(self, tier, clock):
        for key in ["a", "b", "c", "d"]:
            tier.set(key, key)
            clock.advance(1)
        tier.get("a")

        removed = tier.perform_maintenance()

        assert removed["lru"] == 1
        assert tier.get("b") is None
        assert tier.get("a") == "a"

    def test_memory_pressure_halves_tier(self, tier, probe):
        for key in ["a", "b", "c"]:
            tier.set(key, key)
        tier.get("a")
        tier.get("b")

        probe.used_mb = 90
        assert tier.is_memory_pressure() is True
        removed = tier.perform_maintenance()

        assert removed["pressure"] == 1
        assert tier.get("c") is None
        assert tier.get_stats()["pressure_cleanups"] == 1

    def test_pressure_measured_from_construction_baseline(self, clock, probe):
        probe.used_mb = 70
        tier = MemoryAwareCache(
            "memory", memory_budget_mb=100, pressure_threshold=0.8, clock=clock, memory_probe=probe
        )

        probe.used_mb = 140
        assert tier.memory_used_mb() == pytest.approx(70)
        assert tier.is_memory_pressure() is False

        probe.used_mb = 151
        assert tier.is_memory_pressure() is True
        assert tier.get_stats()["memory_baseline_mb"] == 70

    def test_failing_probe_reads_as_no_pressure(self, clock):
        def broken():
            raise OSError("no /proc")

        tier = MemoryAwareCache("t", clock=clock, memory_probe=broken)
        assert tier.is_memory_pressure() is False

    def test_stats(self, tier):
        tier.set("k", "value")
        tier.get("k")
        tier.get("missing")

        stats = tier.get_stats()
        assert stats["entries"] == 1
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["total_size_bytes"] == 10
        assert stats["memory_pressure"] is False


class TestHelpers:

    def test_estimate_size(self):
        assert estimate_size(None) == 0
        assert estimate_size("abc") == 6
        assert estimate_size(3) == 8
        assert estimate_size({"a": 1}) == len(json.dumps({"a": 1})) * 2

    def test_process_rss_bytes(self):
        assert process_rss_bytes() > 0


# =============================================================================
# LAYERED CACHE TESTS
# =============================================================================

class TestLayeredCache:

    @pytest.mark.asyncio
    async def test_l1_only_round_trip(self, settings, clock, no_pressure):
        cache = _layered(settings, clock, no_pressure)

        await cache.set("profile:user-1", {"user_id": "user-1"}, ttl=30, tier="memory")

        assert cache.l2_available is False
        assert await cache.get("profile:user-1", tier="memory") == {"user_id": "user-1"}
        assert await cache.get("profile:user-1") == {"user_id": "user-1"}
        assert await cache.get("missing") is None

    @pytest.mark.asyncio
    async def test_tier_selection(self, settings, clock, no_pressure):
        cache = _layered(settings, clock, no_pressure)

        await cache.set("short", "hello")
        await cache.set("results", {"content": "x", "sources": 4})
        await cache.set("list", [1, 2, 3])

        assert len(cache.tiers["response"]) == 1
        assert len(cache.tiers["search"]) == 1
        assert len(cache.tiers["memory"]) == 1

    @pytest.mark.asyncio
    async def test_write_through_to_l2(self, settings, clock, no_pressure, fake_redis):
        cache = _layered(settings, clock, no_pressure, fake_redis)

        await cache.set("k", {"a": 1}, ttl=2.5, tier="memory")

        payload = json.loads(fake_redis.data["cache:v1:k"])
        assert payload["data"] == {"a": 1}
        assert payload["ttl"] == 2.5
        assert fake_redis.ttls["cache:v1:k"] == 3

    @pytest.mark.asyncio
    async def test_l2_hit_promoted_to_l1(self, settings, clock, no_pressure, fake_redis):
        writer = _layered(settings, clock, no_pressure, fake_redis)
        reader = _layered(settings, clock, no_pressure, fake_redis)
        await writer.set("k", {"a": 1}, ttl=60, tier="memory")

        assert await reader.get("k") == {"a": 1}
        assert len(reader.tiers["memory"]) == 1

        fake_redis.fail = True
        assert await reader.get("k") == {"a": 1}

    @pytest.mark.asyncio
    async def test_promoted_entry_keeps_remaining_l2_ttl(self, settings, clock, no_pressure, fake_redis):
        writer = _layered(settings, clock, no_pressure, fake_redis)
        reader = _layered(settings, clock, no_pressure, fake_redis)
        await writer.set("k", {"a": 1}, ttl=60, tier="memory")

        clock.advance(50)
        assert await reader.get("k") == {"a": 1}

        fake_redis.fail = True
        clock.advance(11)
        assert await reader.get("k") is None

    @pytest.mark.asyncio
    async def test_promotion_into_unconfigured_tier_is_skipped(self, settings, clock, no_pressure, fake_redis):
        writer = _layered(settings, clock, no_pressure, fake_redis)
        reader = _layered(settings, clock, no_pressure, fake_redis)
        await writer.set("k", "v", tier="response")
        del reader.tiers["response"]

        assert await reader.get("k") == "v"
        assert all(len(tier) == 0 for tier in reader.tiers.values())

    @pytest.mark.asyncio
    async def test_expired_l2_entry_is_deleted(self, settings, clock, no_pressure, fake_redis):
        writer = _layered(settings, clock, no_pressure, fake_redis)
        await writer.set("k", "v", ttl=10)
        reader = _layered(settings, clock, no_pressure, fake_redis)

        clock.advance(11)

        assert await reader.get("k") is None
        assert "cache:v1:k" not in fake_redis.data

    @pytest.mark.asyncio
    async def test_unreadable_l2_entry_is_deleted(self, settings, clock, no_pressure, fake_redis):
        cache = _layered(settings, clock, no_pressure, fake_redis)
        fake_redis.data["cache:v1:k"] = "not json"

        assert await cache.get("k") is None
        assert "cache:v1:k" not in fake_redis.data

    @pytest.mark.asyncio
    async def test_version_bump_hides_old_entries(self, settings, clock, no_pressure, fake_redis):
        old = _layered(settings, clock, no_pressure, fake_redis, version="1")
        new = _layered(settings, clock, no_pressure, fake_redis, version="2")
        await old.set("k", "v")

        assert await new.get("k") is None

    @pytest.mark.asyncio
    async def test_redis_outage_degrades_to_l1(self, clock, no_pressure, fake_redis, redis_breaker):
        tiers = {"memory": MemoryAwareCache("memory", clock=clock, memory_probe=no_pressure)}
        cache = LayeredCache(tiers, redis_client=fake_redis, breaker=redis_breaker, clock=clock)
        fake_redis.fail = True

        await cache.set("k", [1], tier="memory")
        assert await cache.get("k", tier="memory") == [1]
        assert await cache.get("missing", tier="memory") is None
        await cache.set("k2", [2], tier="memory")

        assert redis_breaker.state == CircuitState.OPEN
        assert await cache.get("other", tier="memory") is None
        assert redis_breaker.metrics.rejected_calls == 2

    @pytest.mark.asyncio
    async def test_delete(self, settings, clock, no_pressure, fake_redis):
        cache = _layered(settings, clock, no_pressure, fake_redis)
        await cache.set("k", "v")

        await cache.delete("k")

        assert await cache.get("k") is None
        assert fake_redis.data == {}

    @pytest.mark.asyncio
    async def test_clear(self, settings, clock, no_pressure, fake_redis):
        cache = _layered(settings, clock, no_pressure, fake_redis)
        fake_redis.data["session:abc"] = "kept"
        await cache.set("a", "1")
        await cache.set("b", [2])

        await cache.clear()

        assert all(len(t) == 0 for t in cache.tiers.values())
        assert fake_redis.data == {"session:abc": "kept"}

    @pytest.mark.asyncio
    async def test_warmup(self, settings, clock, no_pressure):
        cache = _layered(settings, clock, no_pressure)
        await cache.warmup()

        for key, response in WARMUP_RESPONSES.items():
            assert await cache.get(key) == response

    @pytest.mark.asyncio
    async def test_lifecycle_without_redis(self, clock, no_pressure):
        tiers = {"memory": MemoryAwareCache("memory", clock=clock, memory_probe=no_pressure)}
        cache = LayeredCache(tiers, redis_url=None, maintenance_interval=60.0, clock=clock)

        await cache.start()
        assert tiers["memory"]._maintenance_task is not None
        assert cache.l2_available is False

        await cache.close()
        assert tiers["memory"]._maintenance_task is None

    @pytest.mark.asyncio
    async def test_connect_with_injected_client(self, settings, clock, no_pressure, fake_redis):
        cache = _layered(settings, clock, no_pressure, fake_redis)
        assert await cache.connect() is True

    def test_stats(self, settings, clock, no_pressure):
        cache = _layered(settings, clock, no_pressure)
        stats = cache.get_stats()

        assert set(stats["l1"]) == {"memory", "response", "search", "embedding"}
        assert stats["l2"]["available"] is False
        assert stats["l2"]["breaker"]["state"] == "closed"

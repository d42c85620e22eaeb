"""
Layered resource cache for long-lived processes.

L1: MemoryAwareCache tiers (per-process). Entries carry their own TTL and a
size estimate. A periodic maintenance pass drops expired entries, cuts the
least valuable half when process memory crosses the pressure threshold, and
enforces each tier's entry limit.

L2: Redis (shared across processes), optional. Every Redis call goes through
a circuit breaker whose fallback is "miss", so a Redis outage degrades the
cache to L1-only instead of failing requests.

Usage:
    from adaptive_search.layered_cache import LayeredCache

    cache = LayeredCache.from_settings(settings)
    await cache.start()                       # maintenance tasks + Redis connect

    await cache.set("memories:user-1:abc", candidates, ttl=30, tier="memory")
    hit = await cache.get("memories:user-1:abc", tier="memory")

    await cache.close()
"""

import asyncio
import json
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import psutil
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    REDIS_BREAKER,
)

logger = logging.getLogger("adaptive_search.layered_cache")

MB = 1024 * 1024

_process: Optional[psutil.Process] = None


def process_rss_bytes() -> int:
    """Resident set size of this process."""
    global _process
    if _process is None:
        _process = psutil.Process()
    return _process.memory_info().rss


def estimate_size(value: Any) -> int:
    """Approximate in-memory footprint of a cached value in bytes."""
    if value is None:
        return 0
    if isinstance(value, str):
        return len(value) * 2
    if isinstance(value, bool):
        return 4
    if isinstance(value, (int, float)):
        return 8
    try:
        return len(json.dumps(value, default=str)) * 2
    except (TypeError, ValueError):
        return 1024


@dataclass
class CacheEntry:
    value: Any
    expires_at: float
    size: int
    access_count: int
    last_accessed: float


class MemoryAwareCache:
    """
    TTL cache bounded by entry count and by process memory pressure.

    Args:
        name: Tier name used in logs and stats
        ttl: Default entry lifetime in seconds
        max_entries: Entry limit enforced by maintenance
        memory_budget_mb: Allowed process memory growth since the tier was created
        pressure_threshold: Share of the budget that counts as pressure
        max_entry_bytes: Entries estimated larger than this are rejected
        clock: Wall-clock source in seconds
        memory_probe: Returns current process memory in bytes
    """

    def __init__(
        self,
        name: str,
        ttl: float = 60.0,
        max_entries: int = 200,
        memory_budget_mb: int = 128,
        pressure_threshold: float = 0.8,
        max_entry_bytes: int = MB,
        clock: Callable[[], float] = time.time,
        memory_probe: Callable[[], int] = process_rss_bytes,
    ):
        self.name = name
        self.ttl = ttl
        self.max_entries = max_entries
        self.memory_budget_mb = memory_budget_mb
        self.pressure_threshold = pressure_threshold
        self.max_entry_bytes = max_entry_bytes
        self._clock = clock
        self._memory_probe = memory_probe

        self._store: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._maintenance_task: Optional[asyncio.Task] = None
        self._stats = {"hits": 0, "misses": 0, "rejected": 0, "pressure_cleanups": 0}
        self._baseline_bytes = self._read_probe() or 0

    def _read_probe(self) -> Optional[int]:
        try:
            return self._memory_probe()
        except Exception as e:
            logger.debug(f"[{self.name}] Memory probe failed: {e}")
            return None

    def memory_used_mb(self) -> float:
        """Process memory growth in MB since construction."""
        current = self._read_probe()
        if current is None:
            return 0.0
        return max(0, current - self._baseline_bytes) / MB

    def is_memory_pressure(self) -> bool:
        return self.memory_used_mb() > self.memory_budget_mb * self.pressure_threshold

    def get(self, key: str) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return None
            if entry.expires_at <= now:
                del self._store[key]
                self._stats["misses"] += 1
                return None
            entry.access_count += 1
            entry.last_accessed = now
            self._stats["hits"] += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """
        Store a value.

        Returns:
            False if the value exceeds the per-entry size limit
        """
        self.perform_maintenance()

        size = estimate_size(value)
        if size > self.max_entry_bytes:
            self._stats["rejected"] += 1
            logger.warning(f"[{self.name}] Cache entry too large: {key} ({size} bytes)")
            return False

        now = self._clock()
        with self._lock:
            self._store[key] = CacheEntry(
                value=value,
                expires_at=now + (ttl if ttl is not None else self.ttl),
                size=size,
                access_count=1,
                last_accessed=now,
            )
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._store.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def perform_maintenance(self) -> Dict[str, int]:
        """Expire, relieve memory pressure, then enforce the entry limit."""
        now = self._clock()
        under_pressure = self.is_memory_pressure()
        removed = {"expired": 0, "pressure": 0, "lru": 0}

        with self._lock:
            for key in [k for k, e in self._store.items() if e.expires_at <= now]:
                del self._store[key]
                removed["expired"] += 1

            if under_pressure and self._store:
                # Lowest access frequency first
                ranked = sorted(
                    self._store.items(),
                    key=lambda item: item[1].access_count / (now - item[1].last_accessed + 1),
                )
                for key, _ in ranked[:len(ranked) // 2]:
                    del self._store[key]
                    removed["pressure"] += 1
                self._stats["pressure_cleanups"] += 1

            if len(self._store) > self.max_entries:
                by_access = sorted(self._store.items(), key=lambda item: item[1].last_accessed)
                for key, _ in by_access[:len(self._store) - self.max_entries]:
                    del self._store[key]
                    removed["lru"] += 1

        if removed["pressure"]:
            logger.warning(f"[{self.name}] Memory pressure cleanup removed {removed['pressure']} entries")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            entries = list(self._store.values())
            stats = dict(self._stats)
        total_size = sum(e.size for e in entries)
        total_access = sum(e.access_count for e in entries)
        return {
            "name": self.name,
            "entries": len(entries),
            "max_entries": self.max_entries,
            "total_size_bytes": total_size,
            "total_size_mb": round(total_size / MB, 2),
            "avg_access_count": total_access / len(entries) if entries else 0,
            "memory_used_mb": round(self.memory_used_mb(), 2),
            "memory_budget_mb": self.memory_budget_mb,
            "memory_baseline_mb": round(self._baseline_bytes / MB, 2),
            "memory_pressure": self.is_memory_pressure(),
            **stats,
        }

    def __len__(self) -> int:
        return len(self._store)

    async def start_maintenance(self, interval: float = 30.0) -> None:
        """Start the periodic maintenance task"""
        if self._maintenance_task is not None:
            return

        async def maintenance_loop():
            while True:
                try:
                    await asyncio.sleep(interval)
                    self.perform_maintenance()
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error(f"[{self.name}] Error in maintenance loop: {e}")

        self._maintenance_task = asyncio.create_task(maintenance_loop())
        logger.info(f"Started maintenance loop for cache tier '{self.name}'")

    async def stop_maintenance(self) -> None:
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None
            logger.info(f"Stopped maintenance loop for cache tier '{self.name}'")

    async def close(self) -> None:
        await self.stop_maintenance()
        self.clear()


# Common responses preloaded by warmup()
WARMUP_RESPONSES = {
    "greeting:hello": "Hello! How can I help you today?",
    "greeting:hi": "Hi! What can I help you with?",
    "help:what_can_you_do": "I can help answer questions, search for information, and assist with various tasks.",
}

L1_TIER_ORDER = ("response", "memory", "search")


class LayeredCache:
    """
    L1 memory-aware tiers in front of an optional Redis L2.

    Args:
        tiers: Named L1 tiers; untiered lookups scan "response", "memory", "search"
        redis_client: Connected redis.asyncio client (None disables L2 until connect())
        redis_url: URL used by connect() when no client was injected
        breaker: Breaker guarding Redis calls
        version: Key version; bump to invalidate everything at once
        default_ttl: TTL in seconds when set() is given none
        clock: Wall-clock source in seconds
    """

    def __init__(
        self,
        tiers: Dict[str, MemoryAwareCache],
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        breaker: Optional[CircuitBreaker] = None,
        version: str = "1",
        default_ttl: float = 300.0,
        maintenance_interval: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.tiers = tiers
        self.redis_url = redis_url
        self.version = version
        self.default_ttl = default_ttl
        self.maintenance_interval = maintenance_interval
        self._clock = clock
        self._redis = redis_client
        self._pool: Optional[ConnectionPool] = None
        self._l2_available = redis_client is not None
        self._breaker = breaker or CircuitBreaker(
            REDIS_BREAKER,
            CircuitBreakerConfig(failure_threshold=5, reset_timeout=30.0, call_timeout=2.0),
        )

    @classmethod
    def from_settings(
        cls,
        settings,
        redis_client: Optional[Any] = None,
        clock: Callable[[], float] = time.time,
        memory_probe: Callable[[], int] = process_rss_bytes,
    ) -> "LayeredCache":
        """Build the standard memory/response/search/embedding tiers from settings."""
        def tier(name: str, ttl: float, max_entries: int) -> MemoryAwareCache:
            return MemoryAwareCache(
                name,
                ttl=ttl,
                max_entries=max_entries,
                memory_budget_mb=settings.memory_budget_mb,
                pressure_threshold=settings.memory_pressure_threshold,
                max_entry_bytes=settings.max_cache_entry_bytes,
                clock=clock,
                memory_probe=memory_probe,
            )

        return cls(
            tiers={
                "memory": tier("memory", 30.0, 300),
                "response": tier("response", 5 * 60.0, 100),
                "search": tier("search", 10 * 60.0, 200),
                "embedding": tier(
                    "embedding", settings.embedding_cache_ttl, settings.embedding_cache_max_entries
                ),
            },
            redis_client=redis_client,
            redis_url=settings.redis_url,
            breaker=CircuitBreaker(
                REDIS_BREAKER,
                CircuitBreakerConfig(
                    failure_threshold=settings.breaker_failure_threshold,
                    reset_timeout=settings.breaker_reset_timeout,
                    monitoring_window=settings.breaker_monitoring_window,
                    call_timeout=2.0,
                ),
            ),
            version=settings.cache_version,
            maintenance_interval=settings.memory_maintenance_interval,
            clock=clock,
        )

    @property
    def l2_available(self) -> bool:
        return self._l2_available

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self) -> bool:
        """
        Connect to Redis if configured.

        Returns:
            True if L2 is available, False if running L1-only
        """
        if self._l2_available:
            return True
        if not self.redis_url:
            logger.info("No Redis URL configured, layered cache running L1-only")
            return False

        try:
            self._pool = ConnectionPool.from_url(
                self.redis_url,
                max_connections=20,
                decode_responses=True,
            )
            self._redis = redis.Redis(connection_pool=self._pool)
            await self._redis.ping()
            self._l2_available = True
            logger.info(f"Connected to Redis at {self.redis_url}")
            return True
        except Exception as e:
            logger.warning(f"Redis connection failed: {e}, layered cache running L1-only")
            self._l2_available = False
            return False

    async def start(self) -> None:
        """Start tier maintenance and connect L2."""
        for tier in self.tiers.values():
            await tier.start_maintenance(self.maintenance_interval)
        await self.connect()

    async def close(self) -> None:
        """Stop tier maintenance and close the Redis connection."""
        for tier in self.tiers.values():
            await tier.stop_maintenance()
        if self._redis is not None and self._pool is not None:
            try:
                await self._redis.aclose()
                await self._pool.disconnect()
            except Exception as e:
                logger.error(f"Error closing Redis connection: {e}")
            self._redis = None
            self._pool = None
            self._l2_available = False
        logger.info("Layered cache closed")

    # =========================================================================
    # Keys
    # =========================================================================

    def _l1_key(self, key: str) -> str:
        return f"v{self.version}:{key}"

    def _l2_key(self, key: str) -> str:
        return f"cache:v{self.version}:{key}"

    @staticmethod
    def _select_tier(data: Any) -> str:
        if isinstance(data, str) and len(data) < 1000:
            return "response"
        if isinstance(data, dict) and "content" in data and "sources" in data:
            return "search"
        return "memory"

    # =========================================================================
    # Operations
    # =========================================================================

    async def _redis_call(self, operation: Callable[[], Any]) -> Any:
        return await self._breaker.execute(operation, fallback=lambda: None)

    async def get(self, key: str, ttl: Optional[float] = None, tier: Optional[str] = None) -> Optional[Any]:
        """Look up a key in L1, then L2 (promoting L2 hits into L1)."""
        l1_key = self._l1_key(key)
        names = (tier,) if tier else L1_TIER_ORDER
        for name in names:
            l1 = self.tiers.get(name)
            value = l1.get(l1_key) if l1 is not None else None
            if value is not None:
                return value

        if not self._l2_available:
            return None

        l2_key = self._l2_key(key)
        raw = await self._redis_call(lambda: self._redis.get(l2_key))
        if raw is None:
            return None

        try:
            entry = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Discarding unreadable L2 entry {l2_key}: {e}")
            await self._redis_call(lambda: self._redis.delete(l2_key))
            return None

        if self._clock() - entry.get("timestamp", 0) >= entry.get("ttl", 0):
            await self._redis_call(lambda: self._redis.delete(l2_key))
            return None

        data = entry.get("data")
        remaining = entry.get("ttl", 0) - (self._clock() - entry.get("timestamp", 0))
        target = self.tiers.get(tier or self._select_tier(data))
        if target is not None:
            target.set(l1_key, data, remaining if ttl is None else min(ttl, remaining))
        return data

    async def set(self, key: str, data: Any, ttl: Optional[float] = None, tier: Optional[str] = None) -> None:
        """Write through to L1 and, when available, L2."""
        ttl = ttl if ttl is not None else self.default_ttl
        self.tiers[tier or self._select_tier(data)].set(self._l1_key(key), data, ttl)

        if not self._l2_available:
            return

        try:
            payload = json.dumps({
                "data": data,
                "timestamp": self._clock(),
                "ttl": ttl,
                "version": self.version,
            })
        except (TypeError, ValueError) as e:
            logger.debug(f"Value for {key} is not JSON serializable, kept in L1 only: {e}")
            return

        l2_key = self._l2_key(key)
        await self._redis_call(lambda: self._redis.setex(l2_key, max(1, math.ceil(ttl)), payload))

    async def delete(self, key: str) -> None:
        l1_key = self._l1_key(key)
        for tier in self.tiers.values():
            tier.delete(l1_key)
        if self._l2_available:
            l2_key = self._l2_key(key)
            await self._redis_call(lambda: self._redis.delete(l2_key))

    async def clear(self) -> None:
        for tier in self.tiers.values():
            tier.clear()
        if self._l2_available:
            async def clear_l2():
                removed = 0
                async for k in self._redis.scan_iter(match="cache:*"):
                    await self._redis.delete(k)
                    removed += 1
                return removed

            removed = await self._redis_call(clear_l2)
            logger.info(f"Cleared layered cache (L2 keys removed: {removed or 0})")

    async def warmup(self) -> None:
        """Preload common greeting and help responses."""
        for key, data in WARMUP_RESPONSES.items():
            await self.set(key, data, ttl=10 * 60.0)
        logger.info(f"Layered cache warmup completed ({len(WARMUP_RESPONSES)} entries)")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "l1": {name: tier.get_stats() for name, tier in self.tiers.items()},
            "l2": {
                "available": self._l2_available,
                "configured": bool(self.redis_url) or self._redis is not None,
                "breaker": self._breaker.get_status(),
            },
        }

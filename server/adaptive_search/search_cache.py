"""
Search Result Cache with content-aware TTLs and similarity matching.

Stores prior search results keyed by a hash of the normalized query. Lookups
try the exact key first, then scan live entries for the most similar prior
query (word overlap, topic tags and length). TTLs depend on what the query
is about: breaking news expires in minutes, how-to guides last an hour.

The cache is best-effort. Internal failures are logged and reported as a
miss, and callers treat any miss as "must search".

Usage:
    from adaptive_search.search_cache import SearchCache

    cache = SearchCache()
    cache.set("bitcoin price today", result_text, "moderate", sources=4, scraped_sites=3)
    hit = cache.get("price of bitcoin today", similarity_threshold=0.6)

    cache.invalidate_by_tag("pricing")
    print(cache.get_stats())
"""

import asyncio
import hashlib
import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional, Pattern, Tuple, Union

logger = logging.getLogger("adaptive_search.search_cache")


DEFAULT_TTL_BUCKETS: Dict[str, float] = {
    "breaking_news": 2 * 60.0,
    "current_prices": 3 * 60.0,
    "weather": 5 * 60.0,
    "stock_market": 5 * 60.0,
    "research": 15 * 60.0,
    "comparison": 10 * 60.0,
    "factual": 30 * 60.0,
    "howto": 60 * 60.0,
    "general": 10 * 60.0,
}

# Content categories, checked in order before the intensity fallback
TTL_CATEGORY_PATTERNS: Tuple[Tuple[str, Pattern], ...] = (
    ("breaking_news", re.compile(r"\b(breaking|live|happening now|just announced)\b", re.IGNORECASE)),
    ("current_prices", re.compile(r"\b(price|cost|stock|market|trading)\b", re.IGNORECASE)),
    ("weather", re.compile(r"\b(weather|temperature|forecast)\b", re.IGNORECASE)),
    ("research", re.compile(r"\b(research|study|analysis|comprehensive)\b", re.IGNORECASE)),
    ("comparison", re.compile(r"\b(vs|versus|compare|comparison)\b", re.IGNORECASE)),
    ("howto", re.compile(r"\b(how to|guide|tutorial|steps)\b", re.IGNORECASE)),
    ("factual", re.compile(r"\b(statistics|data|facts|numbers)\b", re.IGNORECASE)),
)

INTENSITY_TTL_CATEGORY: Dict[str, str] = {
    "comprehensive": "research",
    "deep": "comparison",
    "moderate": "general",
    "light": "factual",
}

TAG_PATTERNS: Tuple[Tuple[str, Pattern], ...] = (
    # Topic tags
    ("tech", re.compile(r"\b(tech|technology|software|ai|programming)\b", re.IGNORECASE)),
    ("business", re.compile(r"\b(business|market|economy|finance)\b", re.IGNORECASE)),
    ("science", re.compile(r"\b(science|research|study)\b", re.IGNORECASE)),
    ("news", re.compile(r"\b(news|current|latest|breaking)\b", re.IGNORECASE)),
    ("weather", re.compile(r"\b(weather|climate)\b", re.IGNORECASE)),
    ("sports", re.compile(r"\b(sports|game|match)\b", re.IGNORECASE)),
    ("health", re.compile(r"\b(health|medical|medicine)\b", re.IGNORECASE)),
    # Query type tags
    ("pricing", re.compile(r"\b(price|cost|pricing)\b", re.IGNORECASE)),
    ("howto", re.compile(r"\b(how to|guide|tutorial)\b", re.IGNORECASE)),
    ("comparison", re.compile(r"\b(vs|versus|compare)\b", re.IGNORECASE)),
    ("review", re.compile(r"\b(review|rating|opinion)\b", re.IGNORECASE)),
)

WORD_WEIGHT = 0.6
TAG_WEIGHT = 0.3
LENGTH_WEIGHT = 0.1


def normalize_query(query: str) -> str:
    """Lowercase, strip punctuation, collapse whitespace."""
    normalized = re.sub(r"[^\w\s]", "", query.lower())
    return re.sub(r"\s+", " ", normalized).strip()


def hash_query(query: str) -> str:
    """Cache key for a query (sha256 of the normalized text)."""
    return hashlib.sha256(normalize_query(query).encode()).hexdigest()


def extract_tags(query: str) -> List[str]:
    """Topic and query-type tags used for bulk invalidation."""
    return [tag for tag, pattern in TAG_PATTERNS if pattern.search(query)]


def _intensity_value(intensity: Any) -> str:
    return getattr(intensity, "value", intensity) or ""


@dataclass
class CachedSearchResult:
    """One cached search result. Logically absent once now > expires_at."""
    query: str
    query_hash: str
    result: str
    sources: int
    scraped_sites: int
    timestamp: float
    expires_at: float
    search_intensity: str
    ttl_category: str
    tags: List[str] = field(default_factory=list)
    hit_count: int = 0
    last_accessed: float = 0.0

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def snapshot(self) -> "CachedSearchResult":
        """Copy handed to callers so they never mutate the stored entry."""
        copy = CachedSearchResult(**asdict(self))
        copy.tags = list(self.tags)
        return copy

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SearchCache:
    """
    Similarity-aware search result cache.

    Thread-safe: all table access happens under one lock.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        default_ttl: float = 300.0,
        ttl_buckets: Optional[Dict[str, float]] = None,
        eviction_fraction: float = 0.2,
        default_similarity_threshold: float = 0.8,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize search cache.

        Args:
            max_entries: Capacity before eviction runs
            default_ttl: TTL in seconds when no category or intensity applies
            ttl_buckets: Per-category TTLs in seconds (merged over the defaults)
            eviction_fraction: Share of capacity removed by an LRU eviction pass
            default_similarity_threshold: Threshold used when get() is given none
            clock: Wall-clock source in seconds
        """
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self.ttl_buckets = {**DEFAULT_TTL_BUCKETS, **(ttl_buckets or {})}
        self.eviction_fraction = eviction_fraction
        self.default_similarity_threshold = default_similarity_threshold
        self._clock = clock

        self._entries: Dict[str, CachedSearchResult] = {}
        self._lock = threading.Lock()
        self._stats = {"hits": 0, "misses": 0, "evictions": 0, "errors": 0}
        self._maintenance_task: Optional[asyncio.Task] = None

        logger.info(f"SearchCache initialized (max_entries={max_entries}, default_ttl={default_ttl}s)")

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] = time.time) -> "SearchCache":
        return cls(
            max_entries=settings.search_cache_max_entries,
            default_ttl=settings.search_cache_default_ttl,
            ttl_buckets=settings.ttl_buckets(),
            eviction_fraction=settings.search_cache_eviction_fraction,
            default_similarity_threshold=settings.cache_similarity_threshold,
            clock=clock,
        )

    def resolve_ttl(self, query: str, search_intensity: Any = "moderate") -> Tuple[str, float]:
        """
        Pick the TTL bucket for a query.

        Returns:
            (category name, TTL in seconds)
        """
        for category, pattern in TTL_CATEGORY_PATTERNS:
            if pattern.search(query):
                return category, self.ttl_buckets[category]

        category = INTENSITY_TTL_CATEGORY.get(_intensity_value(search_intensity))
        if category:
            return category, self.ttl_buckets[category]
        return "default", self.default_ttl

    def entry_age(self, entry: CachedSearchResult) -> float:
        """Seconds since ``entry`` was stored."""
        return self._clock() - entry.timestamp

    def set(
        self,
        query: str,
        result: str,
        search_intensity: Any = "moderate",
        sources: int = 3,
        scraped_sites: int = 2,
    ) -> None:
        """Store a search result. Failures are logged, never raised."""
        try:
            key = hash_query(query)
            now = self._clock()
            category, ttl = self.resolve_ttl(query, search_intensity)
            tags = extract_tags(query)

            with self._lock:
                if len(self._entries) >= self.max_entries and key not in self._entries:
                    self._evict_locked(now)

                self._entries[key] = CachedSearchResult(
                    query=query,
                    query_hash=key,
                    result=result,
                    sources=sources,
                    scraped_sites=scraped_sites,
                    timestamp=now,
                    expires_at=now + ttl,
                    search_intensity=_intensity_value(search_intensity),
                    ttl_category=category,
                    tags=tags,
                    last_accessed=now,
                )

            logger.debug(f"Stored result for '{query[:50]}' (ttl={ttl:.0f}s, category={category}, tags={tags})")
        except Exception as e:
            self._stats["errors"] += 1
            logger.warning(f"SearchCache set failed for '{query[:50]}': {e}")

    def get(
        self,
        query: str,
        similarity_threshold: Optional[float] = None,
    ) -> Optional[CachedSearchResult]:
        """
        Look up a query, exact key first, then by similarity.

        Args:
            query: Query text
            similarity_threshold: Minimum similarity for a non-exact hit

        Returns:
            Snapshot of the cached entry, or None on miss
        """
        threshold = self.default_similarity_threshold if similarity_threshold is None else similarity_threshold
        try:
            return self._get(query, threshold)
        except Exception as e:
            self._stats["errors"] += 1
            self._stats["misses"] += 1
            logger.warning(f"SearchCache lookup failed for '{query[:50]}', treating as miss: {e}")
            return None

    def _get(self, query: str, threshold: float) -> Optional[CachedSearchResult]:
        key = hash_query(query)
        now = self._clock()

        with self._lock:
            entry = self._entries.get(key)
            match_kind = "direct"
            if entry is None:
                entry = self._find_similar_locked(query, threshold, now)
                match_kind = "similar"

            if entry is None:
                self._stats["misses"] += 1
                logger.debug(f"Miss for '{query[:50]}'")
                return None

            if entry.is_expired(now):
                self._entries.pop(entry.query_hash, None)
                self._stats["misses"] += 1
                logger.debug(f"Expired entry for '{query[:50]}'")
                return None

            entry.hit_count += 1
            entry.last_accessed = now
            self._stats["hits"] += 1
            snapshot = entry.snapshot()

        logger.debug(
            f"{match_kind.capitalize()} hit for '{query[:50]}' "
            f"(original='{snapshot.query[:50]}', hits={snapshot.hit_count})"
        )
        return snapshot

    def _find_similar_locked(
        self,
        query: str,
        threshold: float,
        now: float,
    ) -> Optional[CachedSearchResult]:
        query_words = normalize_query(query).split(" ")
        query_tags = extract_tags(query)

        best: Optional[CachedSearchResult] = None
        best_score = 0.0
        for entry in self._entries.values():
            if entry.is_expired(now):
                continue
            score = self._similarity(query, query_words, query_tags, entry)
            if score >= threshold and score > best_score:
                best_score = score
                best = entry
        return best

    def similarity(self, query: str, other_query: str) -> float:
        """Similarity score in [0, 1] between two queries."""
        probe = CachedSearchResult(
            query=other_query, query_hash="", result="", sources=0, scraped_sites=0,
            timestamp=0.0, expires_at=0.0, search_intensity="", ttl_category="",
            tags=extract_tags(other_query),
        )
        return self._similarity(query, normalize_query(query).split(" "), extract_tags(query), probe)

    @staticmethod
    def _similarity(
        query: str,
        query_words: List[str],
        query_tags: List[str],
        cached: CachedSearchResult,
    ) -> float:
        cached_words = normalize_query(cached.query).split(" ")

        # A word counts as shared if either word contains the other
        common_words = [
            word for word in query_words
            if any(word in cw or cw in word for cw in cached_words)
        ]
        word_similarity = len(common_words) / max(len(query_words), len(cached_words))

        tag_total = max(len(query_tags), len(cached.tags))
        common_tags = [tag for tag in query_tags if tag in cached.tags]
        tag_similarity = len(common_tags) / tag_total if tag_total else 0.0

        longest = max(len(query), len(cached.query))
        length_similarity = max(0.0, 1 - abs(len(query) - len(cached.query)) / longest) if longest else 1.0

        return (
            word_similarity * WORD_WEIGHT
            + tag_similarity * TAG_WEIGHT
            + length_similarity * LENGTH_WEIGHT
        )

    def _purge_expired_locked(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def _evict_locked(self, now: float) -> None:
        """Drop expired entries, then the least recently used share if still full."""
        expired_count = self._purge_expired_locked(now)
        if expired_count:
            logger.debug(f"Removed {expired_count} expired entries")

        if len(self._entries) >= self.max_entries:
            by_access = sorted(self._entries.items(), key=lambda item: item[1].last_accessed)
            remove_count = max(1, int(self.max_entries * self.eviction_fraction))
            for key, _ in by_access[:remove_count]:
                del self._entries[key]
            self._stats["evictions"] += remove_count
            logger.info(f"Evicted {remove_count} LRU entries")

    def purge_expired(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        with self._lock:
            removed = self._purge_expired_locked(self._clock())
        if removed:
            logger.debug(f"Maintenance removed {removed} expired entries")
        return removed

    # Cache management methods
    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._stats = {"hits": 0, "misses": 0, "evictions": 0, "errors": 0}
        logger.info("Cleared all search cache entries")

    def invalidate_by_tag(self, tag: str) -> int:
        """Remove every entry carrying ``tag``. Returns the number removed."""
        with self._lock:
            keys = [key for key, entry in self._entries.items() if tag in entry.tags]
            for key in keys:
                del self._entries[key]
        logger.info(f"Invalidated {len(keys)} entries with tag: {tag}")
        return len(keys)

    def invalidate_by_pattern(self, pattern: Union[str, Pattern]) -> int:
        """Remove every entry whose query matches ``pattern``. Returns the number removed."""
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        with self._lock:
            keys = [key for key, entry in self._entries.items() if regex.search(entry.query)]
            for key in keys:
                del self._entries[key]
        logger.info(f"Invalidated {len(keys)} entries matching pattern {regex.pattern!r}")
        return len(keys)

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            entries = list(self._entries.values())
            stats = dict(self._stats)
        valid = [entry for entry in entries if not entry.is_expired(now)]
        lookups = stats["hits"] + stats["misses"]

        return {
            "total_entries": len(valid),
            "stored_entries": len(entries),
            "hit_rate": stats["hits"] / lookups if lookups else 0.0,
            "total_hits": stats["hits"],
            "total_misses": stats["misses"],
            "evictions": stats["evictions"],
            "errors": stats["errors"],
            "cache_size": len(json.dumps([entry.to_dict() for entry in entries])),
            "oldest_entry": min((e.timestamp for e in valid), default=0),
            "newest_entry": max((e.timestamp for e in valid), default=0),
        }

    def get_entries(self) -> List[CachedSearchResult]:
        """Live entries, most recently accessed first."""
        now = self._clock()
        with self._lock:
            live = [entry.snapshot() for entry in self._entries.values() if not entry.is_expired(now)]
        return sorted(live, key=lambda entry: entry.last_accessed, reverse=True)

    def __len__(self) -> int:
        return len(self._entries)

    async def start_maintenance(self, interval: float = 60.0) -> None:
        """Start the periodic expired-entry purge."""
        if self._maintenance_task is not None:
            return

        async def maintenance_loop():
            while True:
                try:
                    await asyncio.sleep(interval)
                    self.purge_expired()
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error(f"Error in search cache maintenance loop: {e}")

        self._maintenance_task = asyncio.create_task(maintenance_loop())
        logger.info("Started search cache maintenance loop")

    async def stop_maintenance(self) -> None:
        """Stop the periodic purge."""
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None
            logger.info("Stopped search cache maintenance loop")

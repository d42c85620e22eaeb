"""
Recent-duplicate query window.

A small, short-horizon first tier in front of the SearchCache: remembers the
last N executed queries for a few minutes so bursty repeats inside one
conversation return the previous result without touching the broader
similarity scan.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .search_cache import hash_query, normalize_query

logger = logging.getLogger("adaptive_search.recent_queries")


@dataclass(frozen=True)
class RecentQuery:
    normalized_query: str
    result: str
    query_hash: str
    timestamp: float


def dice_similarity(words_a: List[str], words_b: List[str]) -> float:
    """Shared-word ratio: 2 * |common| / (|a| + |b|)."""
    total = len(words_a) + len(words_b)
    if not total:
        return 0.0
    common = [word for word in words_a if word in words_b]
    return (len(common) * 2) / total


class RecentQueryWindow:
    """
    Bounded window of recently executed queries.

    Args:
        max_size: Maximum remembered queries; the oldest is dropped when full
        max_age: Seconds a query stays in the window
        similarity_threshold: Word-overlap score for a near-duplicate match
        clock: Wall-clock source in seconds
    """

    def __init__(
        self,
        max_size: int = 50,
        max_age: float = 600.0,
        similarity_threshold: float = 0.85,
        clock: Callable[[], float] = time.time,
    ):
        self.max_size = max_size
        self.max_age = max_age
        self.similarity_threshold = similarity_threshold
        self._clock = clock
        self._queries: Dict[str, RecentQuery] = {}
        self._lock = threading.Lock()

    def _prune_locked(self, now: float) -> int:
        stale = [key for key, entry in self._queries.items() if now - entry.timestamp > self.max_age]
        for key in stale:
            del self._queries[key]
        return len(stale)

    def lookup(self, query: str) -> Optional[RecentQuery]:
        """Return a recent exact or near-duplicate match, if any."""
        now = self._clock()
        normalized = normalize_query(query)

        with self._lock:
            self._prune_locked(now)

            exact = self._queries.get(normalized)
            if exact is not None:
                logger.debug(f"Exact recent query match for '{query[:50]}'")
                return exact

            words = normalized.split(" ")
            for recent_query, entry in self._queries.items():
                if dice_similarity(words, recent_query.split(" ")) >= self.similarity_threshold:
                    logger.debug(f"Similar recent query '{recent_query[:50]}' for '{query[:50]}'")
                    return entry
        return None

    def store(self, query: str, result: str, query_hash: Optional[str] = None) -> None:
        now = self._clock()
        normalized = normalize_query(query)

        with self._lock:
            if normalized not in self._queries and len(self._queries) >= self.max_size:
                oldest = min(self._queries.values(), key=lambda entry: entry.timestamp)
                del self._queries[oldest.normalized_query]

            self._queries[normalized] = RecentQuery(
                normalized_query=normalized,
                result=result,
                query_hash=query_hash or hash_query(query),
                timestamp=now,
            )

    def entry_age(self, entry: RecentQuery) -> float:
        """Seconds since ``entry`` was stored."""
        return max(0.0, self._clock() - entry.timestamp)

    def purge_expired(self) -> int:
        with self._lock:
            return self._prune_locked(self._clock())

    def clear(self) -> None:
        with self._lock:
            self._queries.clear()

    def __len__(self) -> int:
        return len(self._queries)

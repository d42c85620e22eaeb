"""
Embedding generation behind a circuit breaker and the layered cache.

The host supplies the actual embedding call. Vectors are cached under
sha256("{model}:{text}") in the layered cache's embedding tier (and in Redis
when available). When the breaker is open, or the call fails, ``embed``
returns None and callers fall back to lexical scoring.
"""

import hashlib
import logging
from typing import Awaitable, Callable, List, Optional, Sequence

import numpy as np

from .circuit_breaker import CircuitBreaker
from .layered_cache import LayeredCache
from .metrics import PerformanceMetrics

logger = logging.getLogger("adaptive_search.embeddings")

EmbeddingFn = Callable[[str], Awaitable[Sequence[float]]]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors (0.0 if either has zero norm or sizes differ)."""
    a_vec = np.asarray(a, dtype=np.float64)
    b_vec = np.asarray(b, dtype=np.float64)
    if a_vec.shape != b_vec.shape:
        return 0.0
    a_norm = np.linalg.norm(a_vec)
    b_norm = np.linalg.norm(b_vec)
    if a_norm == 0 or b_norm == 0:
        return 0.0
    return float(np.dot(a_vec, b_vec) / (a_norm * b_norm))


def embedding_cache_key(text: str, model: str) -> str:
    return "embedding:" + hashlib.sha256(f"{model}:{text}".encode()).hexdigest()


class EmbeddingService:
    """
    Cached, breaker-protected embedding generation.

    Args:
        embed_fn: Async host function returning a vector for a text
        breaker: Breaker guarding the embedding dependency
        cache: Layered cache holding generated vectors (None disables caching)
        metrics: Metrics sink for timings and cache hit/miss counters
        model: Model name mixed into the cache key
        ttl: Cache lifetime of a vector in seconds
    """

    def __init__(
        self,
        embed_fn: EmbeddingFn,
        breaker: CircuitBreaker,
        cache: Optional[LayeredCache] = None,
        metrics: Optional[PerformanceMetrics] = None,
        model: str = "default",
        ttl: float = 3600.0,
    ):
        self._embed_fn = embed_fn
        self.breaker = breaker
        self.cache = cache
        self.metrics = metrics or PerformanceMetrics()
        self.model = model
        self.ttl = ttl

    async def embed(self, text: str) -> Optional[List[float]]:
        """
        Embedding for ``text``, or None while the embedding service is degraded.
        """
        finish = self.metrics.start_timer("embedding_generation")
        key = embedding_cache_key(text, self.model)

        if self.cache is not None:
            cached = await self.cache.get(key, tier="embedding")
            if cached is not None:
                self.metrics.increment("embedding_cache.hits")
                finish(True, cached=True)
                return cached
            self.metrics.increment("embedding_cache.misses")

        vector = await self.breaker.execute(lambda: self._embed_fn(text), fallback=lambda: None)
        if vector is None:
            logger.warning(f"Embedding service degraded, no vector for '{text[:50]}'")
            finish(False, degraded=True)
            return None

        vector = [float(v) for v in vector]
        if self.cache is not None:
            await self.cache.set(key, vector, ttl=self.ttl, tier="embedding")
        finish(True, cached=False)
        return vector

    def get_stats(self) -> dict:
        return {
            "model": self.model,
            "cache_hit_rate": self.metrics.hit_rate("embedding_cache"),
            "breaker": self.breaker.get_status(),
        }

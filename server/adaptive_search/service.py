"""
Adaptive Search Core service

Composition root: owns one instance of every component (classifier, caches,
breakers, metrics, orchestrator, memory retrieval) and exposes the host
interface. Nothing here is a module-level singleton; tests and hosts build as
many isolated cores as they need.

Usage:
    core = create_adaptive_search_core(memory_store=store, embedding_fn=embed)
    await core.start()
    analysis = core.classify("what is the latest price of bitcoin")
    result = await core.search("best laptop 2025")
    memories = await core.retrieve_adaptive_memories("user-1", "what laptop fits my workflow")
    await core.stop()
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from config.settings import AdaptiveSearchSettings, get_settings
from core.exceptions import ServiceUnavailableError

from .adaptive_memory import AdaptiveMemoryRetrieval, MemoryStore
from .circuit_breaker import (
    MEMORY_STORE_BREAKER,
    SEARCH_BREAKER,
    CircuitBreaker,
    CircuitBreakerRegistry,
    breaker_config_from_settings,
    create_embedding_circuit_breaker,
    create_llm_circuit_breaker,
)
from .embeddings import EmbeddingFn, EmbeddingService
from .layered_cache import LayeredCache, process_rss_bytes
from .metrics import PerformanceMetrics
from .models import AdaptiveMemoryResult, SearchOptions, SearchResult
from .query_classifier import QueryAnalysis, QueryClassifier
from .recent_queries import RecentQueryWindow
from .search_cache import SearchCache
from .search_orchestrator import SearchExecutor, SearchOrchestrator
from .transports import SearXNGSearchExecutor

logger = logging.getLogger("adaptive_search.service")


class AdaptiveSearchCore:
    """
    Host-facing facade over the adaptive search components.

    Args:
        settings: Thresholds, TTLs and timeouts
        classifier: Query classifier
        search_cache: Similarity search cache (L2 of the search path)
        recent_window: Recent-duplicate window (L1 of the search path)
        layered_cache: Memory-aware L1 tiers with optional Redis L2
        breakers: Registry holding one breaker per upstream dependency
        metrics: Shared metrics sink
        orchestrator: Search orchestrator
        memory_retrieval: Adaptive memory retrieval (None without a memory store)
        embeddings: Embedding service (None without an embedding function)
    """

    def __init__(
        self,
        settings: AdaptiveSearchSettings,
        classifier: QueryClassifier,
        search_cache: SearchCache,
        recent_window: RecentQueryWindow,
        layered_cache: LayeredCache,
        breakers: CircuitBreakerRegistry,
        metrics: PerformanceMetrics,
        orchestrator: SearchOrchestrator,
        memory_retrieval: Optional[AdaptiveMemoryRetrieval] = None,
        embeddings: Optional[EmbeddingService] = None,
    ):
        self.settings = settings
        self.classifier = classifier
        self.search_cache = search_cache
        self.recent_window = recent_window
        self.layered_cache = layered_cache
        self.breakers = breakers
        self.metrics = metrics
        self.orchestrator = orchestrator
        self.memory_retrieval = memory_retrieval
        self.embeddings = embeddings
        self._started = False

    # Lifecycle

    async def start(self) -> None:
        """Start periodic maintenance and connect the Redis tier if configured."""
        if self._started:
            return
        await self.search_cache.start_maintenance(self.settings.search_cache_maintenance_interval)
        await self.layered_cache.start()
        await self.layered_cache.warmup()
        self._started = True
        logger.info(
            f"Adaptive search core started (redis={'on' if self.layered_cache.l2_available else 'off'}, "
            f"memory={'on' if self.memory_retrieval else 'off'}, "
            f"embeddings={'on' if self.embeddings else 'off'})"
        )

    async def stop(self) -> None:
        """Stop maintenance tasks and release connections."""
        await self.search_cache.stop_maintenance()
        await self.layered_cache.close()
        close = getattr(self.orchestrator.executor, "close", None)
        if close is not None:
            await close()
        self._started = False
        logger.info("Adaptive search core stopped")

    # Host interface

    def classify(self, query: str, user_context: Optional[Any] = None) -> QueryAnalysis:
        return self.classifier.analyze(query, user_context)

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> SearchResult:
        return await self.orchestrator.search(query, options)

    async def progressive_search(
        self,
        query: str,
        options: Optional[SearchOptions] = None,
        quality_threshold: Optional[float] = None,
    ) -> SearchResult:
        return await self.orchestrator.progressive_search(query, options, quality_threshold)

    async def retrieve_adaptive_memories(
        self,
        user_id: str,
        query: str,
        user_context: Optional[Any] = None,
    ) -> AdaptiveMemoryResult:
        if self.memory_retrieval is None:
            raise ServiceUnavailableError("memory_store", "No memory store configured")
        return await self.memory_retrieval.retrieve_adaptive_memories(user_id, query, user_context)

    def breaker(self, name: str) -> Optional[CircuitBreaker]:
        """Breaker guarding the named dependency, for host call-sites."""
        return self.breakers.get(name)

    # Cache administration

    def invalidate_by_tag(self, tag: str) -> int:
        return self.search_cache.invalidate_by_tag(tag)

    async def clear(self) -> None:
        """Drop every cached search result and layered cache entry."""
        self.orchestrator.clear_cache()
        await self.layered_cache.clear()

    def get_stats(self) -> Dict[str, Any]:
        stats = {
            "search_cache": self.search_cache.get_stats(),
            "recent_queries": len(self.recent_window),
            "layered_cache": self.layered_cache.get_stats(),
            "circuit_breakers": self.breakers.get_all_status(),
            "health": self.breakers.get_health_summary(),
            "performance": self.metrics.get_health_report(),
        }
        if self.memory_retrieval is not None:
            stats["memory"] = self.memory_retrieval.get_memory_stats()
        if self.embeddings is not None:
            stats["embeddings"] = self.embeddings.get_stats()
        return stats


def create_adaptive_search_core(
    settings: Optional[AdaptiveSearchSettings] = None,
    search_executor: Optional[SearchExecutor] = None,
    memory_store: Optional[MemoryStore] = None,
    embedding_fn: Optional[EmbeddingFn] = None,
    redis_client: Optional[Any] = None,
    clock: Callable[[], float] = time.time,
    monotonic_clock: Callable[[], float] = time.monotonic,
    memory_probe: Callable[[], int] = process_rss_bytes,
) -> AdaptiveSearchCore:
    """
    Build a fully wired core from settings.

    Args:
        settings: Settings (defaults to get_settings())
        search_executor: Search transport (defaults to SearXNG at settings.searxng_url)
        memory_store: Host memory store; adaptive memory retrieval is disabled without one
        embedding_fn: Host embedding function; embedding similarity is disabled without one
        redis_client: Connected redis.asyncio client for the L2 tier
        clock: Wall clock for caches and metrics
        monotonic_clock: Clock for circuit breakers
        memory_probe: Process memory probe for memory-pressure cleanup

    Returns:
        AdaptiveSearchCore (call start() before serving)
    """
    settings = settings or get_settings()
    metrics = PerformanceMetrics(clock=clock)

    breakers = CircuitBreakerRegistry(clock=monotonic_clock)
    search_breaker = breakers.get_or_create(
        SEARCH_BREAKER, breaker_config_from_settings(settings, settings.search_call_timeout)
    )
    memory_breaker = breakers.get_or_create(
        MEMORY_STORE_BREAKER, breaker_config_from_settings(settings, settings.memory_call_timeout)
    )
    embedding_breaker = breakers.register(create_embedding_circuit_breaker(settings, clock=monotonic_clock))
    breakers.register(create_llm_circuit_breaker(settings, clock=monotonic_clock))

    classifier = QueryClassifier()
    search_cache = SearchCache.from_settings(settings, clock=clock)
    recent_window = RecentQueryWindow(
        max_size=settings.recent_query_window_size,
        max_age=settings.recent_query_max_age,
        similarity_threshold=settings.recent_query_similarity_threshold,
        clock=clock,
    )
    layered_cache = LayeredCache.from_settings(
        settings, redis_client=redis_client, clock=clock, memory_probe=memory_probe
    )
    breakers.register(layered_cache.breaker)

    if search_executor is None:
        search_executor = SearXNGSearchExecutor(settings.searxng_url, timeout=settings.searxng_timeout)

    orchestrator = SearchOrchestrator(
        classifier,
        search_cache,
        recent_window,
        search_executor,
        search_breaker,
        metrics=metrics,
        similarity_threshold=settings.orchestrator_similarity_threshold,
        call_timeout=settings.search_call_timeout,
        quality_threshold=settings.progressive_quality_threshold,
    )

    embeddings = None
    if embedding_fn is not None:
        embeddings = EmbeddingService(
            embedding_fn,
            embedding_breaker,
            cache=layered_cache,
            metrics=metrics,
            model=settings.embedding_model,
            ttl=settings.embedding_cache_ttl,
        )

    memory_retrieval = None
    if memory_store is not None:
        memory_retrieval = AdaptiveMemoryRetrieval(
            classifier,
            memory_store,
            memory_breaker,
            cache=layered_cache,
            embeddings=embeddings,
            metrics=metrics,
        )

    return AdaptiveSearchCore(
        settings=settings,
        classifier=classifier,
        search_cache=search_cache,
        recent_window=recent_window,
        layered_cache=layered_cache,
        breakers=breakers,
        metrics=metrics,
        orchestrator=orchestrator,
        memory_retrieval=memory_retrieval,
        embeddings=embeddings,
    )

"""
Search Orchestrator

Decides whether and how hard to search for a query and reuses earlier results:

1. Recent-duplicate window (L1): exact or near-identical queries from the
   last few minutes return immediately.
2. Classification: QueryClassifier picks intensity and source budgets.
3. Search cache (L2): similarity lookup (0.6 by default), optionally bounded
   by a caller-supplied maximum age.
4. Execution: no-search queries get a synthesized answer; otherwise one of
   three executor modes runs behind the search circuit breaker:
   - wide: comprehensive/deep intensity, parallel multi-source fetch + scrape
   - minimal: light intensity or small source budgets, two sources
   - parameterized: the classifier's recommended source/scrape counts
   A failing wide or parameterized call degrades to the minimal mode.
5. Write-through: results land in both the recent window and the cache.

Progressive search runs a forced first pass, scores its quality and escalates
once to a wide search when the score falls below the threshold.

Usage:
    orchestrator = SearchOrchestrator(classifier, cache, recent_window, executor, breaker)
    result = await orchestrator.search("best laptop 2025")
    print(result.from_cache, result.search_strategy.execution_mode)
"""

import asyncio
import logging
import re
from dataclasses import replace
from enum import Enum
from typing import Any, Dict, NoReturn, Optional, Protocol, Tuple

from core.exceptions import SearchError, SearchTimeoutError

from .circuit_breaker import CircuitBreaker, CircuitOpenError
from .events import (
    CacheHitEvent,
    NoSearchDecisionEvent,
    ProgressCallback,
    SearchDecisionEvent,
    SearchDegradedEvent,
    SearchEscalationEvent,
    emit_progress,
)
from .metrics import PerformanceMetrics, PhaseTimer
from .models import (
    SearchMetadata,
    SearchOptions,
    SearchPerformance,
    SearchResult,
    SearchStrategyReport,
)
from .query_classifier import QueryAnalysis, QueryClassifier, SearchIntensity
from .recent_queries import RecentQueryWindow
from .search_cache import SearchCache, hash_query

logger = logging.getLogger("adaptive_search.orchestrator")


class SearchExecutor(Protocol):
    """Host search transport: three execution variants returning rendered text"""

    async def search_minimal(self, query: str, progress_callback: Optional[ProgressCallback] = None) -> str:
        ...

    async def search_parameterized(
        self,
        query: str,
        max_results: int,
        scrape_count: int,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> str:
        ...

    async def search_wide(self, query: str, progress_callback: Optional[ProgressCallback] = None) -> str:
        ...


class ExecutionMode(str, Enum):
    MINIMAL = "minimal"
    PARAMETERIZED = "parameterized"
    WIDE = "wide"


MINIMAL_BUDGET = (2, 2)
WIDE_BUDGET = (8, 5)

SOURCE_HEADER = re.compile(r"##\s+\d+\.")

NO_SEARCH_MESSAGE = "Based on the query analysis, this can be answered with existing knowledge. {reasoning}"


def select_execution_mode(analysis: QueryAnalysis) -> Tuple[ExecutionMode, int, int]:
    """
    Map an analysis onto an executor mode.

    Returns:
        (mode, source count, scrape count)
    """
    intensity = analysis.search_intensity
    if intensity in (SearchIntensity.COMPREHENSIVE, SearchIntensity.DEEP):
        return (ExecutionMode.WIDE,) + WIDE_BUDGET
    if intensity == SearchIntensity.LIGHT or analysis.recommended_sources <= 3:
        return (ExecutionMode.MINIMAL,) + MINIMAL_BUDGET
    return ExecutionMode.PARAMETERIZED, analysis.recommended_sources, analysis.recommended_scraping


def assess_result_quality(content: Optional[str]) -> float:
    """
    Heuristic quality score in [0, 1] for rendered search output.

    Length bonuses, a source-count bonus from numbered ``## N.`` headers, and
    small bonuses for credit footers, absent error text and links.
    """
    if not content or len(content) < 100:
        return 0.0

    score = 0.0
    if len(content) > 500:
        score += 0.3
    if len(content) > 1000:
        score += 0.2
    if len(content) > 2000:
        score += 0.1

    source_count = len(SOURCE_HEADER.findall(content))
    if source_count >= 3:
        score += 0.3
    if source_count >= 5:
        score += 0.1

    if "Credits used" in content:
        score += 0.1
    if "Error" not in content and "error" not in content:
        score += 0.1
    if "http" in content:
        score += 0.1

    return min(1.0, score)


class SearchOrchestrator:
    """
    Two-tier cached, classification-driven search.

    Args:
        classifier: Query classifier
        cache: Similarity search cache (L2)
        recent_window: Recent-duplicate window (L1)
        executor: Search transport
        breaker: Breaker guarding the transport
        metrics: Metrics sink
        similarity_threshold: Cache similarity threshold for lookups
        call_timeout: Per-call transport timeout in seconds
        quality_threshold: Default progressive-search escalation threshold
    """

    def __init__(
        self,
        classifier: QueryClassifier,
        cache: SearchCache,
        recent_window: RecentQueryWindow,
        executor: SearchExecutor,
        breaker: CircuitBreaker,
        metrics: Optional[PerformanceMetrics] = None,
        similarity_threshold: float = 0.6,
        call_timeout: Optional[float] = 25.0,
        quality_threshold: float = 0.7,
    ):
        self.classifier = classifier
        self.cache = cache
        self.recent_window = recent_window
        self.executor = executor
        self.breaker = breaker
        self.metrics = metrics or PerformanceMetrics()
        self.similarity_threshold = similarity_threshold
        self.call_timeout = call_timeout
        self.quality_threshold = quality_threshold

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> SearchResult:
        """
        Answer a query from the recent window, the cache or a fresh search.

        Raises:
            SearchError: Both the selected execution mode and its fallback failed
            SearchTimeoutError: The final attempt timed out
            CircuitOpenError: The search breaker is open
        """
        options = options or SearchOptions()
        finish = self.metrics.start_timer("intelligent_search")

        try:
            with PhaseTimer() as total:
                result = await self._search(query, options, total)
        except Exception as e:
            finish(False, error=str(e))
            logger.error(f"Search failed for '{query[:50]}': {e}")
            raise

        finish(
            True,
            cached=result.from_cache,
            executed=result.search_strategy.executed,
            intensity=result.search_strategy.analysis.search_intensity.value,
        )
        return result

    async def _search(self, query: str, options: SearchOptions, total: PhaseTimer) -> SearchResult:
        callback = options.progress_callback

        if not options.force_search:
            recent = self.recent_window.lookup(query)
            if recent is not None and options.max_cache_age is not None:
                age = self.recent_window.entry_age(recent)
                if age > options.max_cache_age:
                    logger.debug(f"Recent result too old ({age:.0f}s > {options.max_cache_age:.0f}s)")
                    recent = None
            if recent is not None:
                self.metrics.increment("recent_queries.hits")
                logger.info(f"Recent duplicate for '{query[:50]}', returning earlier result")
                return SearchResult(
                    content=recent.result,
                    from_cache=True,
                    search_strategy=SearchStrategyReport(
                        analysis=self.classifier.analyze(query, options.user_context),
                        executed=False,
                        cache_hit=True,
                    ),
                    performance=SearchPerformance(total_ms=total.elapsed_ms),
                    metadata=SearchMetadata(
                        query_hash=recent.query_hash,
                        recent_hit=True,
                        cache_stats=self.cache.get_stats(),
                    ),
                )
            self.metrics.increment("recent_queries.misses")

        with PhaseTimer() as analysis_timer:
            analysis = self.classifier.analyze(query, options.user_context)
        logger.info(
            f"Analyzed '{query[:50]}': type={analysis.query_type.value}, search={analysis.search_needed}, "
            f"intensity={analysis.search_intensity.value}, rule={analysis.matched_rule}"
        )

        with PhaseTimer() as cache_timer:
            cached = None
            if not options.force_search:
                cached = self.cache.get(query, self.similarity_threshold)
                if cached is not None and options.max_cache_age is not None:
                    age = self.cache.entry_age(cached)
                    if age > options.max_cache_age:
                        logger.debug(f"Cache entry too old ({age:.0f}s > {options.max_cache_age:.0f}s)")
                        cached = None

        query_hash = hash_query(query)

        if cached is not None:
            self.metrics.increment("search_cache.hits")
            age = self.cache.entry_age(cached)
            logger.info(f"Cache hit for '{query[:50]}' (age {age:.0f}s, original '{cached.query[:50]}')")
            await emit_progress(callback, CacheHitEvent(
                content=f"Found cached results from {age:.0f} seconds ago",
                cache_age_seconds=age,
                original_query=cached.query,
                hit_count=cached.hit_count,
            ))
            return SearchResult(
                content=cached.result,
                from_cache=True,
                search_strategy=SearchStrategyReport(
                    analysis=analysis,
                    executed=False,
                    cache_hit=True,
                    actual_sources=cached.sources,
                    actual_scraping=cached.scraped_sites,
                ),
                performance=SearchPerformance(
                    total_ms=total.elapsed_ms,
                    analysis_ms=analysis_timer.elapsed_ms,
                    cache_check_ms=cache_timer.elapsed_ms,
                ),
                metadata=SearchMetadata(query_hash=query_hash, cache_stats=self.cache.get_stats()),
            )
        self.metrics.increment("search_cache.misses")

        if not (analysis.search_needed or options.force_search):
            await emit_progress(callback, NoSearchDecisionEvent(
                content=f"No search needed: {analysis.reasoning}",
                confidence=analysis.confidence,
                matched_rule=analysis.matched_rule,
            ))
            return SearchResult(
                content=NO_SEARCH_MESSAGE.format(reasoning=analysis.reasoning),
                from_cache=False,
                search_strategy=SearchStrategyReport(analysis=analysis, executed=False, cache_hit=False),
                performance=SearchPerformance(
                    total_ms=total.elapsed_ms,
                    analysis_ms=analysis_timer.elapsed_ms,
                    cache_check_ms=cache_timer.elapsed_ms,
                ),
                metadata=SearchMetadata(query_hash=query_hash),
            )

        mode, sources, scraping = select_execution_mode(analysis)
        await emit_progress(callback, SearchDecisionEvent(
            content=f"Searching with {analysis.search_intensity.value} intensity: {analysis.reasoning}",
            intensity=analysis.search_intensity.value,
            expected_sources=sources,
            expected_scraping=scraping,
            confidence=analysis.confidence,
        ))

        with PhaseTimer() as search_timer:
            content, mode, degraded = await self._execute(query, mode, sources, scraping, options)
        if degraded:
            sources, scraping = MINIMAL_BUDGET

        self.cache.set(query, content, analysis.search_intensity, sources, scraping)
        self.recent_window.store(query, content, query_hash)

        logger.info(
            f"Search for '{query[:50]}' completed via {mode.value} in {search_timer.elapsed_ms:.0f}ms"
            + (" (degraded)" if degraded else "")
        )
        return SearchResult(
            content=content,
            from_cache=False,
            search_strategy=SearchStrategyReport(
                analysis=analysis,
                executed=True,
                cache_hit=False,
                actual_sources=sources,
                actual_scraping=scraping,
                execution_mode=mode.value,
                degraded=degraded,
            ),
            performance=SearchPerformance(
                total_ms=total.elapsed_ms,
                analysis_ms=analysis_timer.elapsed_ms,
                cache_check_ms=cache_timer.elapsed_ms,
                search_ms=search_timer.elapsed_ms,
            ),
            metadata=SearchMetadata(query_hash=query_hash, cache_stats=self.cache.get_stats()),
        )

    def _operation(self, mode: ExecutionMode, query: str, sources: int, scraping: int, callback):
        if mode == ExecutionMode.WIDE:
            return lambda: self.executor.search_wide(query, callback)
        if mode == ExecutionMode.PARAMETERIZED:
            return lambda: self.executor.search_parameterized(query, sources, scraping, callback)
        return lambda: self.executor.search_minimal(query, callback)

    async def _execute(
        self,
        query: str,
        mode: ExecutionMode,
        sources: int,
        scraping: int,
        options: SearchOptions,
    ) -> Tuple[str, ExecutionMode, bool]:
        """Run the selected mode, degrading to minimal once. Returns (content, mode used, degraded)."""
        callback = options.progress_callback
        timeout = options.timeout or self.call_timeout

        try:
            content = await self.breaker.execute(
                self._operation(mode, query, sources, scraping, callback), timeout=timeout
            )
            return content, mode, False
        except Exception as e:
            if mode == ExecutionMode.MINIMAL:
                self._raise_search_error(query, mode, e, timeout)
            primary_error = e

        logger.warning(f"{mode.value} search failed for '{query[:50]}', falling back to minimal: {primary_error}")
        self.metrics.increment("intelligent_search.degraded")
        await emit_progress(callback, SearchDegradedEvent(
            content="Primary search failed - continuing with a lighter search",
            failed_mode=mode.value,
            fallback_mode=ExecutionMode.MINIMAL.value,
            error=str(primary_error) or type(primary_error).__name__,
        ))

        try:
            content = await self.breaker.execute(
                self._operation(ExecutionMode.MINIMAL, query, *MINIMAL_BUDGET, callback), timeout=timeout
            )
        except Exception as e:
            self._raise_search_error(query, ExecutionMode.MINIMAL, e, timeout)
        return content, ExecutionMode.MINIMAL, True

    @staticmethod
    def _raise_search_error(
        query: str,
        mode: ExecutionMode,
        error: Exception,
        timeout: Optional[float],
    ) -> NoReturn:
        """Re-raise a terminal execution failure as a tagged error."""
        if isinstance(error, (CircuitOpenError, SearchError)):
            raise error
        if isinstance(error, asyncio.TimeoutError):
            raise SearchTimeoutError(
                f"Search timed out for '{query[:50]}'",
                timeout_seconds=timeout,
                mode=mode.value,
            ) from error
        raise SearchError(
            f"Search failed for '{query[:50]}': {error}",
            mode=mode.value,
            error_type=type(error).__name__,
        ) from error

    async def progressive_search(
        self,
        query: str,
        options: Optional[SearchOptions] = None,
        quality_threshold: Optional[float] = None,
    ) -> SearchResult:
        """
        Forced first-pass search, escalated once to a wide search when its
        quality score is below ``quality_threshold``.
        """
        options = options or SearchOptions()
        threshold = self.quality_threshold if quality_threshold is None else quality_threshold

        first = await self.search(query, options.model_copy(update={"force_search": True}))
        quality = assess_result_quality(first.content)
        first.search_strategy.quality_score = quality
        logger.info(f"Progressive search first pass quality for '{query[:50]}': {quality:.0%}")

        if quality >= threshold:
            return first

        await emit_progress(options.progress_callback, SearchEscalationEvent(
            content="Initial search results insufficient - performing deeper analysis",
            initial_quality=quality,
            threshold=threshold,
        ))
        self.metrics.increment("progressive_search.escalations")

        timeout = options.timeout or self.call_timeout
        try:
            with PhaseTimer() as search_timer:
                content = await self.breaker.execute(
                    self._operation(ExecutionMode.WIDE, query, *WIDE_BUDGET, options.progress_callback),
                    timeout=timeout,
                )
        except Exception as e:
            logger.warning(f"Escalated search failed for '{query[:50]}', keeping first pass: {e}")
            first.search_strategy.degraded = True
            return first

        self.cache.set(query, content, SearchIntensity.COMPREHENSIVE, *WIDE_BUDGET)
        self.recent_window.store(query, content, first.metadata.query_hash)

        analysis = replace(
            first.search_strategy.analysis,
            search_needed=True,
            search_intensity=SearchIntensity.COMPREHENSIVE,
            recommended_sources=WIDE_BUDGET[0],
            recommended_scraping=WIDE_BUDGET[1],
        )
        return SearchResult(
            content=content,
            from_cache=False,
            search_strategy=SearchStrategyReport(
                analysis=analysis,
                executed=True,
                cache_hit=False,
                actual_sources=WIDE_BUDGET[0],
                actual_scraping=WIDE_BUDGET[1],
                execution_mode=ExecutionMode.WIDE.value,
                quality_score=assess_result_quality(content),
            ),
            performance=first.performance.model_copy(
                update={"search_ms": (first.performance.search_ms or 0.0) + search_timer.elapsed_ms}
            ),
            metadata=first.metadata,
        )

    # Utilities

    def analyze_query(self, query: str, user_context: Optional[Any] = None) -> QueryAnalysis:
        return self.classifier.analyze(query, user_context)

    def should_search(self, query: str, user_context: Optional[Any] = None) -> bool:
        return self.classifier.should_search(query, user_context)

    def get_search_strategy(self, query: str, user_context: Optional[Any] = None) -> Dict[str, Any]:
        return self.classifier.get_search_strategy(query, user_context)

    def clear_cache(self) -> None:
        """Clear both the recent window and the search cache."""
        self.recent_window.clear()
        self.cache.clear()
        logger.info("Search caches cleared")

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.cache.get_stats()

    def invalidate_cache_by_tag(self, tag: str) -> int:
        return self.cache.invalidate_by_tag(tag)

    def get_performance_metrics(self) -> Dict[str, Any]:
        return {
            "cache_stats": self.cache.get_stats(),
            "search_metrics": self.metrics.export_metrics(),
            "system_health": {
                "avg_search_time_ms": self.metrics.get_average_time("intelligent_search"),
                "search_success_rate": self.metrics.get_success_rate("intelligent_search"),
                "cache_hit_rate": self.metrics.hit_rate("search_cache"),
                "recent_hit_rate": self.metrics.hit_rate("recent_queries"),
                "breaker": self.breaker.get_status(),
            },
        }

"""
Unit Tests for Adaptive Memory Retrieval

Tests skip gating, strategy selection, scoring, diversity selection and
store/cache interaction against an in-memory store.
"""

import pytest
import asyncio
from unittest.mock import AsyncMock

from adaptive_search.adaptive_memory import (
    AdaptiveMemoryRetrieval,
    apply_diversity_filter,
    determine_memory_strategy,
    keyword_overlap,
    relevance_score,
    select_memories,
    should_skip_memories,
    type_relevance,
)
from adaptive_search.circuit_breaker import CircuitBreaker
from adaptive_search.embeddings import EmbeddingService
from adaptive_search.layered_cache import LayeredCache
from adaptive_search.metrics import PerformanceMetrics
from adaptive_search.models import Memory, MemoryRetrievalStrategy
from adaptive_search.query_classifier import QueryClassifier
from core.exceptions import ErrorCode, MemoryRetrievalError


PREFERENCE_QUERY = "I prefer quiet keyboards, which should I buy"


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def classifier():
    return QueryClassifier(recent_years=(2025, 2024))


@pytest.fixture
def breaker(monotonic_clock):
    return CircuitBreaker("memory_store", clock=monotonic_clock)


@pytest.fixture
def metrics(clock):
    return PerformanceMetrics(clock=clock)


@pytest.fixture
def retrieval(classifier, memory_store, breaker, metrics):
    return AdaptiveMemoryRetrieval(classifier, memory_store, breaker, metrics=metrics)


def _strategy(max_memories, threshold, diversity, recency):
    return MemoryRetrievalStrategy(
        max_memories=max_memories,
        confidence_threshold=threshold,
        diversity_weight=diversity,
        recency_weight=recency,
        reasoning="test",
    )


# =============================================================================
# GATING TESTS
# =============================================================================

class TestGating:
    """Tests for the fast exits that return no memories."""

    @pytest.mark.asyncio
    async def test_greeting_returns_style_only(self, retrieval, memory_store):
        result = await retrieval.retrieve_adaptive_memories("user-1", "hi")

        assert result.memories == []
        assert result.context == {"communication_style": "concise"}
        assert result.metadata.skipped_reason == "greeting"
        assert result.metadata.total_available_memories == 10
        assert memory_store.candidate_calls == []

    @pytest.mark.asyncio
    async def test_greeting_without_profile(self, classifier, breaker, make_memory_store):
        retrieval = AdaptiveMemoryRetrieval(classifier, make_memory_store(), breaker)
        result = await retrieval.retrieve_adaptive_memories("user-2", "good morning")

        assert result.memories == []
        assert result.context is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query", ["explain dependency injection", "my cat", "list me some good books"])
    async def test_skip_patterns(self, retrieval, memory_store, query):
        result = await retrieval.retrieve_adaptive_memories("user-1", query)

        assert result.memories == []
        assert result.metadata.skipped_reason == "skip_pattern"
        assert result.strategy.max_memories == 0
        assert memory_store.candidate_calls == []

    def test_should_skip_memories(self):
        assert should_skip_memories("hello") is True
        assert should_skip_memories("short query") is True
        assert should_skip_memories("what is a monad in haskell") is True
        assert should_skip_memories("calculate 12 * (4 + 3)") is True
        assert should_skip_memories("where is the python documentation") is True
        assert should_skip_memories("show me some example configs") is True
        assert should_skip_memories(PREFERENCE_QUERY) is False


# =============================================================================
# STRATEGY TESTS
# =============================================================================

class TestStrategySelection:
    """Tests for personalization level to strategy mapping."""

    def _strategy_for(self, classifier, query):
        return determine_memory_strategy(query, classifier.analyze(query))

    def test_high_personalization(self, classifier):
        strategy = self._strategy_for(classifier, PREFERENCE_QUERY)
        assert strategy.max_memories == 6
        assert strategy.confidence_threshold == 0.65

    def test_minimal_personalization(self, classifier):
        strategy = self._strategy_for(classifier, "why does this function throw an error")
        assert strategy.max_memories == 2
        assert strategy.confidence_threshold == 0.85

    def test_complex_personal(self, classifier):
        strategy = self._strategy_for(
            classifier, "I keep forgetting where my keys are every single morning before work"
        )
        assert strategy.max_memories == 5
        assert strategy.reasoning.startswith("Complex personal query")

    def test_personal(self, classifier):
        strategy = self._strategy_for(classifier, "my laptop battery drains overnight")
        assert strategy.max_memories == 4
        assert strategy.reasoning == "Personal query - focus on user preferences"

    def test_creative(self, classifier):
        strategy = self._strategy_for(classifier, "brainstorm names for a bakery")
        assert strategy.max_memories == 3
        assert strategy.diversity_weight == 0.8


# =============================================================================
# SCORING TESTS
# =============================================================================

class TestScoring:
    """Tests for relevance components and selection."""

    def test_type_relevance(self):
        assert type_relevance("preference", "I prefer tea") == 1.0
        assert type_relevance("preference", "tea or coffee") == 0.5
        assert type_relevance("skill", "I am an expert") == 1.0
        assert type_relevance("fact", "what is it") == 1.0
        assert type_relevance("context", "anything") == 0.8
        assert type_relevance("hobby", "anything") == 0.6

    def test_keyword_overlap(self):
        memory = Memory(type="context", key="laptop", value="battery life of my laptop", confidence=0.9)
        assert keyword_overlap("my laptop battery drains overnight", memory) == pytest.approx(0.6)

    def test_relevance_score_weights(self):
        memory = Memory(type="context", key="k", value="v", confidence=1.0, similarity=1.0)
        strategy = _strategy(3, 0.5, 0.5, 1.0)
        assert relevance_score(memory, "q", strategy) == pytest.approx(0.4 + 0.3 + 0.16 + 0.1)

    def test_relevance_score_clamped(self):
        memory = Memory(type="hobby", key="k", value="v", confidence=0.0, similarity=-1.0)
        assert relevance_score(memory, "q", _strategy(3, 0.0, 0.5, 0.0)) == 0.0

    def test_embedding_similarity_used_without_store_similarity(self):
        memory = Memory(type="context", key="k", value="v", confidence=1.0, embedding=[1.0, 0.0])
        strategy = _strategy(3, 0.5, 0.5, 0.0)
        assert relevance_score(memory, "q", strategy, [1.0, 0.0]) == pytest.approx(0.4 + 0.3 + 0.16)
        assert relevance_score(memory, "q", strategy, [0.0, 1.0]) == pytest.approx(0.4 + 0.16)

    def test_select_respects_threshold_and_quota(self, sample_memories):
        candidates = [Memory.model_validate(m) for m in sample_memories]
        selected = select_memories(candidates, PREFERENCE_QUERY, _strategy(3, 0.9, 0.5, 0.8))

        assert len(selected) == 3
        assert all(m.confidence >= 0.9 for m in selected)
        scores = [m.relevance_score for m in selected]
        assert scores == sorted(scores, reverse=True)

    def test_diversity_spreads_across_types(self, sample_memories):
        candidates = [Memory.model_validate(m) for m in sample_memories]
        selected = select_memories(candidates, PREFERENCE_QUERY, _strategy(4, 0.5, 0.8, 0.5))

        assert len(selected) == 4
        assert {m.type for m in selected} == {"preference", "skill", "fact", "context"}

    def test_no_diversity_takes_top_scores(self, sample_memories):
        candidates = [Memory.model_validate(m) for m in sample_memories]
        selected = select_memories(candidates, PREFERENCE_QUERY, _strategy(3, 0.5, 0.7, 0.5))

        assert [m.type for m in selected] == ["preference"] * 3

    def test_diversity_filter_fills_with_unused_keys(self, sample_memories):
        candidates = select_memories(
            [Memory.model_validate(m) for m in sample_memories], PREFERENCE_QUERY, _strategy(10, 0.0, 0.5, 0.5)
        )
        selected = apply_diversity_filter(candidates, 6)

        assert len(selected) == 6
        assert len({m.key for m in selected}) == 6
        assert {m.type for m in selected[:4]} == {"preference", "skill", "fact", "context"}


# =============================================================================
# RETRIEVAL TESTS
# =============================================================================

class TestRetrieval:
    """Tests for the full retrieval flow."""

    @pytest.mark.asyncio
    async def test_high_personalization_retrieval(self, retrieval, memory_store):
        result = await retrieval.retrieve_adaptive_memories("user-1", PREFERENCE_QUERY)

        assert memory_store.candidate_calls == [{"user_id": "user-1", "query": PREFERENCE_QUERY, "limit": 12}]
        assert [m.key for m in result.memories] == ["editor", "laptop", "theme", "python", "project", "job"]
        assert result.context["communication_style"] == "concise"
        assert result.metadata.context_enriched is True
        assert result.metadata.total_available_memories == 10
        assert result.performance.memory_count == 6
        assert all(0.0 <= m.relevance_score <= 1.0 for m in result.memories)

    @pytest.mark.asyncio
    async def test_minimal_personalization_retrieval(self, retrieval, memory_store):
        result = await retrieval.retrieve_adaptive_memories("user-1", "why does this function throw an error")

        assert memory_store.candidate_calls[0]["limit"] == 4
        assert len(result.memories) == 2
        assert all(m.confidence >= 0.85 for m in result.memories)

    @pytest.mark.asyncio
    async def test_candidate_failure_raises(self, retrieval, memory_store, metrics):
        memory_store.fail_candidates = True

        with pytest.raises(MemoryRetrievalError) as exc_info:
            await retrieval.retrieve_adaptive_memories("user-1", PREFERENCE_QUERY)

        assert exc_info.value.code == ErrorCode.MEMORY_RETRIEVE_FAILED
        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert metrics.get_counter("adaptive_memory_retrieval.error") == 1

    @pytest.mark.asyncio
    async def test_profile_failure_is_tolerated(self, retrieval, memory_store):
        memory_store.fail_profile = True

        result = await retrieval.retrieve_adaptive_memories("user-1", PREFERENCE_QUERY)

        assert len(result.memories) == 6
        assert result.context is None
        assert result.metadata.context_enriched is False
        assert result.metadata.total_available_memories == 0

    @pytest.mark.asyncio
    async def test_lookups_are_cached(self, classifier, memory_store, breaker, settings, clock, no_pressure):
        cache = LayeredCache.from_settings(settings, clock=clock, memory_probe=no_pressure)
        retrieval = AdaptiveMemoryRetrieval(classifier, memory_store, breaker, cache=cache)

        first = await retrieval.retrieve_adaptive_memories("user-1", PREFERENCE_QUERY)
        second = await retrieval.retrieve_adaptive_memories("user-1", PREFERENCE_QUERY)

        assert len(memory_store.candidate_calls) == 1
        assert len(memory_store.profile_calls) == 1
        assert [m.key for m in second.memories] == [m.key for m in first.memories]
        assert second.context == first.context

    @pytest.mark.asyncio
    async def test_cached_lookups_expire(self, classifier, memory_store, breaker, settings, clock, no_pressure):
        cache = LayeredCache.from_settings(settings, clock=clock, memory_probe=no_pressure)
        retrieval = AdaptiveMemoryRetrieval(classifier, memory_store, breaker, cache=cache, candidate_cache_ttl=30)

        await retrieval.retrieve_adaptive_memories("user-1", PREFERENCE_QUERY)
        clock.advance(31)
        await retrieval.retrieve_adaptive_memories("user-1", PREFERENCE_QUERY)

        assert len(memory_store.candidate_calls) == 2

    @pytest.mark.asyncio
    async def test_embeddings_used_for_unscored_candidates(
        self, classifier, breaker, monotonic_clock, make_memory_store
    ):
        store = make_memory_store(candidates=[
            {"type": "preference", "key": "far", "value": "a", "confidence": 0.9, "embedding": [0.0, 1.0]},
            {"type": "preference", "key": "near", "value": "b", "confidence": 0.9, "embedding": [1.0, 0.0]},
        ])
        embed_fn = AsyncMock(return_value=[1.0, 0.0])
        embeddings = EmbeddingService(embed_fn, CircuitBreaker("embedding", clock=monotonic_clock))
        retrieval = AdaptiveMemoryRetrieval(classifier, store, breaker, embeddings=embeddings)

        result = await retrieval.retrieve_adaptive_memories("user-1", PREFERENCE_QUERY)

        embed_fn.assert_awaited_once_with(PREFERENCE_QUERY)
        assert [m.key for m in result.memories] == ["near", "far"]
        assert result.memories[0].relevance_score == pytest.approx(0.94)
        assert result.memories[0].embedding is None

    @pytest.mark.asyncio
    async def test_has_relevant_memories(self, retrieval, classifier, breaker, memory_store, make_memory_store):
        assert await retrieval.has_relevant_memories("user-1", "keyboards") is True

        empty = AdaptiveMemoryRetrieval(classifier, make_memory_store(), breaker)
        assert await empty.has_relevant_memories("user-1", "keyboards") is False

        memory_store.fail_candidates = True
        assert await retrieval.has_relevant_memories("user-1", "keyboards") is False

    @pytest.mark.asyncio
    async def test_memory_stats(self, retrieval):
        await retrieval.retrieve_adaptive_memories("user-1", PREFERENCE_QUERY)
        stats = retrieval.get_memory_stats()

        assert stats["adaptive_retrievals"] == 1
        assert stats["success_rate"] == 1.0
        assert stats["breaker"]["name"] == "memory_store"


# =============================================================================
# CONCURRENCY TESTS
# =============================================================================

class TestConcurrentLookups:
    """Candidate and profile lookups run side by side."""

    @pytest.fixture
    def tracking_store(self, memory_store):
        memory_store.in_flight = 0
        memory_store.peak_in_flight = 0
        memory_store.profile_cancelled = False
        memory_store.profile_delay = 0.01

        candidates = memory_store.fetch_memory_candidates
        profile = memory_store.fetch_user_profile

        async def tracked(call, delay):
            memory_store.in_flight += 1
            memory_store.peak_in_flight = max(memory_store.peak_in_flight, memory_store.in_flight)
            try:
                await asyncio.sleep(delay)
                return await call()
            finally:
                memory_store.in_flight -= 1

        async def fetch_memory_candidates(user_id, query, limit):
            return await tracked(lambda: candidates(user_id, query, limit), 0.01)

        async def fetch_user_profile(user_id):
            try:
                return await tracked(lambda: profile(user_id), memory_store.profile_delay)
            except asyncio.CancelledError:
                memory_store.profile_cancelled = True
                raise

        memory_store.fetch_memory_candidates = fetch_memory_candidates
        memory_store.fetch_user_profile = fetch_user_profile
        return memory_store

    @pytest.mark.asyncio
    async def test_candidates_and_profile_fetched_concurrently(self, classifier, breaker, tracking_store):
        retrieval = AdaptiveMemoryRetrieval(classifier, tracking_store, breaker)

        result = await retrieval.retrieve_adaptive_memories("user-1", PREFERENCE_QUERY)

        assert tracking_store.peak_in_flight == 2
        assert len(result.memories) == 6
        assert result.context["communication_style"] == "concise"

    @pytest.mark.asyncio
    async def test_candidate_failure_cancels_profile_lookup(self, classifier, breaker, tracking_store):
        tracking_store.fail_candidates = True
        tracking_store.profile_delay = 5.0
        retrieval = AdaptiveMemoryRetrieval(classifier, tracking_store, breaker)

        with pytest.raises(MemoryRetrievalError):
            await retrieval.retrieve_adaptive_memories("user-1", PREFERENCE_QUERY)

        assert tracking_store.profile_cancelled is True
        assert tracking_store.in_flight == 0

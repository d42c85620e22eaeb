"""
Adaptive Memory Retrieval

Decides how much of a user's stored memory should shape a response and picks
which memories to inject:

1. Fast exits: greetings (profile communication style only), queries that need
   no personalization, and skip families (short queries, definitions, math,
   generic how-tos, documentation, simple factual forms, list/example
   requests, comparisons) return no memories.
2. Strategy: personalization level picks the base strategy; moderate
   personalization is refined by lexical cues (first match wins).
3. Candidates (2x the quota) and the user profile are fetched concurrently
   through the memory-store circuit breaker.
4. Candidates below the confidence threshold are dropped; the rest are scored
   0.4*confidence + 0.3*similarity + 0.2*type relevance + 0.1*recency weight.
5. Selection takes the top scores, or spreads across memory types when the
   strategy's diversity weight is above 0.7.

Usage:
    retrieval = AdaptiveMemoryRetrieval(classifier, store, breaker)
    result = await retrieval.retrieve_adaptive_memories("user-1", "what laptop would suit my workflow")
    for memory in result.memories:
        print(memory.key, memory.relevance_score)
"""

import asyncio
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, Union

from core.exceptions import MemoryRetrievalError

from .circuit_breaker import CircuitBreaker
from .embeddings import EmbeddingService, cosine_similarity
from .layered_cache import LayeredCache
from .metrics import PerformanceMetrics, PhaseTimer
from .models import (
    AdaptiveMemoryResult,
    Memory,
    MemoryRetrievalStrategy,
    RetrievalMetadata,
    RetrievalPerformance,
    ScoredMemory,
    UserProfile,
)
from .query_classifier import (
    GREETING_PATTERNS,
    PersonalizationLevel,
    QueryAnalysis,
    QueryClassifier,
    QueryComplexity,
    QueryType,
)
from .search_cache import hash_query

logger = logging.getLogger("adaptive_search.adaptive_memory")


class MemoryStore(Protocol):
    """Host persistence layer for user memories and profiles"""

    async def fetch_memory_candidates(
        self, user_id: str, query: str, limit: int
    ) -> Sequence[Union[Memory, Dict[str, Any]]]:
        ...

    async def fetch_user_profile(self, user_id: str) -> Optional[Union[UserProfile, Dict[str, Any]]]:
        ...


SKIP_PATTERNS = (
    re.compile(r"^(what is|define|explain)\s+[\w\s]+$", re.IGNORECASE),                # Definitions
    re.compile(r"^(calculate|compute|solve|what'?s)\s+[\d\s+\-*/()%]+$", re.IGNORECASE),  # Math
    re.compile(r"^(how to|tutorial for|guide to)\s+[\w\s]+$", re.IGNORECASE),          # Generic how-tos
    re.compile(r"\b(documentation|docs|syntax|api reference)\b", re.IGNORECASE),
    re.compile(r"^(tell me about|describe)\s+(the\s+)?(concept|theory|principle)", re.IGNORECASE),
    re.compile(r"^(who|when|where|why)\s+(is|are|was|were)\s+", re.IGNORECASE),
    re.compile(r"^(list|show|give)\s+me\s+", re.IGNORECASE),
    re.compile(r"\b(example|examples?)\b", re.IGNORECASE),
    re.compile(r"^(compare|difference)\s+", re.IGNORECASE),
)

MIN_PERSONALIZED_QUERY_LENGTH = 15

PERSONAL_CUE = re.compile(r"\b(I|my|me|myself|personal|preference)\b", re.IGNORECASE)
TECHNICAL_CUE = re.compile(r"\b(code|programming|API|technical|development)\b", re.IGNORECASE)
CREATIVE_CUE = re.compile(r"\b(write|create|design|brainstorm|idea)\b", re.IGNORECASE)
FACTUAL_CUE = re.compile(r"\b(what|when|where|how much|statistics)\b", re.IGNORECASE)

# Type relevance: (pattern, score when the query matches, score otherwise)
TYPE_RELEVANCE: Dict[str, Tuple[Optional[re.Pattern], float, float]] = {
    "preference": (re.compile(r"\b(prefer|like|want|choose|option)\b", re.IGNORECASE), 1.0, 0.5),
    "skill": (re.compile(r"\b(know|can|able|experience|skill|expert)\b", re.IGNORECASE), 1.0, 0.6),
    "fact": (re.compile(r"\b(what|when|where|who|fact|information)\b", re.IGNORECASE), 1.0, 0.7),
    "context": (None, 0.8, 0.8),
}
DEFAULT_TYPE_RELEVANCE = 0.6

DIVERSITY_THRESHOLD = 0.7


def _strategy(max_memories: int, threshold: float, diversity: float, recency: float, reasoning: str):
    return MemoryRetrievalStrategy(
        max_memories=max_memories,
        confidence_threshold=threshold,
        diversity_weight=diversity,
        recency_weight=recency,
        reasoning=reasoning,
    )


NO_MEMORY_STRATEGY = _strategy(0, 1.0, 0.0, 0.0, "No personalization required")
GREETING_STRATEGY = _strategy(0, 1.0, 0.0, 0.0, "Greeting - no memories needed")

BASE_STRATEGIES: Dict[PersonalizationLevel, MemoryRetrievalStrategy] = {
    PersonalizationLevel.NONE: NO_MEMORY_STRATEGY,
    PersonalizationLevel.MINIMAL: _strategy(
        2, 0.85, 0.3, 0.7, "Minimal personalization - focus on most relevant memories only"
    ),
    PersonalizationLevel.HIGH: _strategy(
        6, 0.65, 0.7, 0.8, "High personalization - comprehensive user context"
    ),
}

MemoryCue = Callable[[str, QueryAnalysis, int], bool]

# Refinements for moderate personalization, first match wins
MODERATE_STRATEGIES: Tuple[Tuple[str, MemoryCue, MemoryRetrievalStrategy], ...] = (
    (
        "complex_personal",
        lambda q, a, words: a.factors.query_complexity == QueryComplexity.COMPLEX and bool(PERSONAL_CUE.search(q)),
        _strategy(5, 0.7, 0.6, 0.6, "Complex personal query - balanced memory retrieval"),
    ),
    (
        "personal",
        lambda q, a, words: bool(PERSONAL_CUE.search(q)),
        _strategy(4, 0.75, 0.5, 0.8, "Personal query - focus on user preferences"),
    ),
    (
        "technical",
        lambda q, a, words: bool(TECHNICAL_CUE.search(q)),
        _strategy(3, 0.8, 0.6, 0.5, "Technical query - limited technical context"),
    ),
    (
        "creative",
        lambda q, a, words: bool(CREATIVE_CUE.search(q)),
        _strategy(3, 0.7, 0.8, 0.4, "Creative query - some preference context"),
    ),
    (
        "factual",
        lambda q, a, words: bool(FACTUAL_CUE.search(q)) or a.factors.has_factual_data_keywords,
        _strategy(1, 0.9, 0.2, 0.8, "Factual query - minimal personalization"),
    ),
    (
        "simple",
        lambda q, a, words: a.factors.query_complexity == QueryComplexity.SIMPLE or words <= 5,
        _strategy(2, 0.8, 0.4, 0.7, "Simple query - minimal context"),
    ),
)

DEFAULT_MODERATE_STRATEGY = _strategy(
    3, 0.75, 0.5, 0.6, "Moderate query - balanced but limited memory retrieval"
)


def is_greeting(query: str) -> bool:
    stripped = query.strip()
    return any(p.search(stripped) for p in GREETING_PATTERNS)


def should_skip_memories(query: str, query_type: Optional[QueryType] = None) -> bool:
    """Whether a query is answered without any stored user memory."""
    if query_type == QueryType.GREETING or is_greeting(query):
        return True
    if len(query.strip()) < MIN_PERSONALIZED_QUERY_LENGTH:
        return True
    return any(p.search(query) for p in SKIP_PATTERNS)


def determine_memory_strategy(query: str, analysis: QueryAnalysis) -> MemoryRetrievalStrategy:
    """Pick the retrieval strategy for a query and its classification."""
    level = analysis.personalization_level
    if level in BASE_STRATEGIES:
        return BASE_STRATEGIES[level]

    word_count = len(re.split(r"\s+", query))
    for _name, cue, strategy in MODERATE_STRATEGIES:
        if cue(query, analysis, word_count):
            return strategy
    return DEFAULT_MODERATE_STRATEGY


def type_relevance(memory_type: str, query: str) -> float:
    pattern, matched, unmatched = TYPE_RELEVANCE.get(
        memory_type, (None, DEFAULT_TYPE_RELEVANCE, DEFAULT_TYPE_RELEVANCE)
    )
    if pattern is None:
        return matched
    return matched if pattern.search(query) else unmatched


def keyword_overlap(query: str, memory: Memory) -> float:
    """Share of query words found in the memory's key and value."""
    query_words = re.split(r"\s+", query.lower())
    memory_text = f"{memory.key} {memory.value}".lower()
    matched = [word for word in query_words if word in memory_text]
    return len(matched) / len(query_words)


def relevance_score(
    memory: Memory,
    query: str,
    strategy: MemoryRetrievalStrategy,
    query_embedding: Optional[Sequence[float]] = None,
) -> float:
    """Weighted relevance of one memory, clamped to [0, 1]."""
    if memory.similarity is not None:
        similarity = memory.similarity
    elif memory.embedding and query_embedding:
        similarity = cosine_similarity(query_embedding, memory.embedding)
    else:
        similarity = keyword_overlap(query, memory)

    score = (
        memory.confidence * 0.4
        + similarity * 0.3
        + type_relevance(memory.type, query) * 0.2
        + strategy.recency_weight * 0.1
    )
    return max(0.0, min(1.0, score))


def apply_diversity_filter(memories: Sequence[ScoredMemory], max_count: int) -> List[ScoredMemory]:
    """
    Two-pass selection over score-sorted memories: the best memory of each
    type first, then the best remaining memories with unused keys.
    """
    selected: List[ScoredMemory] = []
    types_seen = set()
    keys_seen = set()

    for memory in memories:
        if len(selected) >= max_count:
            break
        if memory.type not in types_seen:
            selected.append(memory)
            types_seen.add(memory.type)
            keys_seen.add(memory.key)

    for memory in memories:
        if len(selected) >= max_count:
            break
        if memory.key not in keys_seen:
            selected.append(memory)
            keys_seen.add(memory.key)

    return selected


def select_memories(
    candidates: Sequence[Memory],
    query: str,
    strategy: MemoryRetrievalStrategy,
    query_embedding: Optional[Sequence[float]] = None,
) -> List[ScoredMemory]:
    """Filter by confidence, score, sort and select up to the strategy's quota."""
    eligible = [m for m in candidates if m.confidence >= strategy.confidence_threshold]
    scored = [
        ScoredMemory(
            **m.model_dump(exclude={"embedding"}),
            relevance_score=relevance_score(m, query, strategy, query_embedding),
        )
        for m in eligible
    ]
    scored.sort(key=lambda m: m.relevance_score, reverse=True)

    if strategy.diversity_weight > DIVERSITY_THRESHOLD:
        return apply_diversity_filter(scored, strategy.max_memories)
    return scored[:strategy.max_memories]


class AdaptiveMemoryRetrieval:
    """
    Strategy-driven memory selection for one user query.

    Args:
        classifier: Query classifier used for personalization gating
        store: Host memory store
        breaker: Breaker guarding memory store calls
        cache: Layered cache for short-lived candidate/profile lookups
        embeddings: Optional embedding service for memories that carry vectors
        metrics: Metrics sink
        candidate_cache_ttl: Seconds raw lookups stay cached
    """

    def __init__(
        self,
        classifier: QueryClassifier,
        store: MemoryStore,
        breaker: CircuitBreaker,
        cache: Optional[LayeredCache] = None,
        embeddings: Optional[EmbeddingService] = None,
        metrics: Optional[PerformanceMetrics] = None,
        candidate_cache_ttl: float = 30.0,
    ):
        self.classifier = classifier
        self.store = store
        self.breaker = breaker
        self.cache = cache
        self.embeddings = embeddings
        self.metrics = metrics or PerformanceMetrics()
        self.candidate_cache_ttl = candidate_cache_ttl

    async def retrieve_adaptive_memories(
        self,
        user_id: str,
        query: str,
        user_context: Optional[Any] = None,
    ) -> AdaptiveMemoryResult:
        """
        Select the memories relevant to ``query`` for ``user_id``.

        Raises:
            MemoryRetrievalError: The memory store could not supply candidates
        """
        finish = self.metrics.start_timer("adaptive_memory_retrieval")
        with PhaseTimer() as total:
            try:
                result = await self._retrieve(user_id, query, user_context)
            except Exception as e:
                finish(False, error=str(e))
                logger.error(f"Adaptive memory retrieval failed for user {user_id}: {e}")
                raise

        result.performance.retrieval_ms = total.elapsed_ms
        finish(
            True,
            memory_count=len(result.memories),
            skipped=result.metadata.skipped_reason,
        )
        logger.info(
            f"Adaptive memory retrieval for user {user_id}: {len(result.memories)} memories "
            f"({result.strategy.reasoning})"
        )
        return result

    async def _retrieve(
        self,
        user_id: str,
        query: str,
        user_context: Optional[Any],
    ) -> AdaptiveMemoryResult:
        analysis = self.classifier.analyze(query, user_context)

        if analysis.query_type == QueryType.GREETING or is_greeting(query):
            return await self._greeting_result(user_id)

        if should_skip_memories(query, analysis.query_type):
            logger.debug(f"Skipping memory retrieval for {analysis.query_type.value} query")
            return AdaptiveMemoryResult(
                strategy=_strategy(
                    0, 1.0, 0.0, 0.0, f"{analysis.query_type.value} query - no personalization needed"
                ),
                metadata=RetrievalMetadata(skipped_reason="skip_pattern"),
            )

        if analysis.personalization_level == PersonalizationLevel.NONE:
            return AdaptiveMemoryResult(
                strategy=NO_MEMORY_STRATEGY,
                metadata=RetrievalMetadata(skipped_reason="no_personalization"),
            )

        strategy = determine_memory_strategy(query, analysis)
        logger.debug(f"Memory strategy: {strategy.reasoning} (max={strategy.max_memories})")

        with PhaseTimer() as profile_timer:
            candidates, profile = await self._fetch_candidates_and_profile(
                user_id, query, strategy.max_memories * 2
            )

        query_embedding = None
        if self.embeddings is not None and any(
            m.similarity is None and m.embedding for m in candidates
        ):
            query_embedding = await self.embeddings.embed(query)

        memories = select_memories(candidates, query, strategy, query_embedding)
        context = profile.primary_context if profile else None

        return AdaptiveMemoryResult(
            memories=memories,
            context=context,
            strategy=strategy,
            performance=RetrievalPerformance(
                memory_count=len(memories),
                profile_ms=profile_timer.elapsed_ms,
            ),
            metadata=RetrievalMetadata(
                total_available_memories=profile.total_memories if profile else 0,
                context_enriched=context is not None,
            ),
        )

    async def _greeting_result(self, user_id: str) -> AdaptiveMemoryResult:
        profile = await self._fetch_profile(user_id)
        primary = profile.primary_context if profile else None
        context = {"communication_style": primary.get("communication_style")} if primary else None
        return AdaptiveMemoryResult(
            context=context,
            strategy=GREETING_STRATEGY,
            metadata=RetrievalMetadata(
                total_available_memories=profile.total_memories if profile else 0,
                skipped_reason="greeting",
            ),
        )

    async def _fetch_candidates_and_profile(
        self,
        user_id: str,
        query: str,
        limit: int,
    ) -> Tuple[List[Memory], Optional[UserProfile]]:
        """Issue both store lookups concurrently; a candidate failure cancels the profile lookup."""
        profile_task = asyncio.ensure_future(self._fetch_profile(user_id))
        try:
            candidates = await self._fetch_candidates(user_id, query, limit)
        except BaseException:
            profile_task.cancel()
            await asyncio.wait([profile_task])
            raise
        return candidates, await profile_task

    async def _fetch_candidates(self, user_id: str, query: str, limit: int) -> List[Memory]:
        cache_key = f"memories:{user_id}:{hash_query(query)}:{limit}"
        if self.cache is not None:
            cached = await self.cache.get(cache_key, tier="memory")
            if cached is not None:
                return [Memory.model_validate(item) for item in cached]

        try:
            raw = await self.breaker.execute(
                lambda: self.store.fetch_memory_candidates(user_id, query, limit)
            )
        except Exception as e:
            raise MemoryRetrievalError(
                f"Could not fetch memory candidates: {e}",
                user_id=user_id,
                breaker_state=self.breaker.state.value,
            ) from e

        candidates = [Memory.model_validate(item) for item in raw or []]
        logger.debug(f"Retrieved {len(candidates)} candidate memories for user {user_id}")

        if self.cache is not None:
            await self.cache.set(
                cache_key,
                [m.model_dump(mode="json") for m in candidates],
                ttl=self.candidate_cache_ttl,
                tier="memory",
            )
        return candidates

    async def _fetch_profile(self, user_id: str) -> Optional[UserProfile]:
        """User profile, or None when unavailable."""
        cache_key = f"profile:{user_id}"
        if self.cache is not None:
            cached = await self.cache.get(cache_key, tier="memory")
            if cached is not None:
                return UserProfile.model_validate(cached)

        try:
            raw = await self.breaker.execute(lambda: self.store.fetch_user_profile(user_id))
        except Exception as e:
            logger.warning(f"Profile fetch failed for user {user_id}, continuing without context: {e}")
            return None
        if raw is None:
            return None

        profile = UserProfile.model_validate(raw)
        if self.cache is not None:
            await self.cache.set(
                cache_key, profile.model_dump(mode="json"), ttl=self.candidate_cache_ttl, tier="memory"
            )
        return profile

    async def has_relevant_memories(self, user_id: str, query: str) -> bool:
        """Quick check: does the store hold at least one confident memory for this query."""
        try:
            raw = await self.breaker.execute(
                lambda: self.store.fetch_memory_candidates(user_id, query, 1)
            )
        except Exception as e:
            logger.debug(f"Relevant-memory check failed for user {user_id}: {e}")
            return False
        candidates = [Memory.model_validate(item) for item in raw or []]
        return bool(candidates) and candidates[0].confidence > 0.5

    def get_memory_stats(self) -> Dict[str, Any]:
        return {
            "adaptive_retrievals": self.metrics.get_counter("adaptive_memory_retrieval.total"),
            "avg_retrieval_ms": self.metrics.get_average_time("adaptive_memory_retrieval"),
            "success_rate": self.metrics.get_success_rate("adaptive_memory_retrieval"),
            "breaker": self.breaker.get_status(),
        }

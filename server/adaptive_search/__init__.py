"""
Adaptive Search Module for memOS

Decides whether, and how hard, to search the web for a query and how much
stored user memory to inject into the response:

- QueryClassifier: Ordered rule table mapping a query to search intensity,
  query type and personalization level
- SearchCache: Similarity-aware TTL cache of search results (L2)
- RecentQueryWindow: Short near-duplicate window in front of the cache (L1)
- CircuitBreaker: Per-dependency failure isolation (search, memory store,
  embeddings, LLM, Redis)
- SearchOrchestrator: Recent check -> classify -> cache -> execute -> write-through,
  plus progressive search with quality-driven escalation
- AdaptiveMemoryRetrieval: Strategy-driven memory selection with a diversity filter
- LayeredCache: Memory-pressure aware L1 tiers with optional Redis L2

All components are plain instances wired by create_adaptive_search_core().
"""

from .circuit_breaker import (
    CircuitState,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerError,
    CircuitOpenError,
    CircuitBreakerRegistry,
    protected_by,
    LLM_BREAKER,
    EMBEDDING_BREAKER,
    SEARCH_BREAKER,
    MEMORY_STORE_BREAKER,
    REDIS_BREAKER,
)
from .query_classifier import (
    SearchIntensity,
    QueryType,
    PersonalizationLevel,
    QueryComplexity,
    QueryFactors,
    QueryAnalysis,
    ClassificationRule,
    QueryClassifier,
)
from .search_cache import (
    CachedSearchResult,
    SearchCache,
    normalize_query,
    hash_query,
    extract_tags,
)
from .recent_queries import RecentQueryWindow
from .events import (
    ProgressEventType,
    CacheHitEvent,
    SearchDecisionEvent,
    NoSearchDecisionEvent,
    SearchProgressEvent,
    SearchEscalationEvent,
    SearchDegradedEvent,
    event_to_dict,
)
from .metrics import PerformanceMetrics
from .models import (
    Memory,
    ScoredMemory,
    UserProfile,
    MemoryRetrievalStrategy,
    AdaptiveMemoryResult,
    SearchOptions,
    SearchResult,
)
from .layered_cache import MemoryAwareCache, LayeredCache
from .embeddings import EmbeddingService, cosine_similarity
from .adaptive_memory import AdaptiveMemoryRetrieval, MemoryStore, determine_memory_strategy
from .search_orchestrator import (
    ExecutionMode,
    SearchExecutor,
    SearchOrchestrator,
    assess_result_quality,
)
from .transports import SearXNGSearchExecutor
from .service import AdaptiveSearchCore, create_adaptive_search_core

__all__ = [
    # Circuit breakers
    "CircuitState",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitOpenError",
    "CircuitBreakerRegistry",
    "protected_by",
    "LLM_BREAKER",
    "EMBEDDING_BREAKER",
    "SEARCH_BREAKER",
    "MEMORY_STORE_BREAKER",
    "REDIS_BREAKER",
    # Classification
    "SearchIntensity",
    "QueryType",
    "PersonalizationLevel",
    "QueryComplexity",
    "QueryFactors",
    "QueryAnalysis",
    "ClassificationRule",
    "QueryClassifier",
    # Caching
    "CachedSearchResult",
    "SearchCache",
    "normalize_query",
    "hash_query",
    "extract_tags",
    "RecentQueryWindow",
    "MemoryAwareCache",
    "LayeredCache",
    # Events
    "ProgressEventType",
    "CacheHitEvent",
    "SearchDecisionEvent",
    "NoSearchDecisionEvent",
    "SearchProgressEvent",
    "SearchEscalationEvent",
    "SearchDegradedEvent",
    "event_to_dict",
    # Models
    "Memory",
    "ScoredMemory",
    "UserProfile",
    "MemoryRetrievalStrategy",
    "AdaptiveMemoryResult",
    "SearchOptions",
    "SearchResult",
    # Services
    "PerformanceMetrics",
    "EmbeddingService",
    "cosine_similarity",
    "AdaptiveMemoryRetrieval",
    "MemoryStore",
    "determine_memory_strategy",
    "ExecutionMode",
    "SearchExecutor",
    "SearchOrchestrator",
    "assess_result_quality",
    "SearXNGSearchExecutor",
    "AdaptiveSearchCore",
    "create_adaptive_search_core",
]

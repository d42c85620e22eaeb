"""
Pydantic models for the adaptive search core

Request options, search results and memory retrieval results exchanged
with the host application.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


# Memory store records

class Memory(BaseModel):
    """A stored fact about a user, as returned by the memory store"""
    type: str = Field(..., description="Memory category: preference, skill, fact, context, ...")
    key: str = Field(..., description="Stable identifier of the fact")
    value: str = Field(..., description="The remembered content")
    confidence: float = Field(..., ge=0.0, le=1.0)
    similarity: Optional[float] = Field(None, ge=-1.0, le=1.0, description="Store-computed similarity to the query")
    embedding: Optional[List[float]] = Field(None, description="Vector used when no similarity is supplied")
    created_at: Optional[datetime] = None


class ScoredMemory(Memory):
    """A memory selected for a request, with its relevance score"""
    relevance_score: float = Field(..., ge=0.0, le=1.0)


class UserProfile(BaseModel):
    """User profile data supplied by the host persistence layer"""
    user_id: str
    contexts: List[Dict[str, Any]] = Field(default_factory=list)
    total_memories: int = Field(0, ge=0)

    @property
    def primary_context(self) -> Optional[Dict[str, Any]]:
        return self.contexts[0] if self.contexts else None


# Memory retrieval

class MemoryRetrievalStrategy(BaseModel):
    """How many memories to retrieve and how to weigh them for one query"""
    model_config = ConfigDict(frozen=True)

    max_memories: int = Field(..., ge=0)
    confidence_threshold: float = Field(..., ge=0.0, le=1.0)
    diversity_weight: float = Field(..., ge=0.0, le=1.0)
    recency_weight: float = Field(..., ge=0.0, le=1.0)
    reasoning: str


class RetrievalPerformance(BaseModel):
    retrieval_ms: float = 0.0
    memory_count: int = 0
    profile_ms: float = 0.0


class RetrievalMetadata(BaseModel):
    total_available_memories: int = 0
    context_enriched: bool = False
    skipped_reason: Optional[str] = None


class AdaptiveMemoryResult(BaseModel):
    """Memories selected for a query plus the strategy used to select them"""
    memories: List[ScoredMemory] = Field(default_factory=list)
    context: Optional[Dict[str, Any]] = None
    strategy: MemoryRetrievalStrategy
    performance: RetrievalPerformance = Field(default_factory=RetrievalPerformance)
    metadata: RetrievalMetadata = Field(default_factory=RetrievalMetadata)


# Search

class SearchOptions(BaseModel):
    """Per-call search options"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    force_search: bool = Field(False, description="Skip the recent window and cache, always execute")
    max_cache_age: Optional[float] = Field(None, gt=0, description="Reject cache hits older than this many seconds")
    user_id: Optional[str] = None
    user_context: Optional[Any] = None
    progress_callback: Optional[Callable[..., Any]] = Field(None, description="Receives progress events")
    timeout: Optional[float] = Field(None, gt=0, description="Per-call upstream timeout override in seconds")


class SearchStrategyReport(BaseModel):
    """What the orchestrator decided and what it actually executed"""
    analysis: Any = Field(..., description="QueryAnalysis for the query")
    executed: bool
    cache_hit: bool
    actual_sources: Optional[int] = None
    actual_scraping: Optional[int] = None
    execution_mode: Optional[str] = None
    degraded: bool = False
    quality_score: Optional[float] = None


class SearchPerformance(BaseModel):
    total_ms: float = 0.0
    analysis_ms: float = 0.0
    cache_check_ms: float = 0.0
    search_ms: Optional[float] = None


class SearchMetadata(BaseModel):
    query_hash: str
    recent_hit: bool = False
    cache_stats: Optional[Dict[str, Any]] = None


class SearchResult(BaseModel):
    """Result of one orchestrated search"""
    content: str
    from_cache: bool
    search_strategy: SearchStrategyReport
    performance: SearchPerformance = Field(default_factory=SearchPerformance)
    metadata: SearchMetadata

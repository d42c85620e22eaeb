"""
Progress events emitted while a search runs.

A closed set of event kinds, each its own frozen dataclass with a ``kind``
tag, delivered to the caller's optional progress callback.
"""

import inspect
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

logger = logging.getLogger("adaptive_search.events")


class ProgressEventType(str, Enum):
    """Kinds of progress events"""
    CACHE_HIT = "cache_hit"
    SEARCH_DECISION = "search_decision"
    NO_SEARCH_DECISION = "no_search_decision"
    SEARCH_PROGRESS = "search_progress"
    SEARCH_ESCALATION = "search_escalation"
    SEARCH_DEGRADED = "search_degraded"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class EventDictMixin:
    def to_dict(self) -> Dict[str, Any]:
        return event_to_dict(self)


@dataclass(frozen=True)
class CacheHitEvent(EventDictMixin):
    """A cached result is being returned instead of searching"""
    content: str
    cache_age_seconds: float
    original_query: str
    hit_count: int
    kind: ProgressEventType = field(default=ProgressEventType.CACHE_HIT, init=False)
    timestamp: str = field(default_factory=_now_iso)


@dataclass(frozen=True)
class SearchDecisionEvent(EventDictMixin):
    """A search is about to be executed"""
    content: str
    intensity: str
    expected_sources: int
    expected_scraping: int
    confidence: float
    kind: ProgressEventType = field(default=ProgressEventType.SEARCH_DECISION, init=False)
    timestamp: str = field(default_factory=_now_iso)


@dataclass(frozen=True)
class NoSearchDecisionEvent(EventDictMixin):
    """The query will be answered from existing knowledge"""
    content: str
    confidence: float
    matched_rule: str
    kind: ProgressEventType = field(default=ProgressEventType.NO_SEARCH_DECISION, init=False)
    timestamp: str = field(default_factory=_now_iso)


@dataclass(frozen=True)
class SearchProgressEvent(EventDictMixin):
    """Transport-level progress (results fetched, pages scraped)"""
    content: str
    sources_found: int = 0
    pages_scraped: int = 0
    kind: ProgressEventType = field(default=ProgressEventType.SEARCH_PROGRESS, init=False)
    timestamp: str = field(default_factory=_now_iso)


@dataclass(frozen=True)
class SearchEscalationEvent(EventDictMixin):
    """A first-pass result scored below threshold and a deeper search follows"""
    content: str
    initial_quality: float
    threshold: float
    escalation_type: str = "comprehensive"
    kind: ProgressEventType = field(default=ProgressEventType.SEARCH_ESCALATION, init=False)
    timestamp: str = field(default_factory=_now_iso)


@dataclass(frozen=True)
class SearchDegradedEvent(EventDictMixin):
    """The preferred execution path failed and a lower-quality path was used"""
    content: str
    failed_mode: str
    fallback_mode: str
    error: str
    kind: ProgressEventType = field(default=ProgressEventType.SEARCH_DEGRADED, init=False)
    timestamp: str = field(default_factory=_now_iso)


ProgressEvent = Union[
    CacheHitEvent,
    SearchDecisionEvent,
    NoSearchDecisionEvent,
    SearchProgressEvent,
    SearchEscalationEvent,
    SearchDegradedEvent,
]

ProgressCallback = Callable[[ProgressEvent], Union[None, Awaitable[None]]]


def event_to_dict(event: ProgressEvent) -> Dict[str, Any]:
    """Flatten an event for JSON transport."""
    data = asdict(event)
    data["kind"] = event.kind.value
    return data


async def emit_progress(callback: Optional[ProgressCallback], event: ProgressEvent) -> None:
    """Deliver an event to a sync or async callback. Callback errors are logged, not raised."""
    if callback is None:
        return
    try:
        outcome = callback(event)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as e:
        logger.warning(f"Progress callback failed for {event.kind.value} event: {e}")

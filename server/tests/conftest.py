"""
Shared pytest fixtures for adaptive search tests.

This module provides the fakes injected into the components under test:
a controllable clock, a canned search executor and an in-memory memory store.
"""

import pytest
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

# Add server directory to path
SERVER_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(SERVER_DIR))


# ============================================
# Clock Fixtures
# ============================================

class FakeClock:
    """Manually advanced time source in seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    """Wall-clock replacement for caches, windows and metrics."""
    return FakeClock()


@pytest.fixture
def monotonic_clock():
    """Monotonic clock replacement for circuit breakers."""
    return FakeClock(start=1000.0)


# ============================================
# Configuration Fixtures
# ============================================

@pytest.fixture
def settings():
    """Settings isolated from any local .env file."""
    from config.settings import AdaptiveSearchSettings
    return AdaptiveSearchSettings(_env_file=None, environment="test")


# ============================================
# Search Executor Fixtures
# ============================================

def render_sources(count: int, prefix: str = "Source") -> str:
    """Numbered markdown sections like the bundled transport produces."""
    return "\n\n".join(
        f"## {i}. {prefix} {i}\nhttps://example.com/{prefix.lower()}/{i}\n"
        + "Detailed findings from this source. " * 8
        for i in range(1, count + 1)
    )


@pytest.fixture
def search_executor():
    """Search executor returning canned results for each mode."""
    executor = MagicMock()
    executor.search_minimal = AsyncMock(return_value=render_sources(2, "Minimal"))
    executor.search_parameterized = AsyncMock(return_value=render_sources(4, "Parameterized"))
    executor.search_wide = AsyncMock(return_value=render_sources(8, "Wide"))
    executor.close = AsyncMock()
    return executor


# ============================================
# Memory Store Fixtures
# ============================================

class FakeMemoryStore:
    """In-memory host persistence layer with call tracking."""

    def __init__(
        self,
        candidates: Optional[List[Dict[str, Any]]] = None,
        profile: Optional[Dict[str, Any]] = None,
    ):
        self.candidates = candidates or []
        self.profile = profile
        self.fail_candidates = False
        self.fail_profile = False
        self.candidate_calls: List[Dict[str, Any]] = []
        self.profile_calls: List[str] = []

    async def fetch_memory_candidates(self, user_id: str, query: str, limit: int):
        self.candidate_calls.append({"user_id": user_id, "query": query, "limit": limit})
        if self.fail_candidates:
            raise ConnectionError("memory store unreachable")
        return self.candidates[:limit]

    async def fetch_user_profile(self, user_id: str):
        self.profile_calls.append(user_id)
        if self.fail_profile:
            raise ConnectionError("profile store unreachable")
        return self.profile


@pytest.fixture
def sample_memories():
    """Ten memories spanning four types, highest confidence first."""
    return [
        {"type": "preference", "key": "editor", "value": "prefers vim keybindings", "confidence": 0.95, "similarity": 0.9},
        {"type": "preference", "key": "laptop", "value": "likes lightweight laptops", "confidence": 0.93, "similarity": 0.88},
        {"type": "preference", "key": "theme", "value": "prefers dark themes", "confidence": 0.9, "similarity": 0.85},
        {"type": "skill", "key": "python", "value": "expert python developer", "confidence": 0.92, "similarity": 0.7},
        {"type": "skill", "key": "rust", "value": "learning rust", "confidence": 0.8, "similarity": 0.6},
        {"type": "fact", "key": "location", "value": "lives in Lisbon", "confidence": 0.9, "similarity": 0.5},
        {"type": "fact", "key": "job", "value": "works as a data engineer", "confidence": 0.88, "similarity": 0.55},
        {"type": "context", "key": "project", "value": "building a search service", "confidence": 0.85, "similarity": 0.6},
        {"type": "context", "key": "deadline", "value": "release due next month", "confidence": 0.82, "similarity": 0.4},
        {"type": "preference", "key": "language", "value": "prefers concise answers", "confidence": 0.8, "similarity": 0.3},
    ]


@pytest.fixture
def memory_store(sample_memories):
    """Memory store seeded with sample memories and a profile."""
    return FakeMemoryStore(
        candidates=sample_memories,
        profile={
            "user_id": "user-1",
            "contexts": [{"communication_style": "concise", "timezone": "Europe/Lisbon"}],
            "total_memories": len(sample_memories),
        },
    )


@pytest.fixture
def no_pressure():
    """Memory probe reporting an idle process."""
    return lambda: 0


@pytest.fixture
def make_memory_store():
    """Factory for stores seeded with custom candidates."""
    return FakeMemoryStore

"""
Performance Metrics for the adaptive search core

Tracks:
- Named counters (cache hits/misses, recent-window hits, escalations)
- Operation timings with success/failure (bounded history)
- Averages, success rates and latency percentiles per operation

One PerformanceMetrics instance is owned by the service and injected into
the components that report to it.
"""

import logging
import math
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger("adaptive_search.metrics")


@dataclass
class TimingRecord:
    """One completed operation timing"""
    operation: str
    duration_ms: float
    success: bool
    timestamp: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "duration_ms": round(self.duration_ms, 1),
            "success": self.success,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
        }


class PerformanceMetrics:
    """
    Counters and timings for the adaptive search core.

    Thread-safe; recording never raises.
    """

    def __init__(self, max_timing_entries: int = 1000, clock: Callable[[], float] = time.time):
        """
        Initialize metrics tracker.

        Args:
            max_timing_entries: Maximum number of timings kept in history
            clock: Wall-clock source in seconds
        """
        self.max_timing_entries = max_timing_entries
        self._clock = clock
        self._counters: Dict[str, float] = defaultdict(float)
        self._timings: Deque[TimingRecord] = deque(maxlen=max_timing_entries)
        self._lock = threading.Lock()

    # Counter methods
    def increment(self, metric: str, value: float = 1) -> None:
        with self._lock:
            self._counters[metric] += value

    def get_counter(self, metric: str) -> float:
        with self._lock:
            return self._counters.get(metric, 0)

    # Timing methods
    def start_timer(self, operation: str) -> Callable[..., None]:
        """
        Start timing an operation.

        Returns:
            finish(success=True, **metadata) which records the timing
        """
        start = self._clock()

        def finish(success: bool = True, **metadata) -> None:
            self.record_timing(TimingRecord(
                operation=operation,
                duration_ms=(self._clock() - start) * 1000,
                success=success,
                timestamp=start,
                metadata=metadata,
            ))

        return finish

    def record_timing(self, timing: TimingRecord) -> None:
        with self._lock:
            self._timings.append(timing)
            self._counters[f"{timing.operation}.total"] += 1
            if timing.success:
                self._counters[f"{timing.operation}.success"] += 1
            else:
                self._counters[f"{timing.operation}.error"] += 1

    def _durations(self, operation: str, time_window: Optional[float]) -> List[TimingRecord]:
        cutoff = self._clock() - time_window if time_window else 0
        with self._lock:
            return [t for t in self._timings if t.operation == operation and t.timestamp > cutoff]

    # Analytics methods
    def get_average_time(self, operation: str, time_window: Optional[float] = None) -> float:
        """Mean duration in ms (0 without data)."""
        relevant = self._durations(operation, time_window)
        if not relevant:
            return 0.0
        return sum(t.duration_ms for t in relevant) / len(relevant)

    def get_success_rate(self, operation: str, time_window: Optional[float] = None) -> float:
        """Share of successful timings (1.0 without data)."""
        relevant = self._durations(operation, time_window)
        if not relevant:
            return 1.0
        return sum(1 for t in relevant if t.success) / len(relevant)

    def get_percentile(self, operation: str, percentile: float, time_window: Optional[float] = None) -> float:
        """Nearest-rank percentile of durations in ms."""
        durations = sorted(t.duration_ms for t in self._durations(operation, time_window))
        if not durations:
            return 0.0
        index = math.ceil((percentile / 100) * len(durations)) - 1
        return durations[max(0, index)]

    def get_health_report(self, time_window: float = 3600.0) -> Dict[str, Any]:
        """Per-operation request counts, success rate and latency percentiles."""
        with self._lock:
            operations = sorted({t.operation for t in self._timings})
            counters = dict(self._counters)

        report: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "counters": counters,
            "operations": {},
        }
        for op in operations:
            report["operations"][op] = {
                "total_requests": counters.get(f"{op}.total", 0),
                "success_requests": counters.get(f"{op}.success", 0),
                "error_requests": counters.get(f"{op}.error", 0),
                "success_rate": self.get_success_rate(op, time_window),
                "avg_response_time_ms": round(self.get_average_time(op, time_window)),
                "p50_response_time_ms": round(self.get_percentile(op, 50, time_window)),
                "p95_response_time_ms": round(self.get_percentile(op, 95, time_window)),
                "p99_response_time_ms": round(self.get_percentile(op, 99, time_window)),
            }
        return report

    def hit_rate(self, prefix: str) -> float:
        """Hit rate from ``{prefix}.hits`` / ``{prefix}.misses`` counters."""
        hits = self.get_counter(f"{prefix}.hits")
        misses = self.get_counter(f"{prefix}.misses")
        total = hits + misses
        return hits / total if total > 0 else 0.0

    def export_metrics(self) -> Dict[str, Any]:
        """Counters plus the last 100 timings for external monitoring"""
        with self._lock:
            return {
                "counters": dict(self._counters),
                "timings": [t.to_dict() for t in list(self._timings)[-100:]],
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._timings.clear()
        logger.info("Performance metrics reset")


class PhaseTimer:
    """Context manager measuring one pipeline phase in milliseconds"""

    def __init__(self, clock: Callable[[], float] = time.perf_counter):
        self._clock = clock
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

    @property
    def elapsed_ms(self) -> float:
        """Elapsed time so far, or the final duration once the block exits"""
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else self._clock()
        return (end - self.start_time) * 1000

    def __enter__(self) -> "PhaseTimer":
        self.start_time = self._clock()
        self.end_time = None
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = self._clock()
        return False

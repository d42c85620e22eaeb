"""
Failure isolation for the core's upstream dependencies.

Each dependency class (search transport, embedding generation, LLM
completions, memory store, Redis) gets exactly one breaker, shared by every
caller of that dependency, so an outage is noticed once and later callers
fail fast.

States:
- CLOSED: calls go through; failures inside the rolling window are counted
- OPEN: calls are rejected without touching the dependency
- HALF_OPEN: the reset timeout has passed and one call probes recovery

Usage:
    from adaptive_search.circuit_breaker import CircuitBreaker, CircuitBreakerConfig

    cb = CircuitBreaker("embeddings", CircuitBreakerConfig(failure_threshold=3))

    vector = await cb.execute(lambda: embed(text), fallback=lambda: None)
    vector = await cb.call(embed, text, timeout=10.0)

    @protected_by(cb)
    async def embed_protected(text: str) -> list:
        return await embed(text)
"""

import asyncio
import inspect
import logging
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from enum import Enum
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

logger = logging.getLogger("adaptive_search.circuit_breaker")

T = TypeVar("T")

Operation = Callable[[], Union[Awaitable[T], T]]


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """Root of breaker-raised errors."""


class CircuitOpenError(CircuitBreakerError):
    """The breaker rejected a call and the caller supplied no fallback."""

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"{name} unavailable (circuit open), retry in {retry_after:.1f}s")


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    monitoring_window: float = 300.0
    # None disables the per-call timeout
    call_timeout: Optional[float] = 30.0
    # Raised by callers for bad input, not by a sick dependency
    exclude_exceptions: List[type] = field(default_factory=list)


@dataclass
class CircuitMetrics:
    """Lifetime counters; the rolling failure window lives on the breaker."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    timeout_calls: int = 0
    fallback_calls: int = 0
    state_changes: int = 0
    open_count: int = 0
    recovery_count: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class CircuitBreaker:
    """
    Guards one upstream dependency.

    The state moves only in response to recorded call outcomes. ``reset`` is
    the single manual override.

    Args:
        name: Dependency class this breaker protects
        config: Thresholds and timeouts
        clock: Monotonic seconds, injectable so tests can move time
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._metrics = CircuitMetrics()
        self._recent_failures: List[float] = []
        self._opened_at: Optional[float] = None
        self._lock = asyncio.Lock()

        logger.info(
            f"Breaker '{name}' ready (trip at {self.config.failure_threshold} failures "
            f"in {self.config.monitoring_window}s, cool down {self.config.reset_timeout}s)"
        )

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def metrics(self) -> CircuitMetrics:
        return self._metrics

    @property
    def is_closed(self) -> bool:
        return self._state is CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state is CircuitState.OPEN

    @property
    def failure_count(self) -> int:
        """Failures currently inside the monitoring window."""
        return len(self._recent_failures)

    # ------------------------------------------------------------------
    # State bookkeeping (callers hold the lock)
    # ------------------------------------------------------------------

    def _move_to(self, target: CircuitState) -> None:
        previous = self._state
        if previous is target:
            return

        self._state = target
        self._metrics.state_changes += 1
        if target is CircuitState.OPEN:
            self._metrics.open_count += 1
        elif previous is CircuitState.HALF_OPEN:
            self._metrics.recovery_count += 1

        logger.warning(
            f"Breaker '{self.name}' {previous.value} -> {target.value} "
            f"({len(self._recent_failures)} recent failures)"
        )

    def _cooldown_left(self, now: float) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.config.reset_timeout - (now - self._opened_at))

    async def _admit(self) -> bool:
        async with self._lock:
            if self._state is not CircuitState.OPEN:
                return True
            if self._cooldown_left(self._clock()) > 0:
                return False
            self._move_to(CircuitState.HALF_OPEN)
            return True

    async def _on_success(self) -> None:
        async with self._lock:
            self._metrics.total_calls += 1
            self._metrics.successful_calls += 1
            self._recent_failures.clear()
            if self._state is CircuitState.HALF_OPEN:
                self._opened_at = None
                self._move_to(CircuitState.CLOSED)

    async def _on_failure(self, error: BaseException) -> None:
        async with self._lock:
            self._metrics.total_calls += 1
            self._metrics.failed_calls += 1

            if isinstance(error, tuple(self.config.exclude_exceptions)):
                logger.debug(f"Breaker '{self.name}' ignoring {type(error).__name__}")
                return

            now = self._clock()
            cutoff = now - self.config.monitoring_window
            self._recent_failures = [t for t in self._recent_failures if t > cutoff]
            self._recent_failures.append(now)

            probe_failed = self._state is CircuitState.HALF_OPEN
            if probe_failed or len(self._recent_failures) >= self.config.failure_threshold:
                self._opened_at = now
                self._move_to(CircuitState.OPEN)

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def _invoke(self, operation: Operation, timeout: Optional[float]) -> Any:
        pending = operation()
        if not inspect.isawaitable(pending):
            return pending
        if timeout:
            return await asyncio.wait_for(pending, timeout=timeout)
        return await pending

    async def _use_fallback(self, fallback: Operation) -> Any:
        self._metrics.fallback_calls += 1
        return await _resolve(fallback())

    async def execute(
        self,
        operation: Operation,
        fallback: Optional[Operation] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Run ``operation`` if the breaker admits it.

        ``operation`` and ``fallback`` take no arguments and may return either
        a value or an awaitable. A rejected or failed call returns the
        fallback's result when one is given; otherwise ``CircuitOpenError`` or
        the operation's own error is raised. ``timeout`` overrides the
        configured per-call timeout, and a timeout counts as a failure.
        """
        if not await self._admit():
            self._metrics.rejected_calls += 1
            if fallback is not None:
                logger.debug(f"Breaker '{self.name}' open, serving fallback")
                return await self._use_fallback(fallback)
            raise CircuitOpenError(self.name, self._cooldown_left(self._clock()))

        limit = self.config.call_timeout if timeout is None else timeout
        try:
            result = await self._invoke(operation, limit)
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                self._metrics.timeout_calls += 1
                logger.warning(f"Breaker '{self.name}' call exceeded {limit}s")
            else:
                logger.warning(f"Breaker '{self.name}' call failed: {type(e).__name__}: {e}")
            await self._on_failure(e)
            if fallback is None:
                raise
            return await self._use_fallback(fallback)

        await self._on_success()
        return result

    async def call(
        self,
        func: Callable[..., Any],
        *args,
        timeout: Optional[float] = None,
        fallback: Optional[Operation] = None,
        **kwargs
    ) -> Any:
        """``execute`` for a function plus its arguments."""
        return await self.execute(lambda: func(*args, **kwargs), fallback=fallback, timeout=timeout)

    def get_status(self) -> Dict[str, Any]:
        now = self._clock()
        last_failure = self._recent_failures[-1] if self._recent_failures else None
        return {
            "name": self.name,
            "state": self._state.value,
            "failures_in_window": len(self._recent_failures),
            "seconds_since_last_failure": None if last_failure is None else now - last_failure,
            "retry_after": self._cooldown_left(now) if self.is_open else 0.0,
            "metrics": self._metrics.as_dict(),
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "reset_timeout": self.config.reset_timeout,
                "monitoring_window": self.config.monitoring_window,
                "call_timeout": self.config.call_timeout,
            },
        }

    async def reset(self) -> None:
        """Force the breaker closed and forget recorded failures."""
        async with self._lock:
            self._recent_failures.clear()
            self._opened_at = None
            self._state = CircuitState.CLOSED
        logger.info(f"Breaker '{self.name}' reset by operator")


class CircuitBreakerRegistry:
    """Breakers owned by one core instance, looked up by dependency name."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def register(self, breaker: CircuitBreaker) -> CircuitBreaker:
        self._breakers[breaker.name] = breaker
        return breaker

    def get(self, name: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(name)

    def get_or_create(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = self.register(CircuitBreaker(name, config, clock=self._clock))
        return breaker

    def get_all_status(self) -> Dict[str, Any]:
        return {name: breaker.get_status() for name, breaker in self._breakers.items()}

    def get_health_summary(self) -> Dict[str, Any]:
        states = Counter(breaker.state for breaker in self._breakers.values())
        total = len(self._breakers)
        closed = states[CircuitState.CLOSED]
        return {
            "total_circuits": total,
            "closed": closed,
            "open": states[CircuitState.OPEN],
            "half_open": states[CircuitState.HALF_OPEN],
            "health_percentage": closed / total * 100 if total else 100,
            "unhealthy_circuits": [name for name, b in self._breakers.items() if not b.is_closed],
        }

    async def reset_all(self) -> None:
        for breaker in self._breakers.values():
            await breaker.reset()


def protected_by(breaker: CircuitBreaker, fallback: Optional[Callable[..., Any]] = None):
    """
    Route every call of an async function through ``breaker``.

    ``fallback`` is called with the wrapped function's arguments.

    Usage:
        @protected_by(llm_breaker)
        async def complete(prompt: str) -> str:
            return await llm.generate(prompt)
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            alternative = None
            if fallback is not None:
                alternative = lambda: fallback(*args, **kwargs)  # noqa: E731
            return await breaker.execute(lambda: func(*args, **kwargs), fallback=alternative)

        wrapper._circuit_breaker = breaker
        return wrapper

    return decorator


# Dependency classes guarded by the core
LLM_BREAKER = "llm_completion"
EMBEDDING_BREAKER = "embedding_generation"
SEARCH_BREAKER = "search_transport"
MEMORY_STORE_BREAKER = "memory_store"
REDIS_BREAKER = "redis_cache"


def breaker_config_from_settings(settings, call_timeout: Optional[float]) -> CircuitBreakerConfig:
    """Shared breaker thresholds from settings with a dependency-specific call timeout."""
    return CircuitBreakerConfig(
        failure_threshold=settings.breaker_failure_threshold,
        reset_timeout=settings.breaker_reset_timeout,
        monitoring_window=settings.breaker_monitoring_window,
        call_timeout=call_timeout,
    )


def create_llm_circuit_breaker(settings, clock: Callable[[], float] = time.monotonic) -> CircuitBreaker:
    return CircuitBreaker(LLM_BREAKER, breaker_config_from_settings(settings, settings.llm_call_timeout), clock=clock)


def create_embedding_circuit_breaker(settings, clock: Callable[[], float] = time.monotonic) -> CircuitBreaker:
    return CircuitBreaker(
        EMBEDDING_BREAKER,
        breaker_config_from_settings(settings, settings.embedding_call_timeout),
        clock=clock,
    )

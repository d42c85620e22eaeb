"""
Error taxonomy for the adaptive search core.

The core hands hosts either a usable result or one of the tagged errors
below. Each carries a stable string code, an HTTP-style status a host may
surface, and a details mapping for logs.

Usage:
    from core.exceptions import SearchError, MemoryRetrievalError

    try:
        result = await core.search(query)
    except SearchError as e:
        log.error(e.to_dict())
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """
    Stable error codes.

    Ranges:
    - 4xxx: search execution
    - 5xxx: upstream dependencies
    - 6xxx: memory retrieval
    - 9xxx: the core itself
    """

    # Search execution (4xxx)
    SEARCH_FAILED = "ERR_4001"
    SEARCH_TIMEOUT = "ERR_4002"
    NO_RESULTS = "ERR_4003"

    # Upstream dependencies (5xxx)
    SEARXNG_ERROR = "ERR_5003"
    EMBEDDING_ERROR = "ERR_5009"
    REDIS_ERROR = "ERR_5010"
    MEMORY_STORE_ERROR = "ERR_5011"

    # Memory retrieval (6xxx)
    MEMORY_RETRIEVE_FAILED = "ERR_6002"

    # Core (9xxx)
    INTERNAL_ERROR = "ERR_9001"
    SERVICE_UNAVAILABLE = "ERR_9002"


UPSTREAM_CODES = {
    "searxng": ErrorCode.SEARXNG_ERROR,
    "embedding": ErrorCode.EMBEDDING_ERROR,
    "redis": ErrorCode.REDIS_ERROR,
    "memory_store": ErrorCode.MEMORY_STORE_ERROR,
}


class AppException(Exception):
    """
    Root of the core's tagged errors.

    Args:
        code: ErrorCode for the failure
        message: Human-readable description
        status_code: HTTP-style status a host may surface
        details: Extra context for logs (query, mode, user id, ...)
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form for host error responses and structured logs."""
        payload: Dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class SearchError(AppException):
    """The selected execution mode and its fallback both failed."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.SEARCH_FAILED, **details):
        super().__init__(code, message, status_code=500, details=details)


class SearchTimeoutError(SearchError):
    """The last search attempt exceeded its per-call timeout."""

    def __init__(
        self,
        message: str = "Search timed out",
        timeout_seconds: Optional[float] = None,
        **details
    ):
        super().__init__(message, code=ErrorCode.SEARCH_TIMEOUT, timeout_seconds=timeout_seconds, **details)
        self.status_code = 504


class ExternalServiceError(AppException):
    """An upstream dependency (SearXNG, embeddings, Redis, memory store) failed."""

    def __init__(self, service: str, message: str, code: Optional[ErrorCode] = None, **details):
        code = code or UPSTREAM_CODES.get(service.lower(), ErrorCode.INTERNAL_ERROR)
        super().__init__(
            code,
            f"{service} error: {message}",
            status_code=502,
            details={"service": service, **details},
        )


class ServiceUnavailableError(AppException):
    """A component the call needs is not configured or not reachable."""

    def __init__(self, service: str, message: Optional[str] = None, **details):
        super().__init__(
            ErrorCode.SERVICE_UNAVAILABLE,
            message or f"{service} is currently unavailable",
            status_code=503,
            details={"service": service, **details},
        )


class MemoryRetrievalError(AppException):
    """The memory store could not supply candidate memories."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.MEMORY_RETRIEVE_FAILED, **details):
        super().__init__(code, message, status_code=500, details=details)

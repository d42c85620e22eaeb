"""
Adaptive Search Core Components
Shared exception taxonomy
"""

from .exceptions import (
    AppException,
    ErrorCode,
    SearchError,
    SearchTimeoutError,
    ExternalServiceError,
    ServiceUnavailableError,
    MemoryRetrievalError,
)

__all__ = [
    "AppException",
    "ErrorCode",
    "SearchError",
    "SearchTimeoutError",
    "ExternalServiceError",
    "ServiceUnavailableError",
    "MemoryRetrievalError",
]

"""
Infrastructure exceptions for sessioncache.

Purpose
-------
Define the structured exception hierarchy for infrastructure-level concerns:
backing-store failures, optimistic-concurrency conflicts, configuration
errors and data integrity violations.

Design Notes
------------
- All exceptions inherit from `SessionCacheException`.
- Each exception carries:
  - `message`: human-readable description
  - `details`: additional structured context (dict)
  - `severity`: `ErrorSeverity` value for logging/alerting
  - `is_retryable`: whether the operation can be retried
  - `error_code`: short, stable identifier for programmatic use
- Helper functions (`is_transient_error`, `get_error_severity`, `should_alert`)
  centralize common exception handling patterns. `RetryPolicy` only retries
  exceptions for which `is_transient_error` is true.
- A session conflict (foreign lock still fresh) is NOT an exception; it is a
  defined rejection outcome handled by the cache.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(Enum):
    """Error severity levels for logging and alerting."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class SessionCacheException(Exception):
    """
    Base exception for all sessioncache infrastructure errors.

    Args:
        message: Human-readable error message
        details: Additional structured data about the error
        severity: Error severity level for logging handlers
        is_retryable: Whether the operation can be retried
        error_code: Optional code for programmatic handling

    Example:
        >>> raise SessionCacheException(
        ...     "Backing store unreachable",
        ...     {"key": "Coins/Player_42"}
        ... )
    """

    DEFAULT_SEVERITY: ErrorSeverity = ErrorSeverity.ERROR
    DEFAULT_RETRYABLE: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[ErrorSeverity] = None,
        is_retryable: Optional[bool] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message: str = message
        self.details: Dict[str, Any] = details or {}
        self.severity: ErrorSeverity = severity or self.DEFAULT_SEVERITY
        self.is_retryable: bool = (
            is_retryable if is_retryable is not None else self.DEFAULT_RETRYABLE
        )
        self.error_code: str = error_code or self.__class__.__name__
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "severity": self.severity.value,
            "is_retryable": self.is_retryable,
        }

    def __str__(self) -> str:
        details_str = f" | Details: {self.details}" if self.details else ""
        return f"[{self.error_code}] {self.message}{details_str}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"details={self.details!r}, "
            f"severity={self.severity.value!r}, "
            f"is_retryable={self.is_retryable!r}"
            ")"
        )


class CacheConfigurationError(SessionCacheException):
    """
    Raised when cache options are invalid.

    Fatal at setup time: intended to fail fast during initialization
    (invalid retry budget, malformed key template, conflicting filter lists).

    Args:
        config_key: The option that has issues
        message: Description of the configuration problem
    """

    DEFAULT_SEVERITY = ErrorSeverity.CRITICAL
    DEFAULT_RETRYABLE = False

    def __init__(self, config_key: str, message: str) -> None:
        self.config_key = config_key
        super().__init__(
            f"Configuration error for {config_key}: {message}",
            details={"config_key": config_key, "message": message},
            error_code="CONFIG_ERROR",
        )


class DuplicateCacheError(SessionCacheException):
    """Raised by strict registration when a cache name is already taken."""

    DEFAULT_SEVERITY = ErrorSeverity.CRITICAL

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(
            f"Cache '{name}' is already registered",
            details={"cache_name": name},
            error_code="DUPLICATE_CACHE",
        )


class StoreError(SessionCacheException):
    """
    Raised when a backing-store operation fails.

    Transient by default: the retry policy will retry it up to the
    configured attempt count.

    Args:
        operation: The store operation that failed (GET, SET, CAS)
        key: Record key involved
        original_error: The underlying exception, if any
    """

    DEFAULT_SEVERITY = ErrorSeverity.WARNING
    DEFAULT_RETRYABLE = True

    def __init__(
        self,
        operation: str,
        key: str,
        original_error: Optional[Exception] = None,
        message: Optional[str] = None,
    ) -> None:
        self.operation = operation
        self.key = key
        self.original_error = original_error
        reason = message or (str(original_error) if original_error else "unknown failure")
        details: Dict[str, Any] = {"operation": operation, "key": key}
        if original_error is not None:
            details["error"] = str(original_error)
            details["error_type"] = type(original_error).__name__
        super().__init__(
            f"Store error during {operation} on '{key}': {reason}",
            details=details,
            error_code="STORE_ERROR",
        )


class StoreUnavailableError(StoreError):
    """Raised when the backing store cannot be reached (connection/timeout)."""

    def __init__(self, operation: str, key: str, original_error: Optional[Exception] = None) -> None:
        super().__init__(operation, key, original_error, message="store unavailable")
        self.error_code = "STORE_UNAVAILABLE"


class RecordEncodingError(StoreError):
    """
    Raised when a record cannot be serialised for, or parsed from, the store.

    Not retryable: the same record fails the same way on every attempt.
    """

    DEFAULT_SEVERITY = ErrorSeverity.ERROR
    DEFAULT_RETRYABLE = False

    def __init__(
        self,
        operation: str,
        key: str,
        original_error: Optional[Exception] = None,
        message: Optional[str] = None,
    ) -> None:
        super().__init__(operation, key, original_error, message=message)
        self.error_code = "RECORD_ENCODING"


class VersionConflictError(SessionCacheException):
    """
    Raised when a compare-and-swap write observes an unexpected version.

    The store keeps its prior value. Retried under the same policy as a
    transient failure; exhaustion surfaces as a failed save.
    """

    DEFAULT_SEVERITY = ErrorSeverity.WARNING
    DEFAULT_RETRYABLE = True

    def __init__(self, key: str, expected: int, found: int) -> None:
        self.key = key
        self.expected = expected
        self.found = found
        super().__init__(
            f"Version conflict on '{key}': expected {expected}, found {found}",
            details={"key": key, "expected_version": expected, "found_version": found},
            error_code="VERSION_CONFLICT",
        )


class WriteRejectedError(SessionCacheException):
    """Raised when a write is refused outright (entity was kicked)."""

    DEFAULT_SEVERITY = ErrorSeverity.INFO
    DEFAULT_RETRYABLE = False

    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        self.reason = reason
        super().__init__(
            f"Write to '{key}' rejected: {reason}",
            details={"key": key, "reason": reason},
            error_code="WRITE_REJECTED",
        )


class CyclicStructureError(SessionCacheException):
    """Raised when record data contains a reference cycle."""

    DEFAULT_SEVERITY = ErrorSeverity.ERROR

    def __init__(self, container_type: str) -> None:
        super().__init__(
            f"Cannot copy cyclic {container_type}",
            details={"container_type": container_type},
            error_code="CYCLIC_STRUCTURE",
        )


def is_transient_error(exc: BaseException) -> bool:
    """
    Check if an exception represents a transient error that can be retried.

    Args:
        exc: Exception to check

    Returns:
        True if error is retryable, False otherwise.
    """
    if isinstance(exc, SessionCacheException):
        return exc.is_retryable
    return False


def get_error_severity(exc: BaseException) -> ErrorSeverity:
    """Get the severity level of an exception for logging."""
    if isinstance(exc, SessionCacheException):
        return exc.severity
    return ErrorSeverity.ERROR


def should_alert(exc: BaseException) -> bool:
    """True if severity is ERROR or CRITICAL."""
    return get_error_severity(exc) in (ErrorSeverity.ERROR, ErrorSeverity.CRITICAL)


__all__ = [
    "ErrorSeverity",
    "SessionCacheException",
    "CacheConfigurationError",
    "DuplicateCacheError",
    "StoreError",
    "StoreUnavailableError",
    "RecordEncodingError",
    "VersionConflictError",
    "WriteRejectedError",
    "CyclicStructureError",
    "is_transient_error",
    "get_error_severity",
    "should_alert",
]

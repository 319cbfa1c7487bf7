"""
Cache Domain Exceptions

Typed errors for cache operations. Store failures propagate to the
calling strategy as one of these; nothing is swallowed silently.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional


class CacheException(Exception):
    """Base exception for cache-related errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class TransientStoreError(CacheException):
    """Network or timeout failure talking to a store. Retryable."""

    def __init__(
        self,
        message: str = "Cache store unavailable",
        operation: Optional[str] = None,
        key: Optional[str] = None,
        original_error: Optional[Exception] = None,
        error_code: str = "CACHE_STORE_TRANSIENT",
    ):
        details: Dict[str, Any] = {}
        if operation:
            details["operation"] = operation
        if key:
            details["key"] = key
        if original_error:
            details["original_error"] = str(original_error)
            details["original_error_type"] = type(original_error).__name__

        super().__init__(message=message, error_code=error_code, details=details)
        if original_error:
            self.__cause__ = original_error


class StoreTimeoutError(TransientStoreError):
    """Raised when a store operation exceeds its configured timeout."""

    def __init__(self, operation: str, timeout_seconds: float, key: Optional[str] = None):
        super().__init__(
            message=f"Store operation '{operation}' timed out after {timeout_seconds}s",
            operation=operation,
            key=key,
            error_code="CACHE_STORE_TIMEOUT",
        )
        self.details["timeout_seconds"] = timeout_seconds


class CircuitOpenError(TransientStoreError):
    """Raised when the store circuit breaker rejects a call."""

    def __init__(self, message: str = "Store circuit breaker is open"):
        super().__init__(message=message, error_code="CACHE_CIRCUIT_OPEN")
        self.details["service_status"] = "unavailable"


class SerializationError(CacheException):
    """Payload could not be encoded or decoded. Never retried."""

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        details: Dict[str, Any] = {}
        if key:
            details["key"] = key
        if original_error:
            details["original_error"] = str(original_error)
            details["original_error_type"] = type(original_error).__name__

        super().__init__(
            message=message, error_code="CACHE_SERIALIZATION_ERROR", details=details
        )
        if original_error:
            self.__cause__ = original_error


class WriteFailure(CacheException):
    """A write-behind op exhausted its retries or missed the shutdown deadline.

    Delivered through the write event channel, never raised to the caller
    that issued the original ``set``.
    """

    def __init__(
        self,
        key: str,
        attempts: int,
        last_error: Optional[BaseException] = None,
        reason: str = "max_retries_exceeded",
    ):
        details: Dict[str, Any] = {"key": key, "attempts": attempts, "reason": reason}
        if last_error:
            details["last_error"] = str(last_error)
            details["last_error_type"] = type(last_error).__name__

        super().__init__(
            message=f"Write for key '{key}' abandoned after {attempts} attempt(s): {reason}",
            error_code="CACHE_WRITE_FAILURE",
            details=details,
        )
        self.key = key
        self.attempts = attempts
        self.last_error = last_error
        self.reason = reason


class CacheConfigurationError(CacheException, ValueError):
    """Invalid construction arguments (negative capacity, negative TTL, ...)."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[Any] = None,
    ):
        details: Dict[str, Any] = {}
        if config_key:
            details["config_key"] = config_key
        if config_value is not None:
            details["config_value"] = str(config_value)

        super().__init__(
            message=message, error_code="CACHE_CONFIGURATION_ERROR", details=details
        )


@dataclass(frozen=True)
class CapacityEviction:
    """Notice emitted when ``set`` pushes an entry out of a full cache.

    Not an error: an expected side effect of writing under pressure.
    """

    key: str
    value: Any
    capacity: int

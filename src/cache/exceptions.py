"""
Cache-specific exception classes for the tagged cache engine.

The engine itself reports backend failures as ``False`` / miss results; the
exceptions defined here cover the remaining error surface: invalid keys,
configuration problems, unsupported reads on union-mode tag facades, and the
fatal failures raised by the prune reconciler. ``handle_redis_exception``
translates redis-py errors into this hierarchy so callers deal with a single
exception family.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis.exceptions as redis_exceptions
import structlog

logger = structlog.get_logger(__name__)


class CacheError(Exception):
    """
    Base exception class for all cache-related errors.

    Attributes:
        message: Human-readable error description
        error_code: Standardized error code for monitoring and alerting
        details: Additional error context for debugging and observability
        timestamp: Error occurrence timestamp for correlation with logs
        retry_after: Optional hint for retry delay (in seconds)
    """

    def __init__(
        self,
        message: str,
        error_code: str = "CACHE_ERROR",
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        self.retry_after = retry_after

        logger.error(
            "Cache error occurred",
            error_code=self.error_code,
            message=message,
            details=self.details,
            timestamp=self.timestamp.isoformat(),
            retry_after=retry_after
        )

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to a dictionary for structured reporting.

        Returns:
            Dictionary containing error information
        """
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "retry_after": self.retry_after
        }


class RedisConnectionError(CacheError):
    """
    Exception raised when the Redis backend cannot be reached.

    Attributes:
        redis_error: Original Redis exception for detailed diagnostics
        connection_info: Redis connection details (sanitized for security)
    """

    def __init__(
        self,
        message: str,
        redis_error: Optional[Exception] = None,
        connection_info: Optional[Dict[str, Any]] = None,
        retry_after: Optional[int] = 30
    ):
        # Never carry credentials into logs
        safe_connection_info = {}
        if connection_info:
            safe_connection_info = {
                "host": connection_info.get("host", "unknown"),
                "port": connection_info.get("port", "unknown"),
                "db": connection_info.get("db", "unknown"),
                "ssl": connection_info.get("ssl", False),
                "cluster": connection_info.get("cluster", False),
                "max_connections": connection_info.get("max_connections")
            }

        details = {
            "redis_error_type": type(redis_error).__name__ if redis_error else None,
            "redis_error_message": str(redis_error) if redis_error else None,
            "connection_info": safe_connection_info
        }

        super().__init__(
            message=message,
            error_code="REDIS_CONNECTION_ERROR",
            details=details,
            retry_after=retry_after
        )

        self.redis_error = redis_error
        self.connection_info = safe_connection_info


class CacheOperationTimeoutError(CacheError):
    """Exception raised when a backend command times out."""

    def __init__(
        self,
        message: str,
        operation: str,
        timeout_duration: Optional[float] = None,
        retry_after: Optional[int] = 5
    ):
        super().__init__(
            message=message,
            error_code="CACHE_OPERATION_TIMEOUT",
            details={"operation": operation, "timeout_duration": timeout_duration},
            retry_after=retry_after
        )
        self.operation = operation
        self.timeout_duration = timeout_duration


class CacheKeyError(CacheError):
    """Exception raised for empty or non-string cache keys."""

    def __init__(self, message: str, key: Any = None):
        super().__init__(
            message=message,
            error_code="CACHE_KEY_ERROR",
            details={"key": repr(key), "key_type": type(key).__name__}
        )
        self.key = key


class CacheSerializationError(CacheError):
    """Exception raised when a value cannot be encoded for storage."""

    def __init__(
        self,
        message: str,
        value_type: Optional[str] = None,
        serialization_method: str = "json",
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            error_code="CACHE_SERIALIZATION_ERROR",
            details={
                "value_type": value_type,
                "serialization_method": serialization_method,
                "original_error": str(original_error) if original_error else None
            }
        )
        self.original_error = original_error


class CacheConfigurationError(CacheError):
    """Exception raised for invalid cache or Redis configuration values."""

    def __init__(self, message: str, setting: Optional[str] = None, value: Any = None):
        super().__init__(
            message=message,
            error_code="CACHE_CONFIGURATION_ERROR",
            details={"setting": setting, "value": value}
        )
        self.setting = setting


class UnsupportedTagOperationError(CacheError):
    """
    Raised by union-mode tag facades for reads and single-key deletes.

    Union-mode tags are write and flush scopes only; a key is read or
    forgotten through the store directly.
    """

    def __init__(self, operation: str):
        super().__init__(
            message=(
                f"Cannot call {operation}() on an any-mode tagged cache. Tags are "
                "for writing and flushing only; use the store directly with the "
                "full key, or flush() to remove all tagged items."
            ),
            error_code="UNSUPPORTED_TAG_OPERATION",
            details={"operation": operation}
        )
        self.operation = operation


class PruneError(CacheError):
    """Fatal error raised when a prune sweep cannot complete."""

    def __init__(self, message: str, tag_mode: str, stats: Optional[Dict[str, int]] = None):
        super().__init__(
            message=message,
            error_code="CACHE_PRUNE_ERROR",
            details={"tag_mode": tag_mode, "stats": dict(stats or {})}
        )
        self.tag_mode = tag_mode
        self.stats = dict(stats or {})


def handle_redis_exception(redis_error: Exception, operation: str = "unknown") -> CacheError:
    """
    Convert Redis exceptions to appropriate cache exceptions.

    Args:
        redis_error: Original Redis exception
        operation: Description of the operation that failed

    Returns:
        Appropriate CacheError subclass based on Redis error type
    """
    error_message = f"Redis operation '{operation}' failed: {str(redis_error)}"

    # AuthenticationError subclasses ConnectionError, check it first
    if isinstance(redis_error, redis_exceptions.AuthenticationError):
        return RedisConnectionError(
            message=f"Redis authentication failed for operation '{operation}'",
            redis_error=redis_error
        )

    elif isinstance(redis_error, redis_exceptions.TimeoutError):
        return CacheOperationTimeoutError(
            message=error_message,
            operation=operation
        )

    elif isinstance(redis_error, redis_exceptions.ConnectionError):
        return RedisConnectionError(
            message=error_message,
            redis_error=redis_error
        )

    elif isinstance(redis_error, redis_exceptions.DataError):
        return CacheSerializationError(
            message=error_message,
            serialization_method="redis",
            original_error=redis_error
        )

    elif isinstance(redis_error, redis_exceptions.ResponseError):
        return CacheError(
            message=error_message,
            error_code="REDIS_RESPONSE_ERROR",
            details={"operation": operation, "redis_error": str(redis_error)}
        )

    return CacheError(
        message=error_message,
        error_code="REDIS_ERROR",
        details={"operation": operation, "redis_error_type": type(redis_error).__name__}
    )


__all__ = [
    "CacheError",
    "RedisConnectionError",
    "CacheOperationTimeoutError",
    "CacheKeyError",
    "CacheSerializationError",
    "CacheConfigurationError",
    "UnsupportedTagOperationError",
    "PruneError",
    "handle_redis_exception",
]

"""
Exception types and error classification for kafka_replay.

Provides:
- ErrorCategory enum for retry decisions
- Typed exception hierarchy for replay errors
- Error classification utilities
"""

import asyncio
from enum import Enum
from typing import Optional

from aiokafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    The retry tracker uses this to decide whether a failed run is rescheduled
    under the job's retry policy or marked FAILED immediately.

    Categories:
        TRANSIENT: Temporary failures that should retry after the policy delay
                   (e.g., broker unreachable, request timeouts, pool exhaustion)
        PERMANENT: Failures caused by the request itself, which won't succeed on
                   retry (e.g., invalid job specification, unknown job)
        FATAL: Run-time failures that must stop the job without retrying
               (e.g., authorization denied, topic deleted mid-run)
        UNKNOWN: Unclassified errors, may retry conservatively
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    FATAL = "fatal"
    UNKNOWN = "unknown"


class ReplayError(Exception):
    """
    Base exception for all replay errors.

    Attributes:
        message: Human-readable error description
        category: Error classification for retry decisions
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Optional[Exception] = None,
        context: Optional[dict] = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether this error should trigger a retry."""
        return self.category in (
            ErrorCategory.TRANSIENT,
            ErrorCategory.UNKNOWN,
        )

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


# =============================================================================
# Request Errors (raised to callers, never reach a running job)
# =============================================================================


class InvalidSpecError(ReplayError):
    """Job specification failed validation at submission."""

    category = ErrorCategory.PERMANENT


class JobNotFoundError(ReplayError):
    """No job exists with the requested id."""

    category = ErrorCategory.PERMANENT

    def __init__(self, job_id: str):
        super().__init__(f"Replay job not found: {job_id}", context={"job_id": job_id})
        self.job_id = job_id


class InvalidStateError(ReplayError):
    """Operation is not allowed in the job's current status."""

    category = ErrorCategory.PERMANENT

    def __init__(self, job_id: str, status: str, operation: str):
        super().__init__(
            f"Cannot {operation} job {job_id} in status {status}",
            context={"job_id": job_id, "status": status, "operation": operation},
        )
        self.job_id = job_id
        self.status = status
        self.operation = operation


class ReplayConflictError(ReplayError):
    """Another running job already replays the same partitions to the same destination."""

    category = ErrorCategory.PERMANENT


# =============================================================================
# Run Errors (drive the retry state machine)
# =============================================================================


class TransientIOError(ReplayError):
    """Temporary source/target I/O failure (network, broker timeout)."""

    category = ErrorCategory.TRANSIENT


class ResourceExhaustionError(TransientIOError):
    """Could not obtain a producer, consumer or connection."""

    pass


class FatalReplayError(ReplayError):
    """Unrecoverable run failure. The job is failed without retry."""

    category = ErrorCategory.FATAL


# =============================================================================
# Error Classification Utilities
# =============================================================================


def classify_exception(exc: BaseException) -> ErrorCategory:
    """
    Classify an exception into error category.

    Args:
        exc: Exception to classify

    Returns:
        Appropriate ErrorCategory
    """
    # Already classified
    if isinstance(exc, ReplayError):
        return exc.category

    if isinstance(exc, (KafkaConnectionError, KafkaTimeoutError)):
        return ErrorCategory.TRANSIENT

    if isinstance(exc, KafkaError):
        exc_type = type(exc).__name__.lower()
        if "authorization" in exc_type or "authentication" in exc_type:
            return ErrorCategory.FATAL
        if getattr(exc, "retriable", False):
            return ErrorCategory.TRANSIENT
        return ErrorCategory.UNKNOWN

    if isinstance(exc, (asyncio.TimeoutError, OSError)):
        return ErrorCategory.TRANSIENT

    exc_str = str(exc).lower()

    connection_markers = (
        "connection refused",
        "connection reset",
        "no route to host",
        "network unreachable",
        "broken pipe",
        "timed out",
    )
    if any(m in exc_str for m in connection_markers):
        return ErrorCategory.TRANSIENT

    return ErrorCategory.UNKNOWN


def wrap_exception(
    exc: BaseException,
    default_class: type = ReplayError,
    context: Optional[dict] = None,
) -> ReplayError:
    """
    Wrap a generic exception in appropriate ReplayError subclass.

    Args:
        exc: Exception to wrap
        default_class: Class to use if can't classify
        context: Additional context to include

    Returns:
        Appropriate ReplayError subclass instance
    """
    if isinstance(exc, ReplayError):
        if context:
            exc.context.update(context)
        return exc

    category = classify_exception(exc)
    message = str(exc) or type(exc).__name__

    if category == ErrorCategory.TRANSIENT:
        return TransientIOError(message, cause=exc, context=context)

    if category in (ErrorCategory.FATAL, ErrorCategory.PERMANENT):
        return FatalReplayError(message, cause=exc, context=context)

    return default_class(message, cause=exc, context=context)


__all__ = [
    "ErrorCategory",
    "ReplayError",
    "InvalidSpecError",
    "JobNotFoundError",
    "InvalidStateError",
    "ReplayConflictError",
    "TransientIOError",
    "ResourceExhaustionError",
    "FatalReplayError",
    "classify_exception",
    "wrap_exception",
]

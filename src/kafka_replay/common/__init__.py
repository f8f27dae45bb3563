"""Shared error types and logging helpers."""

from kafka_replay.common.exceptions import (
    ErrorCategory,
    FatalReplayError,
    InvalidSpecError,
    InvalidStateError,
    JobNotFoundError,
    ReplayConflictError,
    ReplayError,
    ResourceExhaustionError,
    TransientIOError,
    classify_exception,
    wrap_exception,
)

__all__ = [
    "ErrorCategory",
    "FatalReplayError",
    "InvalidSpecError",
    "InvalidStateError",
    "JobNotFoundError",
    "ReplayConflictError",
    "ReplayError",
    "ResourceExhaustionError",
    "TransientIOError",
    "classify_exception",
    "wrap_exception",
]

"""
Replay job schemas: specification, runtime state, progress and history.

A job is submitted as a ReplayJobSpec. The engine stores it as a
MessageReplayJob, which adds lifecycle state, progress and audit fields.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from pydantic import BaseModel, Field, field_validator, model_validator

from kafka_replay.schemas.filters import MessageFilter
from kafka_replay.schemas.transformations import MessageTransformation


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ReplayJobStatus(str, Enum):
    """Lifecycle status of a replay job."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_finished(self) -> bool:
        """Whether the job is no longer queued or running."""
        return self in (
            ReplayJobStatus.COMPLETED,
            ReplayJobStatus.FAILED,
            ReplayJobStatus.CANCELLED,
        )


# =============================================================================
# Schedules
# =============================================================================


class ImmediateSchedule(BaseModel):
    """Run as soon as a worker is free."""

    kind: Literal["immediate"] = "immediate"


class OneShotSchedule(BaseModel):
    """Run once at a future instant."""

    kind: Literal["once"] = "once"
    run_at: datetime

    @field_validator("run_at")
    @classmethod
    def normalize_run_at(cls, v: datetime) -> datetime:
        return _as_utc(v)


class CronSchedule(BaseModel):
    """Run repeatedly on a five-field UNIX cron expression.

    The expression is evaluated against wall-clock time in ``timezone``
    (an IANA zone name such as ``Europe/Berlin``).
    """

    kind: Literal["cron"] = "cron"
    expression: str
    timezone: str = "UTC"

    @field_validator("expression")
    @classmethod
    def validate_expression(cls, v: str) -> str:
        v = " ".join(v.split())
        if len(v.split(" ")) != 5 or not croniter.is_valid(v):
            raise ValueError(f"Invalid cron expression: {v!r}")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v!r}") from e
        return v


Schedule = Annotated[
    Union[ImmediateSchedule, OneShotSchedule, CronSchedule],
    Field(discriminator="kind"),
]


class RetryPolicy(BaseModel):
    """Automatic retry policy for failed runs.

    Attributes:
        max_retries: Automatic retries after the first failure (0 = none)
        retry_delay_seconds: Delay before a retry becomes due
    """

    max_retries: int = Field(default=0, ge=0)
    retry_delay_seconds: int = Field(default=60, ge=0)


# =============================================================================
# Job specification
# =============================================================================


class ReplayJobSpec(BaseModel):
    """User-supplied description of a replay job.

    Exactly one destination is required: ``target_topic`` republishes
    matching records, ``consumer_group_id`` resets that group's committed
    offsets to the start position.

    Exactly one start bound is required (``start_offset`` or
    ``start_timestamp``). At most one end bound is allowed. Without an end
    bound the job drains each partition up to its current end.

    Example:
        >>> ReplayJobSpec(
        ...     cluster_id="prod-eu",
        ...     source_topic="orders",
        ...     target_topic="orders.replay",
        ...     start_offset=0,
        ...     end_offset=100,
        ... )
    """

    cluster_id: str = Field(..., min_length=1)
    source_topic: str = Field(..., min_length=1)
    target_topic: Optional[str] = None
    consumer_group_id: Optional[str] = None

    start_offset: Optional[int] = Field(default=None, ge=0)
    start_timestamp: Optional[datetime] = None
    end_offset: Optional[int] = Field(default=None, ge=0)
    end_timestamp: Optional[datetime] = None
    partitions: List[int] = Field(default_factory=list)

    filter: Optional[MessageFilter] = None
    transformation: Optional[MessageTransformation] = None

    schedule: Schedule = Field(default_factory=ImmediateSchedule)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)

    created_by: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("cluster_id", "source_topic")
    @classmethod
    def validate_non_empty_strings(cls, v: str, info) -> str:
        """Ensure required identifiers are not whitespace-only."""
        if not v.strip():
            raise ValueError(f"{info.field_name} cannot be empty or whitespace")
        return v.strip()

    @field_validator("target_topic", "consumer_group_id")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v.strip() if v is not None else None

    @field_validator("start_timestamp", "end_timestamp")
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Interpret naive datetimes as UTC."""
        return _as_utc(v)

    @field_validator("partitions")
    @classmethod
    def validate_partitions(cls, v: List[int]) -> List[int]:
        if any(p < 0 for p in v):
            raise ValueError("partition ids must be non-negative")
        if len(set(v)) != len(v):
            raise ValueError("partition ids must be unique")
        return sorted(v)

    @model_validator(mode="after")
    def validate_bounds_and_destination(self) -> "ReplayJobSpec":
        """Cross-field checks on destination and range bounds."""
        if (self.target_topic is None) == (self.consumer_group_id is None):
            raise ValueError(
                "exactly one of target_topic or consumer_group_id must be specified"
            )

        if (self.start_offset is None) == (self.start_timestamp is None):
            raise ValueError(
                "exactly one of start_offset or start_timestamp must be specified"
            )

        if self.end_offset is not None and self.end_timestamp is not None:
            raise ValueError("cannot specify both end_offset and end_timestamp")

        if (
            self.start_offset is not None
            and self.end_offset is not None
            and self.end_offset < self.start_offset
        ):
            raise ValueError("end_offset must not be before start_offset")

        if (
            self.start_timestamp is not None
            and self.end_timestamp is not None
            and self.end_timestamp < self.start_timestamp
        ):
            raise ValueError("end_timestamp must not be before start_timestamp")

        if self.consumer_group_id is not None:
            if self.filter is not None and not self.filter.is_empty:
                raise ValueError("filters are not supported for consumer group offset resets")
            if self.transformation is not None:
                raise ValueError(
                    "transformations are only supported when replaying to a target topic"
                )
            if self.end_offset is not None or self.end_timestamp is not None:
                raise ValueError("end bounds are not supported for consumer group offset resets")

        return self

    @property
    def is_offset_reset(self) -> bool:
        """True when the job resets a consumer group instead of producing."""
        return self.consumer_group_id is not None

    @property
    def is_recurring(self) -> bool:
        return isinstance(self.schedule, CronSchedule)

    @property
    def destination(self) -> str:
        return self.target_topic or self.consumer_group_id or ""


# =============================================================================
# Progress and job state
# =============================================================================


class PartitionProgress(BaseModel):
    """Committed position within one source partition.

    Attributes:
        start_offset: First offset of the run's range
        next_offset: Next offset to read; everything below is committed
        end_offset: Exclusive end of the range, or None to drain
        exhausted: Whether this partition needs no more reads this run
    """

    start_offset: int = Field(..., ge=0)
    next_offset: int = Field(..., ge=0)
    end_offset: Optional[int] = None
    exhausted: bool = False

    @property
    def remaining(self) -> Optional[int]:
        """Offsets left to scan, if the end is known."""
        if self.exhausted:
            return 0
        if self.end_offset is None:
            return None
        return max(0, self.end_offset - self.next_offset)


class ReplayJobProgress(BaseModel):
    """Progress snapshot, advanced only after a batch is acknowledged.

    Attributes:
        messages_processed: Records produced (0 for offset resets)
        messages_scanned: Source records walked, matching or not
        messages_total: Estimated records to scan, when all ends are known
        throughput: Records produced per second in the last batch
        estimated_time_remaining_seconds: ETA from the scan rate, if known
        batches_committed: Acknowledged batches in the current run
        partitions: Per-partition committed positions
    """

    messages_processed: int = Field(default=0, ge=0)
    messages_scanned: int = Field(default=0, ge=0)
    messages_total: Optional[int] = None
    throughput: float = 0.0
    estimated_time_remaining_seconds: Optional[float] = None
    batches_committed: int = Field(default=0, ge=0)
    partitions: Dict[int, PartitionProgress] = Field(default_factory=dict)
    updated_at: Optional[datetime] = None

    @property
    def percent_complete(self) -> Optional[float]:
        if not self.messages_total:
            return None
        return min(100.0, 100.0 * self.messages_scanned / self.messages_total)


class MessageReplayJob(ReplayJobSpec):
    """A stored replay job with lifecycle state.

    Attributes:
        id: Job identifier (uuid4)
        status: Current lifecycle status
        progress: Progress of the current (or last) run
        retry_count: Automatic retries used in the current run
        run_number: 1 for the first run, incremented per cron occurrence
        next_scheduled_run: When the job is next due (None = never)
        last_scheduled_run: Scheduled instant of the most recent dispatch
        last_run_status: Outcome of the most recent finished run
        error_message: Last error, kept after a retry is scheduled
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    status: ReplayJobStatus = ReplayJobStatus.PENDING
    progress: ReplayJobProgress = Field(default_factory=ReplayJobProgress)
    retry_count: int = Field(default=0, ge=0)
    run_number: int = Field(default=1, ge=1)

    next_scheduled_run: Optional[datetime] = None
    last_scheduled_run: Optional[datetime] = None
    last_run_status: Optional[ReplayJobStatus] = None

    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @classmethod
    def from_spec(cls, spec: ReplayJobSpec, **state: Any) -> "MessageReplayJob":
        """Create a new job from a validated spec."""
        data = spec.model_dump()
        data.update(state)
        return cls.model_validate(data)


# =============================================================================
# History
# =============================================================================


class HistoryAction(str, Enum):
    """Kinds of entries in a job's append-only history."""

    STARTED = "STARTED"
    BATCH_COMMITTED = "BATCH_COMMITTED"
    OFFSETS_COMMITTED = "OFFSETS_COMMITTED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    MANUAL_RETRY = "MANUAL_RETRY"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    TIMED_OUT = "TIMED_OUT"


class MessageReplayJobHistory(BaseModel):
    """One history entry. Only BATCH_COMMITTED entries carry a message count."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    job_id: str
    run_number: int = 1
    action: HistoryAction
    message_count: int = Field(default=0, ge=0)
    throughput: Optional[float] = None
    timestamp: datetime = Field(default_factory=utc_now)
    details: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Queries
# =============================================================================


class JobQuery(BaseModel):
    """Filter for listing jobs. Unset fields match everything."""

    cluster_id: Optional[str] = None
    source_topic: Optional[str] = None
    statuses: List[ReplayJobStatus] = Field(default_factory=list)
    created_by: Optional[str] = None
    due_before: Optional[datetime] = None

    @field_validator("due_before")
    @classmethod
    def normalize_due_before(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    def matches(self, job: MessageReplayJob) -> bool:
        if self.cluster_id is not None and job.cluster_id != self.cluster_id:
            return False
        if self.source_topic is not None and job.source_topic != self.source_topic:
            return False
        if self.statuses and job.status not in self.statuses:
            return False
        if self.created_by is not None and job.created_by != self.created_by:
            return False
        if self.due_before is not None:
            if job.next_scheduled_run is None or job.next_scheduled_run > self.due_before:
                return False
        return True


# Largest page a store query returns
MAX_PAGE_SIZE = 1000


class Pagination(BaseModel):
    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=50, ge=1, le=MAX_PAGE_SIZE)


__all__ = [
    "CronSchedule",
    "HistoryAction",
    "ImmediateSchedule",
    "JobQuery",
    "MAX_PAGE_SIZE",
    "MessageReplayJob",
    "MessageReplayJobHistory",
    "OneShotSchedule",
    "Pagination",
    "PartitionProgress",
    "ReplayJobProgress",
    "ReplayJobSpec",
    "ReplayJobStatus",
    "RetryPolicy",
    "Schedule",
    "utc_now",
]

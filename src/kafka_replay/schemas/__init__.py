"""
Pydantic schemas for replay jobs, filters and transformations.
"""

from kafka_replay.schemas.filters import (
    FilterLogic,
    HeaderFilter,
    KeyContainsFilter,
    KeyExactFilter,
    KeyPrefixFilter,
    KeyRegexFilter,
    MessageFilter,
    TimestampRangeFilter,
    ValueContainsFilter,
    ValueJsonPathFilter,
    ValueRegexFilter,
    ValueSizeFilter,
)
from kafka_replay.schemas.jobs import (
    CronSchedule,
    HistoryAction,
    ImmediateSchedule,
    JobQuery,
    MessageReplayJob,
    MessageReplayJobHistory,
    OneShotSchedule,
    Pagination,
    PartitionProgress,
    ReplayJobProgress,
    ReplayJobSpec,
    ReplayJobStatus,
    RetryPolicy,
)
from kafka_replay.schemas.records import ReplayRecord
from kafka_replay.schemas.transformations import (
    ConvertValueFormat,
    KeepKey,
    KeepValue,
    MessageTransformation,
    RemoveKey,
    ReplaceKey,
    ReplaceValue,
)

__all__ = [
    # Filters
    "FilterLogic",
    "HeaderFilter",
    "KeyContainsFilter",
    "KeyExactFilter",
    "KeyPrefixFilter",
    "KeyRegexFilter",
    "MessageFilter",
    "TimestampRangeFilter",
    "ValueContainsFilter",
    "ValueJsonPathFilter",
    "ValueRegexFilter",
    "ValueSizeFilter",
    # Jobs
    "CronSchedule",
    "HistoryAction",
    "ImmediateSchedule",
    "JobQuery",
    "MessageReplayJob",
    "MessageReplayJobHistory",
    "OneShotSchedule",
    "Pagination",
    "PartitionProgress",
    "ReplayJobProgress",
    "ReplayJobSpec",
    "ReplayJobStatus",
    "RetryPolicy",
    # Records
    "ReplayRecord",
    # Transformations
    "ConvertValueFormat",
    "KeepKey",
    "KeepValue",
    "MessageTransformation",
    "RemoveKey",
    "ReplaceKey",
    "ReplaceValue",
]

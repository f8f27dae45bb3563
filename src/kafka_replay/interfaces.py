"""
Interfaces consumed by the replay engine.

The engine depends only on these protocols. ``kafka_replay.store`` and
``kafka_replay.kafka`` provide the in-memory and aiokafka implementations;
tests substitute in-memory fakes.
"""

import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

from kafka_replay.kafka.connection import ClusterConnection
from kafka_replay.schemas.jobs import (
    JobQuery,
    MessageReplayJob,
    MessageReplayJobHistory,
    Pagination,
    ReplayJobStatus,
)
from kafka_replay.schemas.records import ReplayRecord


@runtime_checkable
class JobStore(Protocol):
    """Durable job and history persistence.

    ``compare_and_set_status`` must be atomic across every engine instance
    sharing the store. It is the only cross-instance coordination point.
    """

    async def create(self, job: MessageReplayJob) -> MessageReplayJob:
        ...

    async def get(self, job_id: str) -> Optional[MessageReplayJob]:
        ...

    async def update(self, job: MessageReplayJob) -> MessageReplayJob:
        ...

    async def delete(self, job_id: str) -> bool:
        """Delete a job and its history. Returns False if it did not exist."""
        ...

    async def list(
        self,
        query: Optional[JobQuery] = None,
        pagination: Optional[Pagination] = None,
    ) -> List[MessageReplayJob]:
        ...

    async def compare_and_set_status(
        self,
        job_id: str,
        expected: ReplayJobStatus,
        new: ReplayJobStatus,
    ) -> bool:
        """Set status to ``new`` only if it is currently ``expected``."""
        ...

    async def append_history(self, entry: MessageReplayJobHistory) -> None:
        ...

    async def list_history(
        self,
        job_id: str,
        pagination: Optional[Pagination] = None,
    ) -> List[MessageReplayJobHistory]:
        """History entries for a job, oldest first."""
        ...

    async def prune_history(self, older_than: datetime) -> int:
        """Delete history entries older than the cutoff. Returns the count."""
        ...


@runtime_checkable
class SourceReader(Protocol):
    """Reads historical records from one cluster."""

    async def partitions_for_topic(self, topic: str) -> List[int]:
        """All partition ids of a topic, sorted."""
        ...

    async def offset_range(self, topic: str, partition: int) -> Tuple[int, int]:
        """(earliest available offset, high watermark) of a partition."""
        ...

    async def resolve_offset_for_timestamp(
        self, topic: str, partition: int, timestamp: datetime
    ) -> Optional[int]:
        """First offset whose timestamp is at or after ``timestamp``, or None."""
        ...

    async def fetch(
        self, topic: str, partition: int, from_offset: int, max_records: int
    ) -> List[ReplayRecord]:
        """Up to ``max_records`` records at or after ``from_offset``, in offset order."""
        ...

    async def position(self, topic: str, partition: int) -> int:
        """
        Offset the next fetch of the partition would start from.

        Moves past transaction control records that a fetch skipped without
        returning anything.
        """
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class TargetWriter(Protocol):
    """Produces records to one cluster."""

    async def produce(
        self,
        topic: str,
        key: Optional[bytes],
        value: Optional[bytes],
        headers: Dict[str, bytes],
        timestamp_ms: Optional[int] = None,
    ) -> "asyncio.Future":
        """Enqueue a record. The returned future resolves on broker ack."""
        ...

    async def flush(self) -> None:
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class OffsetCommitter(Protocol):
    """Commits consumer group offsets on one cluster."""

    async def commit_offset(
        self, group_id: str, topic: str, partition: int, offset: int
    ) -> None:
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class ConnectionConfigProvider(Protocol):
    async def get_connection(self, cluster_id: str) -> ClusterConnection:
        ...


@runtime_checkable
class ClientFactory(Protocol):
    """Builds started Kafka clients for a cluster connection."""

    async def create_reader(self, connection: ClusterConnection) -> SourceReader:
        ...

    async def create_writer(self, connection: ClusterConnection) -> TargetWriter:
        ...

    async def create_committer(self, connection: ClusterConnection) -> OffsetCommitter:
        ...


__all__ = [
    "ClientFactory",
    "ConnectionConfigProvider",
    "JobStore",
    "OffsetCommitter",
    "SourceReader",
    "TargetWriter",
]

"""
In-memory JobStore implementation.

Used by the development runner and the tests. Jobs are copied on the way in
and out, so callers never share mutable state with the store.
"""

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from kafka_replay.schemas.jobs import (
    JobQuery,
    MessageReplayJob,
    MessageReplayJobHistory,
    Pagination,
    ReplayJobStatus,
)


class InMemoryJobStore:
    """
    Process-local job store guarded by a single asyncio lock.

    Example:
        >>> store = InMemoryJobStore()
        >>> await store.create(job)
        >>> claimed = await store.compare_and_set_status(
        ...     job.id, ReplayJobStatus.PENDING, ReplayJobStatus.RUNNING
        ... )
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, MessageReplayJob] = {}
        self._history: Dict[str, List[MessageReplayJobHistory]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def create(self, job: MessageReplayJob) -> MessageReplayJob:
        async with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job already exists: {job.id}")
            self._jobs[job.id] = job.model_copy(deep=True)
            return job.model_copy(deep=True)

    async def get(self, job_id: str) -> Optional[MessageReplayJob]:
        async with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job is not None else None

    async def update(self, job: MessageReplayJob) -> MessageReplayJob:
        async with self._lock:
            if job.id not in self._jobs:
                raise KeyError(job.id)
            self._jobs[job.id] = job.model_copy(deep=True)
            return job.model_copy(deep=True)

    async def delete(self, job_id: str) -> bool:
        async with self._lock:
            self._history.pop(job_id, None)
            return self._jobs.pop(job_id, None) is not None

    async def list(
        self,
        query: Optional[JobQuery] = None,
        pagination: Optional[Pagination] = None,
    ) -> List[MessageReplayJob]:
        query = query or JobQuery()
        pagination = pagination or Pagination()
        async with self._lock:
            matching = [job for job in self._jobs.values() if query.matches(job)]

        # Oldest due first, then oldest created
        matching.sort(
            key=lambda j: (
                j.next_scheduled_run is None,
                j.next_scheduled_run or j.created_at,
                j.created_at,
            )
        )
        page = matching[pagination.offset : pagination.offset + pagination.limit]
        return [job.model_copy(deep=True) for job in page]

    async def compare_and_set_status(
        self,
        job_id: str,
        expected: ReplayJobStatus,
        new: ReplayJobStatus,
    ) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != expected:
                return False
            job.status = new
            return True

    async def append_history(self, entry: MessageReplayJobHistory) -> None:
        async with self._lock:
            self._history[entry.job_id].append(entry.model_copy(deep=True))

    async def list_history(
        self,
        job_id: str,
        pagination: Optional[Pagination] = None,
    ) -> List[MessageReplayJobHistory]:
        pagination = pagination or Pagination(limit=1000)
        async with self._lock:
            entries = list(self._history.get(job_id, []))
        page = entries[pagination.offset : pagination.offset + pagination.limit]
        return [entry.model_copy(deep=True) for entry in page]

    async def prune_history(self, older_than: datetime) -> int:
        removed = 0
        async with self._lock:
            for job_id, entries in self._history.items():
                kept = [e for e in entries if e.timestamp >= older_than]
                removed += len(entries) - len(kept)
                self._history[job_id] = kept
        return removed


__all__ = ["InMemoryJobStore"]

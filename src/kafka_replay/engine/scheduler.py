"""
Job scheduler: cron evaluation and the claim loop.

The scheduler polls the store for PENDING jobs that are due, claims them
with an atomic PENDING -> RUNNING compare-and-set, and hands each claimed
job to the engine's dispatch callback. Several engine instances may share
one store; the compare-and-set guarantees a job is claimed exactly once.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional
from zoneinfo import ZoneInfo

from croniter import croniter

from kafka_replay.common.logging import LoggedClass
from kafka_replay.interfaces import JobStore
from kafka_replay.schemas.jobs import (
    MAX_PAGE_SIZE,
    CronSchedule,
    ImmediateSchedule,
    JobQuery,
    MessageReplayJob,
    OneShotSchedule,
    Pagination,
    ReplayJobStatus,
    utc_now,
)

# Upper bound on candidates examined when skipping DST-shifted duplicates
_MAX_CRON_CANDIDATES = 8


def next_cron_instant(expression: str, tz_name: str, after: datetime) -> datetime:
    """
    Next instant strictly after ``after`` at which the cron expression fires.

    The expression is evaluated against wall-clock time in ``tz_name``.
    Wall-clock times that do not exist (spring-forward gap) fire at the
    equivalent instant after the gap; ambiguous times (fall-back) fire once,
    at their first occurrence.

    Args:
        expression: Five-field UNIX cron expression
        tz_name: IANA timezone name
        after: Reference instant (aware; naive values are treated as UTC)

    Returns:
        Aware UTC datetime
    """
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    zone = ZoneInfo(tz_name)
    local_after = after.astimezone(zone).replace(tzinfo=None)

    itr = croniter(expression, local_after)
    for _ in range(_MAX_CRON_CANDIDATES):
        candidate: datetime = itr.get_next(datetime)
        instant = candidate.replace(tzinfo=zone, fold=0).astimezone(timezone.utc)
        if instant > after:
            return instant
    raise ValueError(f"No upcoming occurrence for cron expression {expression!r}")


def initial_run(schedule, now: datetime) -> datetime:
    """When a newly submitted job first becomes due."""
    if isinstance(schedule, ImmediateSchedule):
        return now
    if isinstance(schedule, OneShotSchedule):
        return schedule.run_at
    if isinstance(schedule, CronSchedule):
        return next_cron_instant(schedule.expression, schedule.timezone, now)
    raise TypeError(f"Unknown schedule type: {type(schedule).__name__}")


class ReplayScheduler(LoggedClass):
    """
    Polls for due jobs and claims them for this engine instance.

    Example:
        >>> scheduler = ReplayScheduler(store, engine._dispatch, engine.available_slots)
        >>> task = asyncio.create_task(scheduler.run())
        >>> scheduler.wake()  # re-poll immediately after a submission
        >>> await scheduler.stop()
    """

    def __init__(
        self,
        store: JobStore,
        dispatch: Callable[[MessageReplayJob], None],
        available_slots: Callable[[], int],
        poll_interval_seconds: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            store: Shared job store
            dispatch: Called with each claimed job (status RUNNING)
            available_slots: Free worker slots on this instance
            poll_interval_seconds: Maximum delay between polls
            clock: UTC clock (injectable for tests)
        """
        super().__init__()
        self._store = store
        self._dispatch = dispatch
        self._available_slots = available_slots
        self.poll_interval_seconds = poll_interval_seconds
        self._clock = clock

        self._wake_event = asyncio.Event()
        self._shutdown_event = asyncio.Event()
        self._polls = 0
        self._claimed = 0
        self._lost_claims = 0

    async def poll_once(self, now: Optional[datetime] = None) -> int:
        """
        Claim and dispatch due jobs, up to the number of free slots.

        Args:
            now: Reference time (default: clock)

        Returns:
            Number of jobs claimed by this instance
        """
        self._polls += 1
        slots = self._available_slots()
        if slots <= 0:
            return 0

        now = now or self._clock()
        due = await self._store.list(
            JobQuery(statuses=[ReplayJobStatus.PENDING], due_before=now),
            Pagination(limit=min(slots, MAX_PAGE_SIZE)),
        )
        if not due:
            return 0

        claimed = 0
        for candidate in due:
            won = await self._store.compare_and_set_status(
                candidate.id, ReplayJobStatus.PENDING, ReplayJobStatus.RUNNING
            )
            if not won:
                # Another instance claimed it, or it was cancelled
                self._lost_claims += 1
                continue

            candidate.status = ReplayJobStatus.RUNNING
            claimed += 1
            self._dispatch(candidate)

        self._claimed += claimed
        self._log(
            logging.DEBUG,
            "Scheduler poll",
            due_jobs=len(due),
            claimed=claimed,
        )
        return claimed

    def wake(self) -> None:
        """Trigger an immediate poll."""
        self._wake_event.set()

    async def run(self) -> None:
        """Poll until ``stop`` is called."""
        self._log(
            logging.INFO,
            "Scheduler started",
            duration_ms=int(self.poll_interval_seconds * 1000),
        )
        while not self._shutdown_event.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                self._log_exception(e, "Scheduler poll failed")

            try:
                await asyncio.wait_for(
                    self._wake_event.wait(), timeout=self.poll_interval_seconds
                )
            except asyncio.TimeoutError:
                pass
            self._wake_event.clear()
        self._log(logging.INFO, "Scheduler stopped", claimed=self._claimed)

    async def stop(self) -> None:
        self._shutdown_event.set()
        self._wake_event.set()

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "polls": self._polls,
            "claimed": self._claimed,
            "lost_claims": self._lost_claims,
        }


__all__ = ["ReplayScheduler", "initial_run", "next_cron_instant"]

"""
Replay engine facade.

Wires the scheduler, producer pool, extractor and tracker together and
exposes the job operations: submit, cancel, retry, delete and the progress
and history queries.

Features:
- Bounded worker tasks (``max_concurrent_jobs``), one task per running job
- Cooperative cancellation via per-run tokens
- Per-run timeout (``job_timeout_minutes``); timed-out runs are not retried
- Graceful shutdown: running jobs stop at a batch boundary and are requeued
- Periodic maintenance: history retention and recovery of abandoned runs
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from kafka_replay.common.exceptions import (
    InvalidSpecError,
    InvalidStateError,
    JobNotFoundError,
    ReplayConflictError,
)
from kafka_replay.common.logging import (
    LoggedClass,
    clear_log_context,
    set_log_context,
)
from kafka_replay.config import ReplayConfig
from kafka_replay.engine.cancellation import CancellationToken, CancelReason
from kafka_replay.engine.extractor import BatchExtractor
from kafka_replay.engine.producer_pool import ProducerPool
from kafka_replay.engine.scheduler import ReplayScheduler, initial_run
from kafka_replay.engine.tracker import RetryTracker
from kafka_replay.interfaces import ClientFactory, ConnectionConfigProvider, JobStore
from kafka_replay.metrics import record_job_transition, update_running_jobs
from kafka_replay.schemas.jobs import (
    MAX_PAGE_SIZE,
    HistoryAction,
    ImmediateSchedule,
    JobQuery,
    MessageReplayJob,
    MessageReplayJobHistory,
    Pagination,
    ReplayJobProgress,
    ReplayJobSpec,
    ReplayJobStatus,
    RetryPolicy,
    utc_now,
)

MAINTENANCE_INTERVAL_SECONDS = 300.0

# Extra time past the job timeout before another instance's RUNNING job is
# considered abandoned
ABANDONED_GRACE_SECONDS = 300.0

SpecInput = Union[ReplayJobSpec, Mapping[str, Any]]


def _partitions_overlap(a: List[int], b: List[int]) -> bool:
    # An empty list selects every partition
    if not a or not b:
        return True
    return bool(set(a) & set(b))


class ReplayEngine(LoggedClass):
    """
    Runs replay jobs from a shared job store.

    Example:
        >>> engine = ReplayEngine(config, InMemoryJobStore(), provider, factory)
        >>> async with engine:
        ...     job = await engine.submit_immediate({
        ...         "cluster_id": "prod-eu",
        ...         "source_topic": "orders",
        ...         "target_topic": "orders.replay",
        ...         "start_offset": 0,
        ...     })
        ...     progress = await engine.get_progress(job.id)
    """

    def __init__(
        self,
        config: ReplayConfig,
        store: JobStore,
        connections: ConnectionConfigProvider,
        clients: ClientFactory,
        clock: Callable[[], datetime] = utc_now,
        pool: Optional[ProducerPool] = None,
    ):
        """
        Args:
            config: Engine configuration
            store: Job store (may be shared by several engine instances)
            connections: Cluster connection lookup
            clients: Builds Kafka readers, writers and committers
            clock: UTC clock (injectable for tests)
            pool: Producer pool (default: built from config)
        """
        super().__init__()
        self.config = config
        self._store = store
        self._clock = clock

        self.pool = pool or ProducerPool(
            connections,
            clients,
            idle_timeout_seconds=config.producer_idle_timeout_seconds,
            cleanup_interval_seconds=config.producer_cleanup_interval_seconds,
        )
        self.tracker = RetryTracker(store, clock=clock)
        self.extractor = BatchExtractor(
            connections,
            clients,
            self.pool,
            self.tracker,
            batch_size=config.batch_size,
            max_messages_per_job=config.max_messages_per_job,
        )
        self.scheduler = ReplayScheduler(
            store,
            self._dispatch,
            self.available_slots,
            poll_interval_seconds=config.poll_interval_seconds,
            clock=clock,
        )

        self._workers: Dict[str, asyncio.Task] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._shutdown_event = asyncio.Event()
        self._scheduler_task: Optional[asyncio.Task] = None
        self._maintenance_task: Optional[asyncio.Task] = None
        self._started = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the producer pool, the scheduler and the maintenance loop."""
        if self._started:
            return
        self._shutdown_event.clear()
        await self.pool.start()
        self._scheduler_task = asyncio.create_task(
            self.scheduler.run(), name="replay-scheduler"
        )
        self._maintenance_task = asyncio.create_task(
            self._maintenance_loop(), name="replay-maintenance"
        )
        self._started = True
        self._log(
            logging.INFO,
            "Replay engine started",
            max_concurrent_jobs=self.config.max_concurrent_jobs,
            batch_size=self.config.batch_size,
        )

    async def stop(self) -> None:
        """
        Stop claiming jobs, interrupt running jobs and close the pool.

        Running jobs stop after their in-flight batch is acknowledged and
        return to PENDING, so another instance (or a restart) resumes them.
        """
        if not self._started:
            return
        self._log(logging.INFO, "Stopping replay engine", running_jobs=len(self._workers))

        self._shutdown_event.set()
        await self.scheduler.stop()
        for task in (self._scheduler_task, self._maintenance_task):
            if task is not None:
                await task
        self._scheduler_task = None
        self._maintenance_task = None

        for token in list(self._tokens.values()):
            token.cancel(CancelReason.SHUTDOWN)
        await self.wait_for_idle()

        await self.pool.stop()
        self._started = False
        self._log(logging.INFO, "Replay engine stopped")

    async def __aenter__(self) -> "ReplayEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def wait_for_idle(self) -> None:
        """Wait until every job running on this instance has finished its run."""
        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    # =========================================================================
    # Workers
    # =========================================================================

    def available_slots(self) -> int:
        if self._shutdown_event.is_set():
            return 0
        return max(0, self.config.max_concurrent_jobs - len(self._workers))

    @property
    def running_job_count(self) -> int:
        """Jobs currently running on this instance."""
        return len(self._workers)

    def _dispatch(self, job: MessageReplayJob) -> None:
        self._tokens.setdefault(job.id, CancellationToken())
        task = asyncio.create_task(self._run_job(job), name=f"replay-job-{job.id[:8]}")
        self._workers[job.id] = task
        update_running_jobs(len(self._workers))

        def _done(_: asyncio.Task, job_id: str = job.id) -> None:
            self._workers.pop(job_id, None)
            update_running_jobs(len(self._workers))
            if not self._shutdown_event.is_set():
                # A slot was freed
                self.scheduler.wake()

        task.add_done_callback(_done)

    async def _run_job(self, job: MessageReplayJob) -> None:
        """Execute one claimed run and record its outcome."""
        token = self._tokens.setdefault(job.id, CancellationToken())
        set_log_context(job_id=job.id, cluster_id=job.cluster_id)
        timeout = self.config.job_timeout_seconds
        try:
            job = await self.tracker.start_run(job)
            try:
                outcome = await asyncio.wait_for(
                    self.extractor.run(job, token), timeout=timeout
                )
            except asyncio.TimeoutError:
                await self.tracker.mark_timed_out(job, timeout)
                return
            except Exception as e:
                if token.reason == CancelReason.USER:
                    await self.tracker.mark_cancelled(job, error=e)
                else:
                    await self.tracker.handle_failure(job, e)
                return

            if outcome.cancelled:
                if token.reason == CancelReason.SHUTDOWN:
                    await self.tracker.requeue(job)
                else:
                    await self.tracker.mark_cancelled(job)
            else:
                await self.tracker.mark_completed(job, limit_reached=outcome.limit_reached)
        except Exception as e:
            # The run's outcome could not be persisted; maintenance recovers it
            self._log_exception(e, "Failed to record replay run outcome", job_id=job.id)
        finally:
            self._tokens.pop(job.id, None)
            clear_log_context()

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def _maintenance_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=MAINTENANCE_INTERVAL_SECONDS
                )
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.prune_history()
                await self.recover_abandoned_jobs()
            except Exception as e:
                self._log_exception(e, "Replay maintenance failed")

    async def recover_abandoned_jobs(self) -> int:
        """
        Fail RUNNING jobs whose worker vanished.

        A RUNNING job not owned by this instance is abandoned when it has not
        recorded progress for longer than the job timeout plus a grace period.

        Returns:
            Number of jobs marked FAILED
        """
        now = self._clock()
        limit = timedelta(seconds=self.config.job_timeout_seconds + ABANDONED_GRACE_SECONDS)
        running = await self._store.list(
            JobQuery(statuses=[ReplayJobStatus.RUNNING]), Pagination(limit=MAX_PAGE_SIZE)
        )

        recovered = 0
        for job in running:
            if job.id in self._workers:
                continue
            heartbeat = job.progress.updated_at or job.started_at or job.created_at
            if now - heartbeat <= limit:
                continue
            if not await self._store.compare_and_set_status(
                job.id, ReplayJobStatus.RUNNING, ReplayJobStatus.FAILED
            ):
                continue
            await self.tracker.mark_timed_out(job, self.config.job_timeout_seconds)
            recovered += 1

        if recovered:
            self._log(logging.WARNING, "Recovered abandoned replay jobs", recovered=recovered)
        return recovered

    async def prune_history(self, retention_days: Optional[int] = None) -> int:
        """
        Delete history entries older than the retention period.

        Args:
            retention_days: Override for ``history_retention_days``

        Returns:
            Number of entries deleted
        """
        days = self.config.history_retention_days if retention_days is None else retention_days
        removed = await self._store.prune_history(self._clock() - timedelta(days=days))
        if removed:
            self._log(logging.INFO, "Pruned replay job history", removed=removed)
        return removed

    # =========================================================================
    # Job operations
    # =========================================================================

    def _parse_spec(self, spec: SpecInput) -> ReplayJobSpec:
        if isinstance(spec, ReplayJobSpec):
            return spec
        try:
            return ReplayJobSpec.model_validate(dict(spec))
        except ValidationError as e:
            raise InvalidSpecError(
                f"Invalid replay job specification: {e.error_count()} error(s)",
                cause=e,
                context={"errors": e.errors(include_url=False)},
            ) from e

    async def _check_conflicts(self, spec: ReplayJobSpec) -> None:
        """Reject a job that would replay partitions a running job is replaying."""
        running = await self._store.list(
            JobQuery(
                cluster_id=spec.cluster_id,
                source_topic=spec.source_topic,
                statuses=[ReplayJobStatus.RUNNING],
            ),
            Pagination(limit=MAX_PAGE_SIZE),
        )
        for other in running:
            if other.destination != spec.destination:
                continue
            if _partitions_overlap(spec.partitions, other.partitions):
                raise ReplayConflictError(
                    f"Job {other.id} is already replaying {spec.source_topic} "
                    f"to {spec.destination} on overlapping partitions",
                    context={"job_id": other.id, "cluster_id": spec.cluster_id},
                )

    async def _submit(self, spec: ReplayJobSpec) -> MessageReplayJob:
        await self._check_conflicts(spec)

        now = self._clock()
        state: Dict[str, Any] = {
            "status": ReplayJobStatus.PENDING,
            "created_at": now,
            "next_scheduled_run": initial_run(spec.schedule, now),
        }
        if "retry_policy" not in spec.model_fields_set:
            state["retry_policy"] = RetryPolicy(
                retry_delay_seconds=self.config.default_retry_delay_seconds
            )

        job = await self._store.create(MessageReplayJob.from_spec(spec, **state))
        record_job_transition(ReplayJobStatus.PENDING.value)
        self._log(
            logging.INFO,
            "Replay job submitted",
            job_id=job.id,
            cluster_id=job.cluster_id,
            source_topic=job.source_topic,
            target_topic=job.target_topic,
            consumer_group_id=job.consumer_group_id,
            next_run=job.next_scheduled_run.isoformat(),
        )
        self.scheduler.wake()
        return job

    async def submit_immediate(self, spec: SpecInput) -> MessageReplayJob:
        """
        Queue a job to run as soon as a worker slot is free.

        Raises:
            InvalidSpecError: If the spec is invalid or carries a schedule
            ReplayConflictError: If a running job replays the same partitions
                to the same destination
        """
        parsed = self._parse_spec(spec)
        if not isinstance(parsed.schedule, ImmediateSchedule):
            raise InvalidSpecError(
                "submit_immediate does not accept a schedule; use submit_scheduled",
                context={"schedule": parsed.schedule.kind},
            )
        return await self._submit(parsed)

    async def submit_scheduled(self, spec: SpecInput) -> MessageReplayJob:
        """
        Queue a one-shot or recurring (cron) job.

        Raises:
            InvalidSpecError: If the spec is invalid or has no schedule
            ReplayConflictError: See ``submit_immediate``
        """
        parsed = self._parse_spec(spec)
        if isinstance(parsed.schedule, ImmediateSchedule):
            raise InvalidSpecError("submit_scheduled requires a 'once' or 'cron' schedule")
        return await self._submit(parsed)

    async def get_job(self, job_id: str) -> MessageReplayJob:
        job = await self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def get_progress(self, job_id: str) -> ReplayJobProgress:
        return (await self.get_job(job_id)).progress

    async def list_jobs(
        self,
        query: Optional[JobQuery] = None,
        pagination: Optional[Pagination] = None,
    ) -> List[MessageReplayJob]:
        return await self._store.list(query, pagination)

    async def list_history(
        self, job_id: str, pagination: Optional[Pagination] = None
    ) -> List[MessageReplayJobHistory]:
        await self.get_job(job_id)
        return await self._store.list_history(job_id, pagination)

    async def cancel(self, job_id: str) -> MessageReplayJob:
        """
        Cancel a job.

        A PENDING job becomes CANCELLED at once. A RUNNING job is signalled
        and becomes CANCELLED after its in-flight batch is acknowledged.

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidStateError: If the job is finished, or running on
                another engine instance
        """
        job = await self.get_job(job_id)

        if job.status == ReplayJobStatus.PENDING:
            if await self._store.compare_and_set_status(
                job_id, ReplayJobStatus.PENDING, ReplayJobStatus.CANCELLED
            ):
                job = await self.get_job(job_id)
                job.next_scheduled_run = None
                job.completed_at = self._clock()
                job = await self._store.update(job)
                await self._store.append_history(
                    MessageReplayJobHistory(
                        job_id=job.id,
                        run_number=job.run_number,
                        action=HistoryAction.CANCELLED,
                        timestamp=self._clock(),
                        details={"before_start": True},
                    )
                )
                record_job_transition(ReplayJobStatus.CANCELLED.value)
                self._log(logging.INFO, "Pending replay job cancelled", job_id=job_id)
                return job
            # Claimed or changed concurrently
            job = await self.get_job(job_id)

        if job.status == ReplayJobStatus.RUNNING:
            token = self._tokens.get(job_id)
            if token is None:
                # Running on another engine instance
                raise InvalidStateError(job_id, job.status.value, "cancel")
            token.cancel(CancelReason.USER)
            self._log(logging.INFO, "Cancellation requested for running job", job_id=job_id)
            return job

        raise InvalidStateError(job_id, job.status.value, "cancel")

    async def retry(self, job_id: str) -> MessageReplayJob:
        """
        Requeue a FAILED job for one more attempt.

        The job resumes from its last acknowledged batch. ``retry_count`` is
        unchanged, so a failure after exhausted retries fails the job again.

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidStateError: If the job is not FAILED
        """
        job = await self.get_job(job_id)
        if job.status != ReplayJobStatus.FAILED or not await self._store.compare_and_set_status(
            job_id, ReplayJobStatus.FAILED, ReplayJobStatus.PENDING
        ):
            job = await self.get_job(job_id)
            raise InvalidStateError(job_id, job.status.value, "retry")

        job = await self.get_job(job_id)
        job.next_scheduled_run = self._clock()
        job.completed_at = None
        job = await self._store.update(job)
        await self._store.append_history(
            MessageReplayJobHistory(
                job_id=job.id,
                run_number=job.run_number,
                action=HistoryAction.MANUAL_RETRY,
                timestamp=self._clock(),
                details={"retry_count": job.retry_count},
            )
        )
        record_job_transition(ReplayJobStatus.PENDING.value)
        self._log(logging.INFO, "Replay job requeued by manual retry", job_id=job_id)
        self.scheduler.wake()
        return job

    async def delete(self, job_id: str) -> None:
        """
        Delete a finished job and its history.

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidStateError: If the job is PENDING or RUNNING
        """
        job = await self.get_job(job_id)
        if not job.status.is_finished:
            raise InvalidStateError(job_id, job.status.value, "delete")
        await self._store.delete(job_id)
        self._log(logging.INFO, "Replay job deleted", job_id=job_id)


__all__ = ["ReplayEngine"]

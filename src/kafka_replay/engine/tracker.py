"""
Retry and progress tracking for replay jobs.

The tracker is the only component that moves a running job between
statuses. Every transition is persisted to the job store together with a
history entry.

State machine:
    PENDING -> RUNNING -> COMPLETED | FAILED | CANCELLED
    RUNNING -> PENDING  (automatic retry, recurring re-arm, shutdown requeue)
    FAILED  -> PENDING  (manual retry, handled by the engine)
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from kafka_replay.common.exceptions import wrap_exception
from kafka_replay.common.logging import (
    extract_log_context,
    get_logger,
    log_exception,
    log_with_context,
)
from kafka_replay.engine.scheduler import next_cron_instant
from kafka_replay.interfaces import JobStore
from kafka_replay.metrics import record_job_transition, record_run_error
from kafka_replay.schemas.jobs import (
    CronSchedule,
    HistoryAction,
    MessageReplayJob,
    MessageReplayJobHistory,
    ReplayJobProgress,
    ReplayJobStatus,
    utc_now,
)

logger = get_logger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 2000


def _truncate(message: str) -> str:
    if len(message) > MAX_ERROR_MESSAGE_LENGTH:
        return message[:MAX_ERROR_MESSAGE_LENGTH] + "..."
    return message


class RetryTracker:
    """
    Applies progress updates and the retry policy to replay jobs.

    All methods mutate the given job in place and persist it, so the caller's
    copy always matches the store.
    """

    def __init__(self, store: JobStore, clock: Callable[[], datetime] = utc_now):
        self._store = store
        self._clock = clock

    async def _append(
        self,
        job: MessageReplayJob,
        action: HistoryAction,
        message_count: int = 0,
        throughput: Optional[float] = None,
        **details: Any,
    ) -> None:
        await self._store.append_history(
            MessageReplayJobHistory(
                job_id=job.id,
                run_number=job.run_number,
                action=action,
                message_count=message_count,
                throughput=throughput,
                timestamp=self._clock(),
                details=details,
            )
        )

    async def start_run(self, job: MessageReplayJob) -> MessageReplayJob:
        """Record the start of an attempt on a freshly claimed job.

        The job passed in is the copy the scheduler listed before its claim,
        so the due instant it was scheduled for is still present.
        """
        job.status = ReplayJobStatus.RUNNING
        job.last_scheduled_run = job.next_scheduled_run
        job.next_scheduled_run = None
        job.started_at = self._clock()
        job.completed_at = None
        job = await self._store.update(job)
        await self._append(
            job,
            HistoryAction.STARTED,
            attempt=job.retry_count + 1,
            resumed=bool(job.progress.partitions),
        )
        record_job_transition(ReplayJobStatus.RUNNING.value)
        log_with_context(
            logger, logging.INFO, "Replay run started", **extract_log_context(job)
        )
        return job

    async def save_progress(self, job: MessageReplayJob) -> None:
        """Persist the job's progress without a history entry."""
        job.progress.updated_at = self._clock()
        await self._store.update(job)

    async def record_batch(
        self,
        job: MessageReplayJob,
        partition: int,
        produced: int,
        scanned: int,
        next_offset: int,
        exhausted: bool,
        elapsed_seconds: float,
    ) -> None:
        """
        Advance progress after a batch has been acknowledged.

        Args:
            job: Running job
            partition: Partition the batch was read from
            produced: Records produced and acknowledged
            scanned: Source records walked
            next_offset: New resume position for the partition
            exhausted: Whether the partition is finished for this run
            elapsed_seconds: Fetch-to-ack duration of the batch
        """
        progress = job.progress
        partition_progress = progress.partitions[partition]
        partition_progress.next_offset = next_offset
        partition_progress.exhausted = exhausted

        progress.messages_processed += produced
        progress.messages_scanned += scanned

        if scanned:
            progress.batches_committed += 1
            elapsed = max(elapsed_seconds, 1e-6)
            progress.throughput = round(produced / elapsed, 2)
            scan_rate = scanned / elapsed
            remaining = [p.remaining for p in progress.partitions.values()]
            if all(r is not None for r in remaining):
                progress.estimated_time_remaining_seconds = round(
                    sum(remaining) / scan_rate, 1
                )
            else:
                progress.estimated_time_remaining_seconds = None

        await self.save_progress(job)

        if scanned:
            await self._append(
                job,
                HistoryAction.BATCH_COMMITTED,
                message_count=produced,
                throughput=progress.throughput,
                partition=partition,
                next_offset=next_offset,
                scanned=scanned,
            )

    async def record_offsets_committed(
        self, job: MessageReplayJob, offsets: Dict[int, int]
    ) -> None:
        """Record a consumer group offset reset."""
        for partition, offset in offsets.items():
            partition_progress = job.progress.partitions[partition]
            partition_progress.next_offset = offset
            partition_progress.exhausted = True
        await self.save_progress(job)
        await self._append(
            job,
            HistoryAction.OFFSETS_COMMITTED,
            consumer_group_id=job.consumer_group_id,
            offsets={str(p): o for p, o in sorted(offsets.items())},
        )

    async def mark_completed(
        self, job: MessageReplayJob, limit_reached: bool = False
    ) -> MessageReplayJob:
        """Finish a successful run. Recurring jobs are re-armed instead."""
        await self._append(
            job,
            HistoryAction.COMPLETED,
            messages_processed=job.progress.messages_processed,
            messages_scanned=job.progress.messages_scanned,
            limit_reached=limit_reached,
        )
        record_job_transition(ReplayJobStatus.COMPLETED.value)

        if isinstance(job.schedule, CronSchedule):
            return await self._rearm(job, ReplayJobStatus.COMPLETED)

        job.status = ReplayJobStatus.COMPLETED
        job.last_run_status = ReplayJobStatus.COMPLETED
        job.completed_at = self._clock()
        job.error_message = None
        job.progress.estimated_time_remaining_seconds = 0.0
        job = await self._store.update(job)
        log_with_context(
            logger,
            logging.INFO,
            "Replay job completed",
            records_produced=job.progress.messages_processed,
            records_scanned=job.progress.messages_scanned,
            **extract_log_context(job),
        )
        return job

    async def mark_cancelled(
        self, job: MessageReplayJob, error: Optional[BaseException] = None
    ) -> MessageReplayJob:
        """
        Finish a run stopped by the user.

        A batch that failed after cancellation was requested does not
        schedule a retry. Its error is kept on the job and in the history.
        """
        details: Dict[str, Any] = {"messages_processed": job.progress.messages_processed}
        if error is not None:
            details["error"] = _truncate(str(error) or type(error).__name__)
            job.error_message = details["error"]
        job.status = ReplayJobStatus.CANCELLED
        job.last_run_status = ReplayJobStatus.CANCELLED
        job.next_scheduled_run = None
        job.completed_at = self._clock()
        job = await self._store.update(job)
        await self._append(job, HistoryAction.CANCELLED, **details)
        record_job_transition(ReplayJobStatus.CANCELLED.value)
        log_with_context(
            logger, logging.INFO, "Replay job cancelled", **extract_log_context(job)
        )
        return job

    async def requeue(self, job: MessageReplayJob) -> MessageReplayJob:
        """Return an interrupted run to PENDING so it resumes from its progress."""
        job.status = ReplayJobStatus.PENDING
        job.next_scheduled_run = self._clock()
        job = await self._store.update(job)
        record_job_transition(ReplayJobStatus.PENDING.value)
        log_with_context(
            logger,
            logging.INFO,
            "Replay run interrupted by shutdown, job requeued",
            **extract_log_context(job),
        )
        return job

    async def handle_failure(
        self, job: MessageReplayJob, error: BaseException
    ) -> MessageReplayJob:
        """
        Apply the retry policy to a failed run.

        Retryable errors reschedule the job while ``retry_count`` is below
        ``max_retries``. Fatal and permanent errors, and exhausted retries,
        fail the job. A recurring job that exhausts its retries on a
        retryable error is re-armed for its next occurrence instead.

        Args:
            job: Running job
            error: Exception raised by the run

        Returns:
            The updated job
        """
        wrapped = wrap_exception(error, context={"job_id": job.id})
        category = wrapped.category
        retryable = wrapped.is_retryable
        message = _truncate(str(error) or type(error).__name__)
        policy = job.retry_policy

        record_run_error(category.value)
        log_exception(
            logger,
            error,
            "Replay run failed",
            level=logging.WARNING if retryable else logging.ERROR,
            include_traceback=not retryable,
            error_category=category.value,
            max_retries=policy.max_retries,
            **extract_log_context(job),
        )

        if retryable and job.retry_count < policy.max_retries:
            job.retry_count += 1
            job.status = ReplayJobStatus.PENDING
            job.next_scheduled_run = self._clock() + timedelta(
                seconds=policy.retry_delay_seconds
            )
            job.error_message = f"Retry {job.retry_count}/{policy.max_retries}: {message}"
            job = await self._store.update(job)
            await self._append(
                job,
                HistoryAction.RETRY_SCHEDULED,
                error=message,
                error_category=category.value,
                retry_count=job.retry_count,
                next_run=job.next_scheduled_run.isoformat(),
            )
            record_job_transition(ReplayJobStatus.PENDING.value)
            return job

        await self._append(
            job,
            HistoryAction.FAILED,
            error=message,
            error_category=category.value,
            retry_count=job.retry_count,
        )
        record_job_transition(ReplayJobStatus.FAILED.value)

        job.error_message = message
        if retryable and isinstance(job.schedule, CronSchedule):
            return await self._rearm(job, ReplayJobStatus.FAILED)

        job.status = ReplayJobStatus.FAILED
        job.last_run_status = ReplayJobStatus.FAILED
        job.next_scheduled_run = None
        job.completed_at = self._clock()
        return await self._store.update(job)

    async def mark_timed_out(
        self, job: MessageReplayJob, timeout_seconds: float
    ) -> MessageReplayJob:
        """Fail a run that exceeded the job timeout. Timeouts are not retried."""
        message = f"Replay run exceeded timeout of {timeout_seconds:.0f}s"
        await self._append(
            job,
            HistoryAction.TIMED_OUT,
            error=message,
            messages_processed=job.progress.messages_processed,
        )
        record_job_transition(ReplayJobStatus.FAILED.value)
        log_with_context(
            logger,
            logging.ERROR,
            "Replay run timed out",
            error_message=message,
            **extract_log_context(job),
        )
        job.status = ReplayJobStatus.FAILED
        job.last_run_status = ReplayJobStatus.FAILED
        job.next_scheduled_run = None
        job.completed_at = self._clock()
        job.error_message = message
        return await self._store.update(job)

    async def _rearm(
        self, job: MessageReplayJob, run_status: ReplayJobStatus
    ) -> MessageReplayJob:
        """Return a recurring job to PENDING for its next cron occurrence.

        Occurrences that fell inside the finished run are skipped.
        """
        schedule = job.schedule
        now = self._clock()
        job.status = ReplayJobStatus.PENDING
        job.last_run_status = run_status
        job.next_scheduled_run = next_cron_instant(
            schedule.expression, schedule.timezone, now
        )
        job.run_number += 1
        job.retry_count = 0
        job.progress = ReplayJobProgress()
        job.completed_at = now
        if run_status == ReplayJobStatus.COMPLETED:
            job.error_message = None
        job = await self._store.update(job)
        record_job_transition(ReplayJobStatus.PENDING.value)
        log_with_context(
            logger,
            logging.INFO,
            "Recurring replay job re-armed",
            next_run=job.next_scheduled_run.isoformat(),
            **extract_log_context(job),
        )
        return job


__all__ = ["RetryTracker"]

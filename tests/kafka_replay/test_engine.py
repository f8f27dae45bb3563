"""
End-to-end tests for the replay engine facade.

Jobs are driven deterministically with ``engine.scheduler.poll_once()`` and
``engine.wait_for_idle()``; the lifecycle tests start the background loops.

Covers:
- Submit, run and complete; filtered replays keep source order
- Cancellation before and during a run
- Automatic retries, manual retry, timeouts
- Conflicts and invalid specs
- Recurring jobs, shutdown requeue
- History pruning and recovery of abandoned runs
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from aiokafka.errors import KafkaConnectionError

from fakes import BASE_TIME, CLUSTER_ID, create_running_job, make_spec
from kafka_replay.common.exceptions import (
    InvalidSpecError,
    InvalidStateError,
    JobNotFoundError,
    ReplayConflictError,
)
from kafka_replay.config import ReplayConfig
from kafka_replay.engine.service import ABANDONED_GRACE_SECONDS, ReplayEngine
from kafka_replay.schemas.jobs import HistoryAction, ReplayJobStatus

SPEC = {
    "cluster_id": CLUSTER_ID,
    "source_topic": "orders",
    "target_topic": "orders.replay",
    "start_offset": 0,
}


async def run_due_jobs(engine: ReplayEngine) -> int:
    claimed = await engine.scheduler.poll_once()
    await engine.wait_for_idle()
    return claimed


async def actions(engine: ReplayEngine, job_id: str):
    return [e.action for e in await engine.list_history(job_id)]


class TestSubmitAndRun:
    @pytest.mark.asyncio
    async def test_replays_offset_range_to_completion(self, engine, cluster):
        cluster.add_topic("orders", records_per_partition=150)

        job = await engine.submit_immediate({**SPEC, "end_offset": 100})
        assert job.status == ReplayJobStatus.PENDING

        assert await run_due_jobs(engine) == 1

        done = await engine.get_job(job.id)
        assert done.status == ReplayJobStatus.COMPLETED
        assert done.progress.messages_processed == 100
        assert len(cluster.produced_to("orders.replay")) == 100
        assert (await engine.get_progress(job.id)).percent_complete == 100.0

        history = await actions(engine, job.id)
        assert history[0] == HistoryAction.STARTED
        assert history[-1] == HistoryAction.COMPLETED
        assert history.count(HistoryAction.BATCH_COMMITTED) == 10

    @pytest.mark.asyncio
    async def test_key_filter_selects_matching_records_in_order(self, engine, cluster):
        cluster.add_topic(
            "orders",
            records_per_partition=1000,
            key=lambda p, i: b"vip" if i % 143 == 0 else f"key-{i}".encode(),
        )

        job = await engine.submit_immediate(
            {**SPEC, "filter": {"key": {"kind": "exact", "value": "vip"}}}
        )
        await run_due_jobs(engine)

        produced = cluster.produced_to("orders.replay")
        assert len(produced) == 7
        assert [r.value for r in produced] == [
            f"value-{i}".encode() for i in range(0, 1000, 143)
        ]
        done = await engine.get_job(job.id)
        assert done.progress.messages_processed == 7
        assert done.progress.messages_scanned == 1000

    @pytest.mark.asyncio
    async def test_default_retry_delay_from_config(self, engine):
        job = await engine.submit_immediate(SPEC)
        assert job.retry_policy.max_retries == 0
        assert job.retry_policy.retry_delay_seconds == engine.config.default_retry_delay_seconds

    @pytest.mark.asyncio
    async def test_respects_concurrency_limit(self, engine, cluster):
        cluster.add_topic("orders", partitions=5, records_per_partition=5)
        for partition in range(5):
            await engine.submit_immediate({**SPEC, "partitions": [partition]})

        claimed = await engine.scheduler.poll_once()
        assert claimed == engine.config.max_concurrent_jobs
        assert engine.available_slots() == 0
        assert engine.running_job_count == engine.config.max_concurrent_jobs
        await engine.wait_for_idle()
        assert engine.running_job_count == 0

        assert await run_due_jobs(engine) == 2
        jobs = await engine.list_jobs()
        assert all(j.status == ReplayJobStatus.COMPLETED for j in jobs)


class TestValidation:
    @pytest.mark.asyncio
    async def test_invalid_spec(self, engine):
        with pytest.raises(InvalidSpecError) as exc_info:
            await engine.submit_immediate({"cluster_id": CLUSTER_ID, "source_topic": "orders"})
        assert exc_info.value.context["errors"]

    @pytest.mark.asyncio
    async def test_schedule_kind_must_match_operation(self, engine):
        with pytest.raises(InvalidSpecError):
            await engine.submit_immediate(
                {**SPEC, "schedule": {"kind": "cron", "expression": "0 * * * *"}}
            )
        with pytest.raises(InvalidSpecError):
            await engine.submit_scheduled(SPEC)

    @pytest.mark.asyncio
    async def test_conflicting_running_job(self, engine, store):
        await create_running_job(store, partitions=[0, 1])

        with pytest.raises(ReplayConflictError):
            await engine.submit_immediate(SPEC)
        with pytest.raises(ReplayConflictError):
            await engine.submit_immediate({**SPEC, "partitions": [1]})

        assert await engine.submit_immediate({**SPEC, "partitions": [2]})
        assert await engine.submit_immediate({**SPEC, "target_topic": "orders.audit"})

    @pytest.mark.asyncio
    async def test_unknown_job(self, engine):
        with pytest.raises(JobNotFoundError):
            await engine.get_job("missing")
        with pytest.raises(JobNotFoundError):
            await engine.list_history("missing")
        with pytest.raises(JobNotFoundError):
            await engine.cancel("missing")


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_before_start(self, engine, cluster):
        cluster.add_topic("orders", records_per_partition=10)
        job = await engine.submit_immediate(SPEC)

        cancelled = await engine.cancel(job.id)

        assert cancelled.status == ReplayJobStatus.CANCELLED
        assert await run_due_jobs(engine) == 0
        assert cluster.produced == []
        history = await engine.list_history(job.id)
        assert [e.action for e in history] == [HistoryAction.CANCELLED]
        assert history[0].details == {"before_start": True}

    @pytest.mark.asyncio
    async def test_cancel_during_run(self, engine, cluster):
        cluster.add_topic("orders", records_per_partition=100)
        job = await engine.submit_immediate(SPEC)
        writer = await engine.pool.acquire(CLUSTER_ID)
        requests = []
        writer.on_flush = lambda: requests or requests.append(
            asyncio.ensure_future(engine.cancel(job.id))
        )

        await run_due_jobs(engine)

        assert (await requests[0]).status == ReplayJobStatus.RUNNING
        done = await engine.get_job(job.id)
        assert done.status == ReplayJobStatus.CANCELLED
        assert 10 <= done.progress.messages_processed < 100
        history = await actions(engine, job.id)
        assert HistoryAction.COMPLETED not in history
        assert history[-1] == HistoryAction.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_wins_over_failed_batch(self, engine, cluster):
        cluster.add_topic("orders", records_per_partition=100)
        job = await engine.submit_immediate(
            {**SPEC, "retry_policy": {"max_retries": 2, "retry_delay_seconds": 60}}
        )
        writer = await engine.pool.acquire(CLUSTER_ID)
        requests = []

        def on_flush():
            if writer.fail_acks_with is None:
                writer.fail_acks_with = KafkaConnectionError("broker went away")
            elif not requests:
                requests.append(asyncio.ensure_future(engine.cancel(job.id)))

        writer.on_flush = on_flush

        await run_due_jobs(engine)

        assert (await requests[0]).status == ReplayJobStatus.RUNNING
        done = await engine.get_job(job.id)
        assert done.status == ReplayJobStatus.CANCELLED
        assert done.retry_count == 0
        assert done.next_scheduled_run is None
        assert "broker went away" in done.error_message
        history = await engine.list_history(job.id)
        assert HistoryAction.RETRY_SCHEDULED not in [e.action for e in history]
        assert history[-1].action == HistoryAction.CANCELLED
        assert "broker went away" in history[-1].details["error"]
        assert await run_due_jobs(engine) == 0

    @pytest.mark.asyncio
    async def test_cancel_finished_job(self, engine, cluster):
        cluster.add_topic("orders", records_per_partition=5)
        job = await engine.submit_immediate(SPEC)
        await run_due_jobs(engine)

        with pytest.raises(InvalidStateError):
            await engine.cancel(job.id)

    @pytest.mark.asyncio
    async def test_cancel_job_running_elsewhere(self, engine, store):
        job = await create_running_job(store)
        with pytest.raises(InvalidStateError):
            await engine.cancel(job.id)


class TestRetries:
    @pytest.mark.asyncio
    async def test_retries_then_fails(self, engine, cluster, factory, clock):
        cluster.add_topic("orders", records_per_partition=10)
        factory.fail_reader_with = KafkaConnectionError("broker unreachable")
        job = await engine.submit_immediate(
            {**SPEC, "retry_policy": {"max_retries": 2, "retry_delay_seconds": 60}}
        )

        assert await run_due_jobs(engine) == 1
        first = await engine.get_job(job.id)
        assert first.status == ReplayJobStatus.PENDING
        assert first.retry_count == 1
        assert first.next_scheduled_run == BASE_TIME + timedelta(seconds=60)

        # Not due until the delay has passed
        assert await run_due_jobs(engine) == 0

        clock.advance(60)
        await run_due_jobs(engine)
        clock.advance(60)
        await run_due_jobs(engine)

        failed = await engine.get_job(job.id)
        assert failed.status == ReplayJobStatus.FAILED
        assert failed.retry_count == 2
        assert await actions(engine, job.id) == [
            HistoryAction.STARTED,
            HistoryAction.RETRY_SCHEDULED,
            HistoryAction.STARTED,
            HistoryAction.RETRY_SCHEDULED,
            HistoryAction.STARTED,
            HistoryAction.FAILED,
        ]

    @pytest.mark.asyncio
    async def test_fatal_error_fails_immediately(self, engine, cluster):
        cluster.add_topic("orders", partitions=1, records_per_partition=10)
        job = await engine.submit_immediate(
            {**SPEC, "partitions": [3], "retry_policy": {"max_retries": 3}}
        )

        await run_due_jobs(engine)

        failed = await engine.get_job(job.id)
        assert failed.status == ReplayJobStatus.FAILED
        assert failed.retry_count == 0
        assert "do not exist" in failed.error_message

    @pytest.mark.asyncio
    async def test_manual_retry_resumes(self, engine, cluster, factory):
        cluster.add_topic("orders", records_per_partition=30)
        job = await engine.submit_immediate(SPEC)
        writer = await engine.pool.acquire(CLUSTER_ID)
        writer.fail_acks_with = KafkaConnectionError("broker went away")
        await run_due_jobs(engine)
        assert (await engine.get_job(job.id)).status == ReplayJobStatus.FAILED

        writer.fail_acks_with = None
        requeued = await engine.retry(job.id)
        assert requeued.status == ReplayJobStatus.PENDING
        await run_due_jobs(engine)

        done = await engine.get_job(job.id)
        assert done.status == ReplayJobStatus.COMPLETED
        assert done.progress.messages_processed == 30
        assert HistoryAction.MANUAL_RETRY in await actions(engine, job.id)

    @pytest.mark.asyncio
    async def test_retry_requires_failed_status(self, engine):
        job = await engine.submit_immediate(SPEC)
        with pytest.raises(InvalidStateError):
            await engine.retry(job.id)

    @pytest.mark.asyncio
    async def test_run_timeout_fails_job(self, store, provider, factory, clock, cluster):
        config = ReplayConfig(batch_size=10, job_timeout_minutes=0)
        engine = ReplayEngine(config, store, provider, factory, clock=clock)
        cluster.add_topic("orders", records_per_partition=100)
        job = await engine.submit_immediate({**SPEC, "retry_policy": {"max_retries": 3}})

        await run_due_jobs(engine)

        failed = await engine.get_job(job.id)
        assert failed.status == ReplayJobStatus.FAILED
        assert (await actions(engine, job.id))[-1] == HistoryAction.TIMED_OUT


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_finished_job(self, engine, cluster):
        cluster.add_topic("orders", records_per_partition=5)
        job = await engine.submit_immediate(SPEC)
        await run_due_jobs(engine)

        await engine.delete(job.id)

        with pytest.raises(JobNotFoundError):
            await engine.get_job(job.id)

    @pytest.mark.asyncio
    async def test_delete_pending_job_rejected(self, engine):
        job = await engine.submit_immediate(SPEC)
        with pytest.raises(InvalidStateError):
            await engine.delete(job.id)


class TestRecurringJobs:
    @pytest.mark.asyncio
    async def test_cron_job_runs_and_rearms(self, engine, cluster, clock):
        cluster.add_topic("orders", records_per_partition=10)
        job = await engine.submit_scheduled(
            {**SPEC, "schedule": {"kind": "cron", "expression": "0 * * * *"}}
        )
        assert job.next_scheduled_run == datetime(2025, 1, 15, 11, 0, tzinfo=timezone.utc)
        assert await run_due_jobs(engine) == 0

        clock.advance(3600)
        assert await run_due_jobs(engine) == 1

        rearmed = await engine.get_job(job.id)
        assert rearmed.status == ReplayJobStatus.PENDING
        assert rearmed.last_run_status == ReplayJobStatus.COMPLETED
        assert rearmed.last_scheduled_run == datetime(2025, 1, 15, 11, 0, tzinfo=timezone.utc)
        assert rearmed.next_scheduled_run == datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
        assert rearmed.run_number == 2
        assert len(cluster.produced_to("orders.replay")) == 10

    @pytest.mark.asyncio
    async def test_one_shot_job(self, engine, cluster, clock):
        cluster.add_topic("orders", records_per_partition=3)
        job = await engine.submit_scheduled(
            {**SPEC, "schedule": {"kind": "once", "run_at": BASE_TIME + timedelta(minutes=30)}}
        )
        assert await run_due_jobs(engine) == 0

        clock.advance(1800)
        await run_due_jobs(engine)

        assert (await engine.get_job(job.id)).status == ReplayJobStatus.COMPLETED


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_background_scheduler_runs_jobs(self, engine, cluster):
        cluster.add_topic("orders", records_per_partition=20)

        async with engine:
            job = await engine.submit_immediate(SPEC)
            for _ in range(100):
                if (await engine.get_job(job.id)).status == ReplayJobStatus.COMPLETED:
                    break
                await asyncio.sleep(0.01)

        assert (await engine.get_job(job.id)).status == ReplayJobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_shutdown_requeues_running_job(self, engine, cluster, factory):
        cluster.add_topic("orders", records_per_partition=1000)
        first_batch = asyncio.Event()

        await engine.start()
        writer = await engine.pool.acquire(CLUSTER_ID)
        writer.on_flush = first_batch.set
        job = await engine.submit_immediate(SPEC)
        await asyncio.wait_for(first_batch.wait(), timeout=5)

        await engine.stop()

        requeued = await engine.get_job(job.id)
        assert requeued.status == ReplayJobStatus.PENDING
        assert 0 < requeued.progress.messages_processed < 1000
        assert requeued.progress.partitions[0].next_offset == requeued.progress.messages_processed
        assert all(w.closed for w in factory.writers)
        assert HistoryAction.CANCELLED not in await actions(engine, job.id)


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_prune_history(self, engine, cluster, clock):
        cluster.add_topic("orders", records_per_partition=5)
        job = await engine.submit_immediate(SPEC)
        await run_due_jobs(engine)
        entries = len(await engine.list_history(job.id))

        assert await engine.prune_history() == 0
        clock.advance(31 * 86400)
        assert await engine.prune_history() == entries
        assert await engine.list_history(job.id) == []

    @pytest.mark.asyncio
    async def test_recovers_abandoned_running_jobs(self, engine, store, clock):
        stale = await create_running_job(store)
        clock.advance(engine.config.job_timeout_seconds + ABANDONED_GRACE_SECONDS + 1)
        fresh = await create_running_job(store, partitions=[1])
        fresh.started_at = clock.now
        await store.update(fresh)

        assert await engine.recover_abandoned_jobs() == 1

        recovered = await engine.get_job(stale.id)
        assert recovered.status == ReplayJobStatus.FAILED
        assert await actions(engine, stale.id) == [HistoryAction.TIMED_OUT]
        assert (await engine.get_job(fresh.id)).status == ReplayJobStatus.RUNNING

"""
Tests for the in-memory job store.
"""

import asyncio
from datetime import timedelta

import pytest

from fakes import BASE_TIME, make_spec
from kafka_replay.schemas.jobs import (
    HistoryAction,
    JobQuery,
    MessageReplayJob,
    MessageReplayJobHistory,
    Pagination,
    ReplayJobStatus,
)
from kafka_replay.store import InMemoryJobStore


def new_job(**state) -> MessageReplayJob:
    state.setdefault("created_at", BASE_TIME)
    return MessageReplayJob.from_spec(make_spec(), **state)


class TestCrud:
    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        job = await store.create(new_job())
        loaded = await store.get(job.id)
        assert loaded == job
        assert loaded is not job

    @pytest.mark.asyncio
    async def test_create_duplicate_rejected(self, store):
        job = await store.create(new_job())
        with pytest.raises(ValueError):
            await store.create(job)

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_returned_copies_are_detached(self, store):
        job = await store.create(new_job())
        job.progress.messages_processed = 99
        assert (await store.get(job.id)).progress.messages_processed == 0

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, store):
        with pytest.raises(KeyError):
            await store.update(new_job())

    @pytest.mark.asyncio
    async def test_delete_removes_history(self, store):
        job = await store.create(new_job())
        await store.append_history(
            MessageReplayJobHistory(job_id=job.id, action=HistoryAction.STARTED)
        )
        assert await store.delete(job.id) is True
        assert await store.get(job.id) is None
        assert await store.list_history(job.id) == []
        assert await store.delete(job.id) is False


class TestCompareAndSet:
    @pytest.mark.asyncio
    async def test_transitions_only_from_expected(self, store):
        job = await store.create(new_job())
        assert await store.compare_and_set_status(
            job.id, ReplayJobStatus.PENDING, ReplayJobStatus.RUNNING
        )
        assert not await store.compare_and_set_status(
            job.id, ReplayJobStatus.PENDING, ReplayJobStatus.RUNNING
        )
        assert (await store.get(job.id)).status == ReplayJobStatus.RUNNING

    @pytest.mark.asyncio
    async def test_missing_job(self, store):
        assert not await store.compare_and_set_status(
            "missing", ReplayJobStatus.PENDING, ReplayJobStatus.RUNNING
        )

    @pytest.mark.asyncio
    async def test_exactly_one_concurrent_claim_wins(self, store):
        job = await store.create(new_job())
        results = await asyncio.gather(
            *[
                store.compare_and_set_status(
                    job.id, ReplayJobStatus.PENDING, ReplayJobStatus.RUNNING
                )
                for _ in range(10)
            ]
        )
        assert results.count(True) == 1


class TestListing:
    @pytest.mark.asyncio
    async def test_ordered_by_due_time(self, store):
        late = await store.create(new_job(next_scheduled_run=BASE_TIME + timedelta(hours=1)))
        early = await store.create(new_job(next_scheduled_run=BASE_TIME))
        unscheduled = await store.create(new_job(next_scheduled_run=None))

        jobs = await store.list()
        assert [j.id for j in jobs] == [early.id, late.id, unscheduled.id]

    @pytest.mark.asyncio
    async def test_query_and_pagination(self, store):
        for i in range(5):
            await store.create(new_job(next_scheduled_run=BASE_TIME + timedelta(minutes=i)))
        await store.create(new_job(status=ReplayJobStatus.FAILED))

        pending = await store.list(JobQuery(statuses=[ReplayJobStatus.PENDING]))
        assert len(pending) == 5

        page = await store.list(
            JobQuery(statuses=[ReplayJobStatus.PENDING]), Pagination(offset=3, limit=10)
        )
        assert [j.next_scheduled_run for j in page] == [
            BASE_TIME + timedelta(minutes=3),
            BASE_TIME + timedelta(minutes=4),
        ]

    @pytest.mark.asyncio
    async def test_due_before(self, store):
        await store.create(new_job(next_scheduled_run=BASE_TIME + timedelta(minutes=5)))
        due = await store.create(new_job(next_scheduled_run=BASE_TIME))
        jobs = await store.list(JobQuery(due_before=BASE_TIME))
        assert [j.id for j in jobs] == [due.id]


class TestHistory:
    @pytest.mark.asyncio
    async def test_append_preserves_order(self, store):
        job = await store.create(new_job())
        for action in (HistoryAction.STARTED, HistoryAction.BATCH_COMMITTED, HistoryAction.COMPLETED):
            await store.append_history(MessageReplayJobHistory(job_id=job.id, action=action))

        entries = await store.list_history(job.id)
        assert [e.action for e in entries] == [
            HistoryAction.STARTED,
            HistoryAction.BATCH_COMMITTED,
            HistoryAction.COMPLETED,
        ]
        assert len(await store.list_history(job.id, Pagination(offset=1, limit=1))) == 1

    @pytest.mark.asyncio
    async def test_prune_history(self, store):
        job = await store.create(new_job())
        old = MessageReplayJobHistory(
            job_id=job.id, action=HistoryAction.STARTED, timestamp=BASE_TIME - timedelta(days=40)
        )
        recent = MessageReplayJobHistory(
            job_id=job.id, action=HistoryAction.COMPLETED, timestamp=BASE_TIME
        )
        await store.append_history(old)
        await store.append_history(recent)

        removed = await store.prune_history(BASE_TIME - timedelta(days=30))

        assert removed == 1
        assert [e.id for e in await store.list_history(job.id)] == [recent.id]

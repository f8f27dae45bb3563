"""
Batch extractor: executes one run of a replay job.

A run plans per-partition offset ranges (once per run, resumed runs keep
their saved plan), then walks each partition in batches:

    fetch -> filter -> transform -> produce -> flush -> await acks -> progress

Progress only advances after every record of a batch has been acknowledged,
so a failed or interrupted run resumes from the last acknowledged batch and
delivery is at-least-once.

Offset-reset jobs read no records. They commit each partition's start
offset for the job's consumer group instead.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple

from kafka_replay.common.exceptions import (
    FatalReplayError,
    ReplayError,
    ResourceExhaustionError,
    TransientIOError,
)
from kafka_replay.common.logging import LoggedClass
from kafka_replay.engine.cancellation import CancellationToken
from kafka_replay.engine.filter_evaluator import matches
from kafka_replay.engine.producer_pool import ProducerPool
from kafka_replay.engine.tracker import RetryTracker
from kafka_replay.engine.transformer import apply
from kafka_replay.interfaces import (
    ClientFactory,
    ConnectionConfigProvider,
    SourceReader,
)
from kafka_replay.kafka.connection import ClusterConnection
from kafka_replay.metrics import record_batch, record_offsets_committed
from kafka_replay.schemas.jobs import MessageReplayJob, PartitionProgress
from kafka_replay.schemas.records import ReplayRecord

# Consecutive empty fetches with no movement before the partition end is
# re-checked against the high watermark
MAX_EMPTY_FETCHES = 3


@dataclass
class RunOutcome:
    """Result of a run that did not raise."""

    cancelled: bool = False
    limit_reached: bool = False
    messages_processed: int = 0


class BatchExtractor(LoggedClass):
    """
    Reads, filters, transforms and produces the records of one job run.

    Example:
        >>> extractor = BatchExtractor(provider, factory, pool, tracker, batch_size=500)
        >>> outcome = await extractor.run(job, CancellationToken())
    """

    def __init__(
        self,
        connections: ConnectionConfigProvider,
        clients: ClientFactory,
        pool: ProducerPool,
        tracker: RetryTracker,
        batch_size: int = 500,
        max_messages_per_job: int = 10_000_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            connections: Cluster connection lookup
            clients: Builds source readers and offset committers
            pool: Shared producer pool for target writes
            tracker: Persists progress after each batch
            batch_size: Maximum records fetched per batch
            max_messages_per_job: Produced-record cap for one run
            clock: Monotonic clock used for batch durations
        """
        super().__init__()
        self._connections = connections
        self._clients = clients
        self._pool = pool
        self._tracker = tracker
        self.batch_size = batch_size
        self.max_messages_per_job = max_messages_per_job
        self._clock = clock

    async def run(self, job: MessageReplayJob, token: CancellationToken) -> RunOutcome:
        """
        Execute one run of ``job``.

        Args:
            job: Claimed job (status RUNNING). Its progress is updated in place.
            token: Checked between batches

        Returns:
            RunOutcome describing how the run ended

        Raises:
            ReplayError: Typed run failure, classified by the tracker
            Exception: Unclassified client errors propagate unchanged
        """
        connection = await self._connections.get_connection(job.cluster_id)
        try:
            reader = await self._clients.create_reader(connection)
        except ReplayError:
            raise
        except Exception as e:
            raise ResourceExhaustionError(
                f"Could not create source reader for cluster {job.cluster_id}",
                cause=e,
                context={"cluster_id": job.cluster_id},
            ) from e

        try:
            if not job.progress.partitions:
                await self._plan(job, reader)
            if job.is_offset_reset:
                return await self._reset_offsets(job, connection, token)
            return await self._replay(job, reader, token)
        except asyncio.TimeoutError as e:
            raise TransientIOError(
                "Kafka request timed out during replay",
                cause=e,
                context={"cluster_id": job.cluster_id, "source_topic": job.source_topic},
            ) from e
        finally:
            try:
                await reader.close()
            except Exception as e:
                self._log_exception(
                    e, "Error closing source reader", level=logging.WARNING, job_id=job.id
                )

    # =========================================================================
    # Planning
    # =========================================================================

    async def _plan(self, job: MessageReplayJob, reader: SourceReader) -> None:
        """Resolve start and end offsets for every selected partition.

        End positions are capped at the high watermark observed here, so
        records produced after the run starts are never replayed.
        """
        topic = job.source_topic
        available = await reader.partitions_for_topic(topic)

        if job.partitions:
            missing = sorted(set(job.partitions) - set(available))
            if missing:
                raise FatalReplayError(
                    f"Partitions {missing} do not exist in topic {topic}",
                    context={"cluster_id": job.cluster_id, "source_topic": topic},
                )
            selected = list(job.partitions)
        else:
            selected = available

        plan: Dict[int, PartitionProgress] = {}
        total = 0
        for partition in selected:
            low, high = await reader.offset_range(topic, partition)

            if job.start_offset is not None:
                start = min(max(job.start_offset, low), high)
            else:
                found = await reader.resolve_offset_for_timestamp(
                    topic, partition, job.start_timestamp
                )
                start = high if found is None else min(max(found, low), high)

            if job.is_offset_reset:
                plan[partition] = PartitionProgress(start_offset=start, next_offset=start)
                continue

            if job.end_offset is not None:
                end = min(job.end_offset, high)
            elif job.end_timestamp is not None:
                found = await reader.resolve_offset_for_timestamp(
                    topic, partition, job.end_timestamp
                )
                end = high if found is None else min(found, high)
            else:
                end = high
            end = max(end, start)

            plan[partition] = PartitionProgress(
                start_offset=start,
                next_offset=start,
                end_offset=end,
                exhausted=start >= end,
            )
            total += end - start

        job.progress.partitions = plan
        job.progress.messages_total = None if job.is_offset_reset else total
        await self._tracker.save_progress(job)

        self._log(
            logging.INFO,
            "Replay run planned",
            job_id=job.id,
            source_topic=topic,
            records_total=total,
            partitions=len(plan),
        )

    # =========================================================================
    # Replay
    # =========================================================================

    async def _replay(
        self, job: MessageReplayJob, reader: SourceReader, token: CancellationToken
    ) -> RunOutcome:
        progress = job.progress

        for partition in sorted(progress.partitions):
            state = progress.partitions[partition]
            empty_fetches = 0

            while not state.exhausted:
                if token.is_cancelled:
                    return RunOutcome(
                        cancelled=True, messages_processed=progress.messages_processed
                    )
                quota = self.max_messages_per_job - progress.messages_processed
                if quota <= 0:
                    self._log(
                        logging.WARNING,
                        "Replay run reached the per-job message limit",
                        job_id=job.id,
                        records_produced=progress.messages_processed,
                    )
                    return RunOutcome(
                        limit_reached=True, messages_processed=progress.messages_processed
                    )

                scanned = await self._replay_batch(job, reader, partition, state, quota)
                if scanned:
                    empty_fetches = 0
                    continue

                empty_fetches += 1
                if await self._handle_empty_fetch(
                    job, reader, partition, state, empty_fetches
                ):
                    empty_fetches = 0

        # A cancel that arrived during the final batch still wins
        if token.is_cancelled:
            return RunOutcome(cancelled=True, messages_processed=progress.messages_processed)
        return RunOutcome(messages_processed=progress.messages_processed)

    async def _replay_batch(
        self,
        job: MessageReplayJob,
        reader: SourceReader,
        partition: int,
        state: PartitionProgress,
        quota: int,
    ) -> int:
        """
        Replay one batch from a partition.

        Returns:
            Number of source records scanned (0 when the fetch was empty)
        """
        started = self._clock()
        end = state.end_offset
        from_offset = state.next_offset
        max_records = min(self.batch_size, end - from_offset)

        fetched = await reader.fetch(job.source_topic, partition, from_offset, max_records)
        records = [r for r in fetched if r.offset < end]

        if fetched and not records:
            # Only records past the end bound remain (compacted range)
            await self._tracker.record_batch(
                job, partition, 0, 0, end, True, self._clock() - started
            )
            return 0
        if not records:
            return 0

        produced, produced_bytes, next_offset = await self._produce(
            job, records, quota, from_offset
        )
        scanned = sum(1 for r in records if r.offset < next_offset)
        exhausted = next_offset >= end
        elapsed = self._clock() - started

        await self._tracker.record_batch(
            job, partition, produced, scanned, next_offset, exhausted, elapsed
        )
        record_batch(
            job.cluster_id,
            job.source_topic,
            job.target_topic,
            scanned=scanned,
            produced=produced,
            produced_bytes=produced_bytes,
            duration_seconds=elapsed,
        )
        self._log(
            logging.DEBUG,
            "Batch committed",
            job_id=job.id,
            partition=partition,
            from_offset=from_offset,
            next_offset=next_offset,
            records_scanned=scanned,
            records_produced=produced,
            duration_ms=int(elapsed * 1000),
        )
        return scanned

    async def _produce(
        self,
        job: MessageReplayJob,
        records: List[ReplayRecord],
        quota: int,
        from_offset: int,
    ) -> Tuple[int, int, int]:
        """
        Filter, transform and produce a batch, then wait for every ack.

        Returns:
            (records produced, value bytes produced, next offset to scan)
        """
        acks: List[asyncio.Future] = []
        produced_bytes = 0
        next_offset = from_offset

        async with self._pool.lease(job.cluster_id) as writer:
            for record in records:
                if len(acks) >= quota:
                    break
                next_offset = record.offset + 1
                if not matches(record, job.filter):
                    continue
                out = apply(record, job.transformation)
                acks.append(
                    await writer.produce(
                        job.target_topic,
                        out.key,
                        out.value,
                        out.headers,
                        timestamp_ms=out.timestamp_ms,
                    )
                )
                produced_bytes += out.value_size

            await writer.flush()
            if acks:
                results = await asyncio.gather(*acks, return_exceptions=True)
                for result in results:
                    if isinstance(result, BaseException):
                        raise result

        self._pool.mark_used(job.cluster_id)
        return len(acks), produced_bytes, next_offset

    async def _handle_empty_fetch(
        self,
        job: MessageReplayJob,
        reader: SourceReader,
        partition: int,
        state: PartitionProgress,
        attempts: int,
    ) -> bool:
        """
        Account for a fetch that returned no records below the end bound.

        A range deleted by retention, or occupied only by transaction control
        records, is skipped. After ``MAX_EMPTY_FETCHES`` attempts with no
        movement the partition counts as drained only if nothing is left
        below the high watermark; otherwise the broker is treated as
        unavailable and the run fails with a retryable error.

        Returns:
            True if the partition's position moved or it was drained
        """
        low, high = await reader.offset_range(job.source_topic, partition)
        if low > state.next_offset:
            next_offset = min(low, state.end_offset)
            self._log(
                logging.WARNING,
                "Source records below the log start offset were deleted, skipping ahead",
                job_id=job.id,
                partition=partition,
                from_offset=state.next_offset,
                next_offset=next_offset,
            )
            await self._tracker.record_batch(
                job, partition, 0, 0, next_offset, next_offset >= state.end_offset, 0.0
            )
            return True

        position = await reader.position(job.source_topic, partition)
        if position > state.next_offset:
            next_offset = min(position, state.end_offset)
            self._log(
                logging.DEBUG,
                "Skipped offsets holding no data records",
                job_id=job.id,
                partition=partition,
                from_offset=state.next_offset,
                next_offset=next_offset,
            )
            await self._tracker.record_batch(
                job, partition, 0, 0, next_offset, next_offset >= state.end_offset, 0.0
            )
            return True

        if attempts < MAX_EMPTY_FETCHES:
            return False

        if state.next_offset < min(state.end_offset, high):
            raise TransientIOError(
                f"Partition {partition} of {job.source_topic} returned no records at "
                f"offset {state.next_offset} after {attempts} fetches, "
                f"below its end offset {state.end_offset}",
                context={"partition": partition, "next_offset": state.next_offset},
            )

        self._log(
            logging.WARNING,
            "Partition end bound is past its high watermark, treating as drained",
            job_id=job.id,
            partition=partition,
            next_offset=state.next_offset,
            end_offset=state.end_offset,
        )
        await self._tracker.record_batch(job, partition, 0, 0, state.next_offset, True, 0.0)
        return True

    # =========================================================================
    # Offset reset
    # =========================================================================

    async def _reset_offsets(
        self,
        job: MessageReplayJob,
        connection: ClusterConnection,
        token: CancellationToken,
    ) -> RunOutcome:
        pending = {
            partition: state.start_offset
            for partition, state in job.progress.partitions.items()
            if not state.exhausted
        }
        if token.is_cancelled:
            return RunOutcome(cancelled=True)
        if not pending:
            return RunOutcome()

        try:
            committer = await self._clients.create_committer(connection)
        except ReplayError:
            raise
        except Exception as e:
            raise ResourceExhaustionError(
                f"Could not create offset committer for cluster {job.cluster_id}",
                cause=e,
                context={"cluster_id": job.cluster_id},
            ) from e

        try:
            for partition in sorted(pending):
                await committer.commit_offset(
                    job.consumer_group_id, job.source_topic, partition, pending[partition]
                )
        finally:
            await committer.close()

        record_offsets_committed(job.cluster_id, job.consumer_group_id, len(pending))
        await self._tracker.record_offsets_committed(job, pending)
        self._log(
            logging.INFO,
            "Consumer group offsets reset",
            job_id=job.id,
            consumer_group_id=job.consumer_group_id,
            partitions=len(pending),
        )
        return RunOutcome()


__all__ = ["BatchExtractor", "MAX_EMPTY_FETCHES", "RunOutcome"]

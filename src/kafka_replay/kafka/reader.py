"""
Kafka source reader for replay runs.

Uses a group-less AIOKafkaConsumer with manual partition assignment, so a
replay never joins or disturbs any consumer group. One reader is created per
run and closed when the run ends.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from aiokafka import AIOKafkaConsumer
from aiokafka.structs import TopicPartition

from kafka_replay.common.exceptions import FatalReplayError
from kafka_replay.config import KafkaClientConfig
from kafka_replay.kafka.connection import ClusterConnection
from kafka_replay.schemas.records import ReplayRecord

logger = logging.getLogger(__name__)


class KafkaSourceReader:
    """
    Reads historical records by offset from one cluster.

    The reader keeps a single partition assigned at a time and only seeks
    when the requested offset differs from the consumer's position, so
    sequential batch reads reuse the consumer's prefetch buffer.
    """

    def __init__(self, connection: ClusterConnection, config: KafkaClientConfig):
        self.connection = connection
        self.config = config
        self._consumer: Optional[AIOKafkaConsumer] = None
        self._assigned: Optional[TopicPartition] = None
        self._positions: Dict[TopicPartition, int] = {}

    async def start(self) -> None:
        if self._consumer is not None:
            return

        self._consumer = AIOKafkaConsumer(
            group_id=None,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
            request_timeout_ms=self.config.request_timeout_ms_consumer,
            max_partition_fetch_bytes=self.config.max_partition_fetch_bytes,
            **self.connection.client_kwargs(),
        )
        try:
            await self._consumer.start()
        except Exception:
            await self._consumer.stop()
            self._consumer = None
            raise

        logger.debug(
            "Source reader started",
            extra={"cluster_id": self.connection.cluster_id},
        )

    def _require_consumer(self) -> AIOKafkaConsumer:
        if self._consumer is None:
            raise RuntimeError("Reader not started. Call start() first.")
        return self._consumer

    async def partitions_for_topic(self, topic: str) -> List[int]:
        """
        Raises:
            FatalReplayError: If the topic does not exist
        """
        consumer = self._require_consumer()
        # topics() forces a metadata refresh
        await consumer.topics()
        partitions = consumer.partitions_for_topic(topic)
        if not partitions:
            raise FatalReplayError(
                f"Topic not found: {topic}",
                context={"cluster_id": self.connection.cluster_id, "source_topic": topic},
            )
        return sorted(partitions)

    async def offset_range(self, topic: str, partition: int) -> Tuple[int, int]:
        consumer = self._require_consumer()
        tp = TopicPartition(topic, partition)
        beginning = await consumer.beginning_offsets([tp])
        end = await consumer.end_offsets([tp])
        return beginning[tp], end[tp]

    async def resolve_offset_for_timestamp(
        self, topic: str, partition: int, timestamp: datetime
    ) -> Optional[int]:
        consumer = self._require_consumer()
        tp = TopicPartition(topic, partition)
        timestamp_ms = int(timestamp.timestamp() * 1000)
        result = await consumer.offsets_for_times({tp: timestamp_ms})
        found = result.get(tp)
        return found.offset if found is not None else None

    async def fetch(
        self, topic: str, partition: int, from_offset: int, max_records: int
    ) -> List[ReplayRecord]:
        consumer = self._require_consumer()
        tp = TopicPartition(topic, partition)

        if self._assigned != tp:
            consumer.assign([tp])
            self._assigned = tp
            self._positions.pop(tp, None)

        if self._positions.get(tp) != from_offset:
            consumer.seek(tp, from_offset)

        batches = await consumer.getmany(
            tp, timeout_ms=self.config.fetch_timeout_ms, max_records=max_records
        )
        records = [
            ReplayRecord.from_consumer_record(r)
            for r in batches.get(tp, [])
            if r.offset >= from_offset
        ]
        if records:
            self._positions[tp] = records[-1].offset + 1
        else:
            self._positions.pop(tp, None)
        return records

    async def position(self, topic: str, partition: int) -> int:
        consumer = self._require_consumer()
        tp = TopicPartition(topic, partition)
        if self._assigned != tp:
            raise RuntimeError(f"Partition {tp} is not assigned to the reader")
        return await consumer.position(tp)

    async def close(self) -> None:
        if self._consumer is None:
            return
        try:
            await self._consumer.stop()
        finally:
            self._consumer = None
            self._assigned = None
            self._positions.clear()


__all__ = ["KafkaSourceReader"]

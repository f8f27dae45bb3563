"""
Unit tests for the aiokafka-backed reader, writer and offset committer.

The aiokafka clients are patched; no broker is needed.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiokafka.structs import (
    ConsumerRecord,
    OffsetAndMetadata,
    OffsetAndTimestamp,
    TopicPartition,
)

from kafka_replay.common.exceptions import FatalReplayError
from kafka_replay.config import KafkaClientConfig
from kafka_replay.kafka.admin import KafkaOffsetCommitter
from kafka_replay.kafka.connection import ClusterConnection
from kafka_replay.kafka.factory import AIOKafkaClientFactory
from kafka_replay.kafka.producer import KafkaTargetWriter
from kafka_replay.kafka.reader import KafkaSourceReader
from kafka_replay.schemas.records import ReplayRecord

TP = TopicPartition("orders", 0)


@pytest.fixture
def connection():
    return ClusterConnection(cluster_id="prod-eu", bootstrap_servers="localhost:9092")


def consumer_record(offset, headers=None):
    return ConsumerRecord(
        topic="orders",
        partition=0,
        offset=offset,
        timestamp=1736935200000 + offset,
        timestamp_type=0,
        key=f"key-{offset}".encode(),
        value=b"value",
        checksum=None,
        serialized_key_size=5,
        serialized_value_size=5,
        headers=headers or [],
    )


def mock_consumer():
    consumer = MagicMock()
    for name in (
        "start",
        "stop",
        "topics",
        "beginning_offsets",
        "end_offsets",
        "offsets_for_times",
        "getmany",
        "position",
        "commit",
    ):
        setattr(consumer, name, AsyncMock())
    return consumer


class TestReplayRecord:
    def test_from_consumer_record(self):
        record = ReplayRecord.from_consumer_record(
            consumer_record(7, headers=[("a", b"1"), ("b", None), ("a", b"2")])
        )
        assert record.offset == 7
        assert record.key == b"key-7"
        assert record.timestamp_ms == 1736935200007
        assert record.headers == {"a": b"2", "b": b""}
        assert record.value_size == 5


@pytest.mark.asyncio
class TestKafkaTargetWriter:
    """Producer lifecycle and produce path."""

    async def test_start_configures_producer(self, connection):
        config = KafkaClientConfig(acks="1", compression_type="gzip")
        with patch("kafka_replay.kafka.producer.AIOKafkaProducer") as producer_cls:
            producer_cls.return_value = AsyncMock()
            writer = KafkaTargetWriter(connection, config)
            await writer.start()

        kwargs = producer_cls.call_args.kwargs
        assert kwargs["bootstrap_servers"] == "localhost:9092"
        assert kwargs["acks"] == 1
        assert kwargs["compression_type"] == "gzip"
        assert writer.is_started

    async def test_failed_start_cleans_up(self, connection):
        with patch("kafka_replay.kafka.producer.AIOKafkaProducer") as producer_cls:
            producer = AsyncMock()
            producer.start.side_effect = ConnectionError("refused")
            producer_cls.return_value = producer
            writer = KafkaTargetWriter(connection, KafkaClientConfig())

            with pytest.raises(ConnectionError):
                await writer.start()

        producer.stop.assert_awaited_once()
        assert not writer.is_started

    async def test_produce_preserves_timestamp_and_headers(self, connection):
        with patch("kafka_replay.kafka.producer.AIOKafkaProducer") as producer_cls:
            producer = AsyncMock()
            ack = MagicMock()
            producer.send.return_value = ack
            producer_cls.return_value = producer
            writer = KafkaTargetWriter(connection, KafkaClientConfig())
            await writer.start()

            result = await writer.produce(
                "orders.replay", b"k", b"v", {"trace": b"1"}, timestamp_ms=1700000000000
            )

        assert result is ack
        producer.send.assert_awaited_once_with(
            "orders.replay",
            key=b"k",
            value=b"v",
            headers=[("trace", b"1")],
            timestamp_ms=1700000000000,
        )

    async def test_produce_before_start_raises(self, connection):
        writer = KafkaTargetWriter(connection, KafkaClientConfig())
        with pytest.raises(RuntimeError, match="not started"):
            await writer.produce("orders.replay", None, b"v", {})

    async def test_close_flushes_and_is_idempotent(self, connection):
        with patch("kafka_replay.kafka.producer.AIOKafkaProducer") as producer_cls:
            producer = AsyncMock()
            producer_cls.return_value = producer
            writer = KafkaTargetWriter(connection, KafkaClientConfig())
            await writer.start()

            await writer.close()
            await writer.close()

        producer.flush.assert_awaited_once()
        producer.stop.assert_awaited_once()
        assert not writer.is_started


@pytest.mark.asyncio
class TestKafkaSourceReader:
    """Partition discovery, offset lookups and sequential fetches."""

    async def _started_reader(self, connection, consumer):
        with patch("kafka_replay.kafka.reader.AIOKafkaConsumer", return_value=consumer) as cls:
            reader = KafkaSourceReader(connection, KafkaClientConfig())
            await reader.start()
        assert cls.call_args.kwargs["group_id"] is None
        return reader

    async def test_partitions_for_topic(self, connection):
        consumer = mock_consumer()
        consumer.partitions_for_topic.return_value = {2, 0, 1}
        reader = await self._started_reader(connection, consumer)

        assert await reader.partitions_for_topic("orders") == [0, 1, 2]
        consumer.topics.assert_awaited_once()

    async def test_missing_topic_is_fatal(self, connection):
        consumer = mock_consumer()
        consumer.partitions_for_topic.return_value = None
        reader = await self._started_reader(connection, consumer)

        with pytest.raises(FatalReplayError, match="Topic not found"):
            await reader.partitions_for_topic("orders")

    async def test_offset_range(self, connection):
        consumer = mock_consumer()
        consumer.beginning_offsets.return_value = {TP: 5}
        consumer.end_offsets.return_value = {TP: 42}
        reader = await self._started_reader(connection, consumer)

        assert await reader.offset_range("orders", 0) == (5, 42)

    async def test_resolve_offset_for_timestamp(self, connection):
        consumer = mock_consumer()
        reader = await self._started_reader(connection, consumer)
        ts = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)

        consumer.offsets_for_times.return_value = {TP: OffsetAndTimestamp(17, 1736935200000)}
        assert await reader.resolve_offset_for_timestamp("orders", 0, ts) == 17
        consumer.offsets_for_times.assert_awaited_with({TP: 1736935200000})

        consumer.offsets_for_times.return_value = {TP: None}
        assert await reader.resolve_offset_for_timestamp("orders", 0, ts) is None

    async def test_sequential_fetches_seek_once(self, connection):
        consumer = mock_consumer()
        reader = await self._started_reader(connection, consumer)

        consumer.getmany.return_value = {TP: [consumer_record(i) for i in range(10, 13)]}
        first = await reader.fetch("orders", 0, 10, 3)
        consumer.getmany.return_value = {TP: [consumer_record(i) for i in range(13, 15)]}
        second = await reader.fetch("orders", 0, 13, 3)

        assert [r.offset for r in first + second] == [10, 11, 12, 13, 14]
        consumer.assign.assert_called_once_with([TP])
        consumer.seek.assert_called_once_with(TP, 10)

    async def test_fetch_drops_records_before_requested_offset(self, connection):
        consumer = mock_consumer()
        reader = await self._started_reader(connection, consumer)
        consumer.getmany.return_value = {TP: [consumer_record(i) for i in range(8, 12)]}

        records = await reader.fetch("orders", 0, 10, 5)

        assert [r.offset for r in records] == [10, 11]

    async def test_position_after_skipped_control_records(self, connection):
        consumer = mock_consumer()
        reader = await self._started_reader(connection, consumer)
        consumer.getmany.return_value = {}
        consumer.position.return_value = 12

        assert await reader.fetch("orders", 0, 10, 5) == []
        assert await reader.position("orders", 0) == 12
        consumer.position.assert_awaited_once_with(TP)

        with pytest.raises(RuntimeError, match="not assigned"):
            await reader.position("orders", 1)

    async def test_close_stops_consumer(self, connection):
        consumer = mock_consumer()
        reader = await self._started_reader(connection, consumer)

        await reader.close()
        await reader.close()

        consumer.stop.assert_awaited_once()


@pytest.mark.asyncio
class TestKafkaOffsetCommitter:
    async def test_commits_for_group(self, connection):
        consumer = mock_consumer()
        with patch("kafka_replay.kafka.admin.AIOKafkaConsumer", return_value=consumer) as cls:
            committer = await AIOKafkaClientFactory(KafkaClientConfig()).create_committer(
                connection
            )
            assert isinstance(committer, KafkaOffsetCommitter)

            await committer.commit_offset("billing", "orders", 0, 5)
            await committer.commit_offset("billing", "orders", 1, 9)
            await committer.close()

        cls.assert_called_once()
        assert cls.call_args.kwargs["group_id"] == "billing"
        consumer.commit.assert_any_await({TP: OffsetAndMetadata(5, "kafka-replay")})
        consumer.commit.assert_any_await(
            {TopicPartition("orders", 1): OffsetAndMetadata(9, "kafka-replay")}
        )
        consumer.stop.assert_awaited_once()

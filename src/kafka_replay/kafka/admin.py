"""
Consumer group offset committer for offset-reset replay jobs.
"""

import logging
from typing import Dict

from aiokafka import AIOKafkaConsumer
from aiokafka.structs import OffsetAndMetadata, TopicPartition

from kafka_replay.config import KafkaClientConfig
from kafka_replay.kafka.connection import ClusterConnection

logger = logging.getLogger(__name__)


class KafkaOffsetCommitter:
    """
    Commits offsets on behalf of a consumer group.

    One manually-assigned consumer is kept per group until ``close``. The
    group should have no active members, otherwise the broker rejects the
    commit and the run is retried under the job's retry policy.
    """

    def __init__(self, connection: ClusterConnection, config: KafkaClientConfig):
        self.connection = connection
        self.config = config
        self._consumers: Dict[str, AIOKafkaConsumer] = {}

    async def _consumer_for(self, group_id: str) -> AIOKafkaConsumer:
        consumer = self._consumers.get(group_id)
        if consumer is None:
            consumer = AIOKafkaConsumer(
                group_id=group_id,
                enable_auto_commit=False,
                request_timeout_ms=self.config.request_timeout_ms_consumer,
                **self.connection.client_kwargs(),
            )
            try:
                await consumer.start()
            except Exception:
                await consumer.stop()
                raise
            self._consumers[group_id] = consumer
        return consumer

    async def commit_offset(
        self, group_id: str, topic: str, partition: int, offset: int
    ) -> None:
        consumer = await self._consumer_for(group_id)
        tp = TopicPartition(topic, partition)
        consumer.assign([tp])
        await consumer.commit({tp: OffsetAndMetadata(offset, "kafka-replay")})
        logger.info(
            "Committed consumer group offset",
            extra={
                "cluster_id": self.connection.cluster_id,
                "consumer_group_id": group_id,
                "partition": partition,
                "next_offset": offset,
            },
        )

    async def close(self) -> None:
        consumers, self._consumers = self._consumers, {}
        for consumer in consumers.values():
            await consumer.stop()


__all__ = ["KafkaOffsetCommitter"]

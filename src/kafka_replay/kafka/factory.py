"""
Factory for the aiokafka-backed clients the engine consumes.
"""

from kafka_replay.config import KafkaClientConfig
from kafka_replay.kafka.admin import KafkaOffsetCommitter
from kafka_replay.kafka.connection import ClusterConnection
from kafka_replay.kafka.producer import KafkaTargetWriter
from kafka_replay.kafka.reader import KafkaSourceReader


class AIOKafkaClientFactory:
    """Creates started aiokafka-backed clients for a cluster connection."""

    def __init__(self, config: KafkaClientConfig):
        self.config = config

    async def create_reader(self, connection: ClusterConnection) -> KafkaSourceReader:
        reader = KafkaSourceReader(connection, self.config)
        await reader.start()
        return reader

    async def create_writer(self, connection: ClusterConnection) -> KafkaTargetWriter:
        writer = KafkaTargetWriter(connection, self.config)
        await writer.start()
        return writer

    async def create_committer(self, connection: ClusterConnection) -> KafkaOffsetCommitter:
        # Consumers are created lazily per consumer group
        return KafkaOffsetCommitter(connection, self.config)


__all__ = ["AIOKafkaClientFactory"]

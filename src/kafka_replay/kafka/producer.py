"""
Kafka target writer used by the producer pool.

Provides async Kafka producer functionality with:
- Raw bytes pass-through (no serializers, records are replayed as-is)
- Original record timestamps preserved on produce
- Two-phase send: enqueue returns a delivery future, flush then await acks
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Union

from aiokafka import AIOKafkaProducer

from kafka_replay.config import KafkaClientConfig
from kafka_replay.kafka.connection import ClusterConnection

logger = logging.getLogger(__name__)


def _parse_acks(acks: str) -> Union[int, str]:
    return int(acks) if acks in ("0", "1") else acks


class KafkaTargetWriter:
    """
    Async Kafka producer bound to one cluster.

    Instances are owned by the producer pool. Callers obtain them through
    ``ProducerPool.acquire`` and never stop them directly.

    Usage:
        >>> writer = KafkaTargetWriter(connection, KafkaClientConfig())
        >>> await writer.start()
        >>> try:
        ...     ack = await writer.produce("orders.replay", b"k", b"v", {}, 1700000000000)
        ...     await writer.flush()
        ...     metadata = await ack
        ... finally:
        ...     await writer.close()
    """

    def __init__(self, connection: ClusterConnection, config: KafkaClientConfig):
        """
        Initialize Kafka target writer.

        Args:
            connection: Cluster connection parameters
            config: Producer settings
        """
        self.connection = connection
        self.config = config
        self._producer: Optional[AIOKafkaProducer] = None
        self._started = False

    @property
    def cluster_id(self) -> str:
        return self.connection.cluster_id

    async def start(self) -> None:
        """
        Start the producer and connect to the cluster.

        Raises:
            KafkaError: If the producer fails to connect
        """
        if self._started:
            logger.warning("Producer already started, ignoring duplicate start call")
            return

        producer_config: Dict[str, Any] = dict(self.connection.client_kwargs())
        producer_config.update(
            {
                "acks": _parse_acks(self.config.acks),
                "linger_ms": self.config.linger_ms,
                "request_timeout_ms": self.config.request_timeout_ms,
                "enable_idempotence": self.config.enable_idempotence,
            }
        )
        if self.config.compression_type:
            producer_config["compression_type"] = self.config.compression_type

        self._producer = AIOKafkaProducer(**producer_config)
        try:
            await self._producer.start()
        except Exception:
            # A failed start leaves background resources behind
            await self._producer.stop()
            self._producer = None
            raise
        self._started = True

        logger.info(
            "Kafka producer started",
            extra={
                "cluster_id": self.connection.cluster_id,
                "bootstrap_servers": self.connection.bootstrap_servers,
                "acks": self.config.acks,
            },
        )

    async def produce(
        self,
        topic: str,
        key: Optional[bytes],
        value: Optional[bytes],
        headers: Dict[str, bytes],
        timestamp_ms: Optional[int] = None,
    ) -> "asyncio.Future":
        """
        Enqueue a record for delivery.

        Args:
            topic: Target topic
            key: Raw key bytes, or None
            value: Raw value bytes, or None
            headers: Header name to raw value
            timestamp_ms: Record timestamp to preserve

        Returns:
            Future resolving to RecordMetadata once the broker acknowledges
        """
        if not self._started or self._producer is None:
            raise RuntimeError("Producer not started. Call start() first.")

        return await self._producer.send(
            topic,
            key=key,
            value=value,
            headers=list(headers.items()) or None,
            timestamp_ms=timestamp_ms,
        )

    async def flush(self) -> None:
        """Block until all buffered records have been sent."""
        if not self._started or self._producer is None:
            raise RuntimeError("Producer not started. Call start() first.")
        await self._producer.flush()

    async def close(self) -> None:
        """
        Flush and stop the producer. Safe to call multiple times.
        """
        if not self._started or self._producer is None:
            return

        try:
            await self._producer.flush()
            await self._producer.stop()
            logger.info(
                "Kafka producer stopped",
                extra={"cluster_id": self.connection.cluster_id},
            )
        finally:
            self._producer = None
            self._started = False

    @property
    def is_started(self) -> bool:
        return self._started and self._producer is not None


__all__ = ["KafkaTargetWriter"]

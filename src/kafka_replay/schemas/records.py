"""
Source record representation passed through the replay pipeline.

Records stay as raw bytes end to end. Filters decode them as needed and the
target writer sends them unchanged unless a transformation rewrites them.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple

from aiokafka.structs import ConsumerRecord


def collapse_headers(headers: Optional[Iterable[Tuple[str, Optional[bytes]]]]) -> Dict[str, bytes]:
    """Collapse Kafka's header list into a dict. Duplicate keys keep the last value."""
    result: Dict[str, bytes] = {}
    for key, value in headers or ():
        result[key] = value if value is not None else b""
    return result


@dataclass(frozen=True)
class ReplayRecord:
    """A single record read from the source topic.

    Attributes:
        topic: Source topic
        partition: Source partition
        offset: Source offset
        key: Raw key bytes, or None
        value: Raw value bytes, or None (tombstone)
        headers: Header name to raw value
        timestamp_ms: Record timestamp in epoch milliseconds
    """

    topic: str
    partition: int
    offset: int
    key: Optional[bytes] = None
    value: Optional[bytes] = None
    headers: Dict[str, bytes] = field(default_factory=dict)
    timestamp_ms: Optional[int] = None

    @classmethod
    def from_consumer_record(cls, record: ConsumerRecord) -> "ReplayRecord":
        """Build from an aiokafka ConsumerRecord fetched without deserializers."""
        return cls(
            topic=record.topic,
            partition=record.partition,
            offset=record.offset,
            key=record.key,
            value=record.value,
            headers=collapse_headers(record.headers),
            timestamp_ms=record.timestamp,
        )

    @property
    def value_size(self) -> int:
        """Value size in bytes (0 for tombstones)."""
        return len(self.value) if self.value is not None else 0


__all__ = ["ReplayRecord", "collapse_headers"]

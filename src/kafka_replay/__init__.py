"""
Kafka message replay engine.

Replays historical records from a Kafka topic into a target topic, with
optional filtering and per-record transformation, or rewinds a consumer
group's committed offsets. Jobs run immediately, once at a set time, or on a
cron schedule.

Usage:
    python -m kafka_replay --config config.yaml --jobs jobs.yaml
"""

from kafka_replay.config import ReplayConfig
from kafka_replay.engine.service import ReplayEngine
from kafka_replay.schemas.jobs import MessageReplayJob, ReplayJobSpec, ReplayJobStatus
from kafka_replay.store import InMemoryJobStore

__version__ = "0.1.0"

__all__ = [
    "InMemoryJobStore",
    "MessageReplayJob",
    "ReplayConfig",
    "ReplayEngine",
    "ReplayJobSpec",
    "ReplayJobStatus",
    "__version__",
]

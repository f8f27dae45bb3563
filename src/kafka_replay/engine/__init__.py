"""
Replay engine components.

- filter_evaluator: record filter matching
- transformer: per-record key, value and header rewrites
- producer_pool: per-cluster pooled producers
- extractor: batch fetch/produce loop for one run
- tracker: progress, retry policy and status transitions
- scheduler: cron evaluation and the job claim loop
- service: ReplayEngine facade
"""

from kafka_replay.engine.cancellation import CancellationToken, CancelReason
from kafka_replay.engine.extractor import BatchExtractor, RunOutcome
from kafka_replay.engine.producer_pool import ProducerPool
from kafka_replay.engine.scheduler import ReplayScheduler, next_cron_instant
from kafka_replay.engine.service import ReplayEngine
from kafka_replay.engine.tracker import RetryTracker

__all__ = [
    "BatchExtractor",
    "CancelReason",
    "CancellationToken",
    "ProducerPool",
    "ReplayEngine",
    "ReplayScheduler",
    "RetryTracker",
    "RunOutcome",
    "next_cron_instant",
]

"""
Prometheus metrics for replay engine monitoring.

Provides instrumentation for:
- Records scanned and produced per job destination
- Batch commit durations
- Job lifecycle transitions and running job count
- Producer pool size and evictions
- Consumer group offset commits
"""

from prometheus_client import Counter, Gauge, Histogram

# Record throughput
replay_records_scanned_total = Counter(
    "replay_records_scanned_total",
    "Total number of source records scanned by replay jobs",
    ["cluster_id", "source_topic"],
)

replay_records_produced_total = Counter(
    "replay_records_produced_total",
    "Total number of records produced by replay jobs",
    ["cluster_id", "target_topic"],
)

replay_records_produced_bytes = Counter(
    "replay_records_produced_bytes_total",
    "Total value bytes produced by replay jobs",
    ["cluster_id", "target_topic"],
)

# Batches
replay_batches_committed_total = Counter(
    "replay_batches_committed_total",
    "Total number of acknowledged replay batches",
    ["cluster_id"],
)

replay_batch_duration_seconds = Histogram(
    "replay_batch_duration_seconds",
    "Time from first fetch to ack of a replay batch",
    ["cluster_id"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

# Job lifecycle
replay_job_transitions_total = Counter(
    "replay_job_transitions_total",
    "Total number of replay job status transitions",
    ["status"],
)

replay_jobs_running = Gauge(
    "replay_jobs_running",
    "Number of replay jobs currently running on this instance",
)

replay_run_errors_total = Counter(
    "replay_run_errors_total",
    "Total number of failed replay runs by error category",
    ["error_category"],
)

# Producer pool
replay_producer_pool_size = Gauge(
    "replay_producer_pool_size",
    "Number of pooled producers",
)

replay_producer_evictions_total = Counter(
    "replay_producer_evictions_total",
    "Total number of pooled producers closed by the pool",
    ["reason"],  # reason: idle, stale, shutdown
)

# Offset resets
replay_offsets_committed_total = Counter(
    "replay_offsets_committed_total",
    "Total number of consumer group partition offsets committed",
    ["cluster_id", "consumer_group"],
)


def record_batch(
    cluster_id: str,
    source_topic: str,
    target_topic: str,
    scanned: int,
    produced: int,
    produced_bytes: int,
    duration_seconds: float,
) -> None:
    """
    Record an acknowledged batch.

    Args:
        cluster_id: Cluster the job runs against
        source_topic: Topic the batch was read from
        target_topic: Topic the batch was produced to
        scanned: Source records walked
        produced: Records produced and acknowledged
        produced_bytes: Total value bytes produced
        duration_seconds: Fetch-to-ack duration
    """
    replay_records_scanned_total.labels(
        cluster_id=cluster_id, source_topic=source_topic
    ).inc(scanned)
    if produced:
        replay_records_produced_total.labels(
            cluster_id=cluster_id, target_topic=target_topic
        ).inc(produced)
        replay_records_produced_bytes.labels(
            cluster_id=cluster_id, target_topic=target_topic
        ).inc(produced_bytes)
    replay_batches_committed_total.labels(cluster_id=cluster_id).inc()
    replay_batch_duration_seconds.labels(cluster_id=cluster_id).observe(duration_seconds)


def record_job_transition(status: str) -> None:
    """Record a job entering ``status``."""
    replay_job_transitions_total.labels(status=status).inc()


def record_run_error(error_category: str) -> None:
    replay_run_errors_total.labels(error_category=error_category).inc()


def update_running_jobs(count: int) -> None:
    replay_jobs_running.set(count)


def update_pool_size(size: int) -> None:
    replay_producer_pool_size.set(size)


def record_producer_eviction(reason: str) -> None:
    replay_producer_evictions_total.labels(reason=reason).inc()


def record_offsets_committed(cluster_id: str, consumer_group: str, count: int) -> None:
    replay_offsets_committed_total.labels(
        cluster_id=cluster_id, consumer_group=consumer_group
    ).inc(count)


__all__ = [
    "record_batch",
    "record_job_transition",
    "record_offsets_committed",
    "record_producer_eviction",
    "record_run_error",
    "update_pool_size",
    "update_running_jobs",
]

"""
Replay engine configuration from config.yaml and environment variables.

Configuration priority (highest to lowest):
1. Environment variables
2. config.yaml file (``replay:``, ``kafka:`` and ``clusters:`` keys)
3. Dataclass defaults

Example config.yaml:

    replay:
      batch_size: 500
      max_concurrent_jobs: 5
      poll_interval_seconds: 5
    kafka:
      acks: all
      compression_type: gzip
    clusters:
      prod-eu:
        bootstrap_servers: broker-1:9092,broker-2:9092
        security_protocol: SASL_SSL
        sasl_mechanism: PLAIN
        sasl_plain_username: replay
        sasl_plain_password: secret
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from kafka_replay.kafka.connection import ClusterConnection

# Default config path: config.yaml in the working directory
DEFAULT_CONFIG_PATH = Path("config.yaml")


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


@dataclass
class KafkaClientConfig:
    """Producer and consumer settings shared by every cluster.

    All timing values in milliseconds.
    """

    # Producer defaults
    acks: str = "all"
    linger_ms: int = 5
    compression_type: Optional[str] = None
    request_timeout_ms: int = 40000
    enable_idempotence: bool = False

    # Consumer defaults (used by the source reader)
    fetch_timeout_ms: int = 1000
    max_partition_fetch_bytes: int = 1048576
    request_timeout_ms_consumer: int = 40000

    @classmethod
    def load_config(cls, data: Optional[Dict[str, Any]] = None) -> "KafkaClientConfig":
        """Build from the ``kafka:`` yaml section overlaid with env vars.

        Optional env vars:
            KAFKA_PRODUCER_ACKS: all (default)
            KAFKA_PRODUCER_LINGER_MS: 5 (default)
            KAFKA_PRODUCER_COMPRESSION: none (default)
            KAFKA_REQUEST_TIMEOUT_MS: 40000 (default)
            KAFKA_ENABLE_IDEMPOTENCE: false (default)
            KAFKA_FETCH_TIMEOUT_MS: 1000 (default)
        """
        data = data or {}
        compression = os.getenv(
            "KAFKA_PRODUCER_COMPRESSION", data.get("compression_type") or ""
        )
        return cls(
            acks=str(os.getenv("KAFKA_PRODUCER_ACKS", data.get("acks", "all"))),
            linger_ms=int(os.getenv("KAFKA_PRODUCER_LINGER_MS", str(data.get("linger_ms", 5)))),
            compression_type=compression or None,
            request_timeout_ms=int(os.getenv(
                "KAFKA_REQUEST_TIMEOUT_MS",
                str(data.get("request_timeout_ms", 40000))
            )),
            enable_idempotence=_env_bool(os.getenv(
                "KAFKA_ENABLE_IDEMPOTENCE",
                str(data.get("enable_idempotence", False))
            )),
            fetch_timeout_ms=int(os.getenv(
                "KAFKA_FETCH_TIMEOUT_MS",
                str(data.get("fetch_timeout_ms", 1000))
            )),
            max_partition_fetch_bytes=int(data.get("max_partition_fetch_bytes", 1048576)),
            request_timeout_ms_consumer=int(data.get("request_timeout_ms_consumer", 40000)),
        )


@dataclass
class ReplayConfig:
    """Replay engine behavior configuration.

    Load with ReplayConfig.load_config() (yaml + env) or
    ReplayConfig.from_env() (env only).
    """

    # Extraction
    batch_size: int = 500
    max_messages_per_job: int = 10_000_000

    # Workers and scheduling
    max_concurrent_jobs: int = 5
    poll_interval_seconds: float = 5.0
    job_timeout_minutes: int = 1440

    # Producer pool
    producer_idle_timeout_seconds: int = 1800  # 30 minutes
    producer_cleanup_interval_seconds: int = 600  # 10 minutes

    # Retry defaults applied to specs that carry no retry policy
    default_retry_delay_seconds: int = 60

    # History retention
    history_retention_days: int = 30

    # Kafka client settings
    kafka: KafkaClientConfig = field(default_factory=KafkaClientConfig)

    # Cluster id -> connection parameters
    clusters: Dict[str, ClusterConnection] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        if self.max_messages_per_job < 1:
            raise ValueError("max_messages_per_job must be at least 1")

    @property
    def job_timeout_seconds(self) -> float:
        return self.job_timeout_minutes * 60.0

    @classmethod
    def from_env(cls) -> "ReplayConfig":
        """Load configuration from environment variables only."""
        return cls._build({}, {}, {})

    @classmethod
    def load_config(cls, config_path: Optional[Path] = None) -> "ReplayConfig":
        """Load configuration from config.yaml and environment variables.

        Optional env vars (all have defaults):
            REPLAY_BATCH_SIZE: Records per fetch batch (default: 500)
            REPLAY_MAX_MESSAGES_PER_JOB: Produced-record cap per run (default: 10000000)
            REPLAY_MAX_CONCURRENT_JOBS: Worker slots (default: 5)
            REPLAY_POLL_INTERVAL_SECONDS: Scheduler tick (default: 5)
            REPLAY_JOB_TIMEOUT_MINUTES: Per-run timeout (default: 1440)
            REPLAY_PRODUCER_IDLE_TIMEOUT_SECONDS: Pool idle eviction (default: 1800)
            REPLAY_PRODUCER_CLEANUP_INTERVAL_SECONDS: Pool sweep period (default: 600)
            REPLAY_DEFAULT_RETRY_DELAY_SECONDS: (default: 60)
            REPLAY_HISTORY_RETENTION_DAYS: (default: 30)
            KAFKA_BOOTSTRAP_SERVERS: Registers a cluster named by
                REPLAY_DEFAULT_CLUSTER_ID (default: "default")
        """
        config_path = config_path or DEFAULT_CONFIG_PATH

        yaml_data: Dict[str, Any] = {}
        if config_path.exists():
            with open(config_path, "r") as f:
                yaml_data = yaml.safe_load(f) or {}

        return cls._build(
            yaml_data.get("replay", {}) or {},
            yaml_data.get("kafka", {}) or {},
            yaml_data.get("clusters", {}) or {},
        )

    @classmethod
    def _build(
        cls,
        replay_data: Dict[str, Any],
        kafka_data: Dict[str, Any],
        clusters_data: Dict[str, Any],
    ) -> "ReplayConfig":
        clusters = {
            cluster_id: ClusterConnection.from_dict(cluster_id, params)
            for cluster_id, params in clusters_data.items()
        }

        bootstrap_servers = os.getenv("KAFKA_BOOTSTRAP_SERVERS")
        if bootstrap_servers:
            cluster_id = os.getenv("REPLAY_DEFAULT_CLUSTER_ID", "default")
            clusters[cluster_id] = ClusterConnection(
                cluster_id=cluster_id,
                bootstrap_servers=bootstrap_servers,
                security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
                sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM") or None,
                sasl_plain_username=os.getenv("KAFKA_SASL_PLAIN_USERNAME") or None,
                sasl_plain_password=os.getenv("KAFKA_SASL_PLAIN_PASSWORD") or None,
            )

        def setting(env_var: str, key: str, default: Any) -> str:
            return os.getenv(env_var, str(replay_data.get(key, default)))

        return cls(
            batch_size=int(setting("REPLAY_BATCH_SIZE", "batch_size", 500)),
            max_messages_per_job=int(setting(
                "REPLAY_MAX_MESSAGES_PER_JOB", "max_messages_per_job", 10_000_000
            )),
            max_concurrent_jobs=int(setting(
                "REPLAY_MAX_CONCURRENT_JOBS", "max_concurrent_jobs", 5
            )),
            poll_interval_seconds=float(setting(
                "REPLAY_POLL_INTERVAL_SECONDS", "poll_interval_seconds", 5
            )),
            job_timeout_minutes=int(setting(
                "REPLAY_JOB_TIMEOUT_MINUTES", "job_timeout_minutes", 1440
            )),
            producer_idle_timeout_seconds=int(setting(
                "REPLAY_PRODUCER_IDLE_TIMEOUT_SECONDS", "producer_idle_timeout_seconds", 1800
            )),
            producer_cleanup_interval_seconds=int(setting(
                "REPLAY_PRODUCER_CLEANUP_INTERVAL_SECONDS",
                "producer_cleanup_interval_seconds",
                600,
            )),
            default_retry_delay_seconds=int(setting(
                "REPLAY_DEFAULT_RETRY_DELAY_SECONDS", "default_retry_delay_seconds", 60
            )),
            history_retention_days=int(setting(
                "REPLAY_HISTORY_RETENTION_DAYS", "history_retention_days", 30
            )),
            kafka=KafkaClientConfig.load_config(kafka_data),
            clusters=clusters,
        )


__all__ = ["DEFAULT_CONFIG_PATH", "KafkaClientConfig", "ReplayConfig"]

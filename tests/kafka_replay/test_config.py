"""
Tests for configuration loading (defaults < config.yaml < env).
"""

import os
from pathlib import Path

import pytest

from kafka_replay.config import KafkaClientConfig, ReplayConfig
from kafka_replay.kafka.connection import ClusterConnection, StaticConnectionProvider
from kafka_replay.common.exceptions import FatalReplayError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Isolate tests from REPLAY_* and KAFKA_* variables in the environment."""
    for name in list(os.environ):
        if name.startswith(("REPLAY_", "KAFKA_")):
            monkeypatch.delenv(name, raising=False)


def write_yaml(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(content)
    return path


class TestDefaults:
    def test_dataclass_defaults(self):
        config = ReplayConfig()
        assert config.batch_size == 500
        assert config.max_concurrent_jobs == 5
        assert config.poll_interval_seconds == 5.0
        assert config.job_timeout_seconds == 1440 * 60
        assert config.kafka.acks == "all"
        assert config.clusters == {}

    def test_missing_file_uses_defaults(self, tmp_path):
        config = ReplayConfig.load_config(tmp_path / "absent.yaml")
        assert config == ReplayConfig()

    @pytest.mark.parametrize(
        "field, value",
        [
            ("batch_size", 0),
            ("max_concurrent_jobs", 0),
            ("poll_interval_seconds", 0),
            ("max_messages_per_job", 0),
        ],
    )
    def test_invalid_values_rejected(self, field, value):
        with pytest.raises(ValueError):
            ReplayConfig(**{field: value})


class TestYamlAndEnv:
    def test_yaml_sections(self, tmp_path):
        path = write_yaml(
            tmp_path,
            """
replay:
  batch_size: 200
  max_concurrent_jobs: 2
kafka:
  acks: "1"
  compression_type: gzip
clusters:
  prod-eu:
    bootstrap_servers: broker-1:9092
    security_protocol: SASL_SSL
    sasl_mechanism: PLAIN
    sasl_plain_username: replay
    sasl_plain_password: secret
""",
        )
        config = ReplayConfig.load_config(path)

        assert config.batch_size == 200
        assert config.max_concurrent_jobs == 2
        assert config.kafka.acks == "1"
        assert config.kafka.compression_type == "gzip"
        cluster = config.clusters["prod-eu"]
        assert cluster.bootstrap_servers == "broker-1:9092"
        assert cluster.client_kwargs()["sasl_plain_username"] == "replay"

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        path = write_yaml(tmp_path, "replay:\n  batch_size: 200\n")
        monkeypatch.setenv("REPLAY_BATCH_SIZE", "50")
        monkeypatch.setenv("REPLAY_POLL_INTERVAL_SECONDS", "0.5")
        monkeypatch.setenv("KAFKA_PRODUCER_LINGER_MS", "20")

        config = ReplayConfig.load_config(path)

        assert config.batch_size == 50
        assert config.poll_interval_seconds == 0.5
        assert config.kafka.linger_ms == 20

    def test_bootstrap_servers_env_registers_cluster(self, monkeypatch):
        monkeypatch.setenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
        monkeypatch.setenv("REPLAY_DEFAULT_CLUSTER_ID", "local")

        config = ReplayConfig.from_env()

        assert config.clusters["local"].bootstrap_servers == "localhost:9092"
        assert config.clusters["local"].security_protocol == "PLAINTEXT"

    def test_invalid_env_value(self, monkeypatch):
        monkeypatch.setenv("REPLAY_BATCH_SIZE", "lots")
        with pytest.raises(ValueError):
            ReplayConfig.from_env()

    def test_idempotence_flag(self, monkeypatch):
        monkeypatch.setenv("KAFKA_ENABLE_IDEMPOTENCE", "true")
        assert KafkaClientConfig.load_config().enable_idempotence is True


class TestConnections:
    def test_fingerprint_tracks_parameters(self):
        a = ClusterConnection(cluster_id="c", bootstrap_servers="b1:9092")
        b = ClusterConnection(cluster_id="c", bootstrap_servers="b1:9092")
        c = ClusterConnection(cluster_id="c", bootstrap_servers="b2:9092")
        assert a.fingerprint == b.fingerprint
        assert a.fingerprint != c.fingerprint

    def test_client_kwargs_without_sasl(self):
        kwargs = ClusterConnection(cluster_id="c", bootstrap_servers="b:9092").client_kwargs()
        assert kwargs == {
            "bootstrap_servers": "b:9092",
            "security_protocol": "PLAINTEXT",
            "client_id": "kafka-replay",
        }

    @pytest.mark.asyncio
    async def test_unknown_cluster_is_fatal(self):
        provider = StaticConnectionProvider()
        with pytest.raises(FatalReplayError, match="Unknown cluster"):
            await provider.get_connection("missing")

    @pytest.mark.asyncio
    async def test_register_replaces_connection(self):
        provider = StaticConnectionProvider()
        provider.register(ClusterConnection(cluster_id="c", bootstrap_servers="b1:9092"))
        provider.register(ClusterConnection(cluster_id="c", bootstrap_servers="b2:9092"))
        connection = await provider.get_connection("c")
        assert connection.bootstrap_servers == "b2:9092"
        assert provider.cluster_ids == ["c"]

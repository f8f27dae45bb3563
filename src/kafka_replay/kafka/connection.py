"""
Cluster connection parameters and the static, config-driven provider.
"""

import hashlib
import json
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional

from kafka_replay.common.exceptions import FatalReplayError


@dataclass(frozen=True)
class ClusterConnection:
    """Connection parameters for one Kafka cluster.

    The fingerprint changes whenever any parameter changes, which is how the
    producer pool notices that a cached producer was built from stale
    settings.
    """

    cluster_id: str
    bootstrap_servers: str
    security_protocol: str = "PLAINTEXT"
    sasl_mechanism: Optional[str] = None
    sasl_plain_username: Optional[str] = None
    sasl_plain_password: Optional[str] = None
    client_id: str = "kafka-replay"

    @property
    def fingerprint(self) -> str:
        canonical = json.dumps(asdict(self), sort_keys=True)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def client_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments shared by aiokafka producers and consumers."""
        kwargs: Dict[str, Any] = {
            "bootstrap_servers": self.bootstrap_servers,
            "security_protocol": self.security_protocol,
            "client_id": self.client_id,
        }
        if self.sasl_mechanism:
            kwargs["sasl_mechanism"] = self.sasl_mechanism
        if self.sasl_mechanism == "PLAIN":
            kwargs["sasl_plain_username"] = self.sasl_plain_username
            kwargs["sasl_plain_password"] = self.sasl_plain_password
        return kwargs

    @classmethod
    def from_dict(cls, cluster_id: str, data: Mapping[str, Any]) -> "ClusterConnection":
        return cls(
            cluster_id=cluster_id,
            bootstrap_servers=data["bootstrap_servers"],
            security_protocol=data.get("security_protocol", "PLAINTEXT"),
            sasl_mechanism=data.get("sasl_mechanism"),
            sasl_plain_username=data.get("sasl_plain_username"),
            sasl_plain_password=data.get("sasl_plain_password"),
            client_id=data.get("client_id", "kafka-replay"),
        )


class StaticConnectionProvider:
    """Serves connections from an in-process mapping (config.yaml ``clusters:``).

    ``register`` replaces a cluster's parameters at runtime. Pooled producers
    built from the old parameters are rebuilt on next use.
    """

    def __init__(self, connections: Optional[Mapping[str, ClusterConnection]] = None):
        self._connections: Dict[str, ClusterConnection] = dict(connections or {})

    def register(self, connection: ClusterConnection) -> None:
        self._connections[connection.cluster_id] = connection

    async def get_connection(self, cluster_id: str) -> ClusterConnection:
        """
        Look up a cluster.

        Raises:
            FatalReplayError: If the cluster is unknown
        """
        connection = self._connections.get(cluster_id)
        if connection is None:
            raise FatalReplayError(
                f"Unknown cluster: {cluster_id}", context={"cluster_id": cluster_id}
            )
        return connection

    @property
    def cluster_ids(self) -> list:
        return sorted(self._connections)


__all__ = ["ClusterConnection", "StaticConnectionProvider"]

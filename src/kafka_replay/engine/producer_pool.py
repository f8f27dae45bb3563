"""
Pooled producer manager.

Keeps one producer per cluster, shared by every job that targets the
cluster. Producers are created on first use, rebuilt when the cluster's
connection parameters change, and closed after sitting idle.

Features:
- Per-cluster locks, so concurrent acquires create exactly one producer
- Leases, so a producer is never closed while a batch is using it
- Background reclamation of idle and stale producers
- Explicit start/stop lifecycle (no module-level singleton)
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, List, Optional

from kafka_replay.common.exceptions import ReplayError, ResourceExhaustionError
from kafka_replay.common.logging import LoggedClass
from kafka_replay.interfaces import ClientFactory, ConnectionConfigProvider, TargetWriter
from kafka_replay.metrics import record_producer_eviction, update_pool_size


@dataclass(eq=False)
class PooledProducer:
    """Pool entry. ``leases`` counts batches currently using the writer."""

    cluster_id: str
    writer: TargetWriter
    fingerprint: str
    last_used: float
    leases: int = 0
    retired: bool = False


class ProducerPool(LoggedClass):
    """
    Per-cluster producer cache with idle reclamation.

    Example:
        >>> pool = ProducerPool(provider, AIOKafkaClientFactory(kafka_config))
        >>> await pool.start()
        >>> async with pool.lease("prod-eu") as writer:
        ...     ack = await writer.produce("orders.replay", None, b"v", {})
        >>> await pool.stop()
    """

    def __init__(
        self,
        connections: ConnectionConfigProvider,
        factory: ClientFactory,
        idle_timeout_seconds: float = 1800,
        cleanup_interval_seconds: float = 600,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            connections: Source of cluster connection parameters
            factory: Builds started writers for a connection
            idle_timeout_seconds: Close producers unused for this long
            cleanup_interval_seconds: Period of the reclamation sweep
            clock: Monotonic clock (injectable for tests)
        """
        super().__init__()
        self._connections = connections
        self._factory = factory
        self.idle_timeout_seconds = idle_timeout_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._clock = clock

        self._entries: Dict[str, PooledProducer] = {}
        self._retired: List[PooledProducer] = []
        self._locks: Dict[str, asyncio.Lock] = {}
        self._shutdown_event = asyncio.Event()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._closed = False

    def _lock_for(self, cluster_id: str) -> asyncio.Lock:
        lock = self._locks.get(cluster_id)
        if lock is None:
            lock = self._locks[cluster_id] = asyncio.Lock()
        return lock

    async def acquire(self, cluster_id: str) -> TargetWriter:
        """
        Get the cluster's producer, creating or rebuilding it as needed.

        The pool owns the returned writer. Callers must not close it.

        Raises:
            ResourceExhaustionError: If the pool is stopped or the producer
                cannot be created (retryable)
            FatalReplayError: If the cluster is unknown
        """
        entry = await self._acquire_entry(cluster_id)
        return entry.writer

    async def _acquire_entry(self, cluster_id: str) -> PooledProducer:
        if self._closed:
            raise ResourceExhaustionError(
                "Producer pool is stopped", context={"cluster_id": cluster_id}
            )

        connection = await self._connections.get_connection(cluster_id)

        async with self._lock_for(cluster_id):
            entry = self._entries.get(cluster_id)
            if entry is not None and entry.fingerprint == connection.fingerprint:
                entry.last_used = self._clock()
                return entry

            if entry is not None:
                self._log(
                    logging.INFO,
                    "Connection parameters changed, rebuilding producer",
                    cluster_id=cluster_id,
                )
                del self._entries[cluster_id]
                await self._retire(entry, "stale")

            try:
                writer = await self._factory.create_writer(connection)
            except ReplayError:
                raise
            except Exception as e:
                raise ResourceExhaustionError(
                    f"Could not create producer for cluster {cluster_id}",
                    cause=e,
                    context={"cluster_id": cluster_id},
                ) from e

            entry = PooledProducer(
                cluster_id=cluster_id,
                writer=writer,
                fingerprint=connection.fingerprint,
                last_used=self._clock(),
            )
            self._entries[cluster_id] = entry
            update_pool_size(len(self._entries))
            self._log(logging.INFO, "Created pooled producer", cluster_id=cluster_id)
            return entry

    @asynccontextmanager
    async def lease(self, cluster_id: str) -> AsyncIterator[TargetWriter]:
        """Acquire a producer and keep it from being reclaimed while in use."""
        entry = await self._acquire_entry(cluster_id)
        entry.leases += 1
        try:
            yield entry.writer
        finally:
            entry.leases -= 1
            entry.last_used = self._clock()
            if entry.retired and entry.leases == 0:
                await self._close_entry(entry, "stale")

    def mark_used(self, cluster_id: str) -> None:
        """Refresh the idle timer of the cluster's producer."""
        entry = self._entries.get(cluster_id)
        if entry is not None:
            entry.last_used = self._clock()

    async def reclaim(self) -> int:
        """
        Close producers that are idle or built from stale parameters.

        Producers with active leases are skipped.

        Returns:
            Number of producers closed
        """
        now = self._clock()
        closed = 0

        for cluster_id in list(self._entries):
            async with self._lock_for(cluster_id):
                entry = self._entries.get(cluster_id)
                if entry is None or entry.leases > 0:
                    continue

                reason: Optional[str] = None
                if now - entry.last_used >= self.idle_timeout_seconds:
                    reason = "idle"
                else:
                    try:
                        connection = await self._connections.get_connection(cluster_id)
                    except ReplayError:
                        reason = "stale"
                    else:
                        if connection.fingerprint != entry.fingerprint:
                            reason = "stale"

                if reason is None:
                    continue

                del self._entries[cluster_id]
                self._log(
                    logging.INFO,
                    "Reclaiming pooled producer",
                    cluster_id=cluster_id,
                    idle_seconds=round(now - entry.last_used, 1),
                    reason=reason,
                )
                await self._close_entry(entry, reason)
                closed += 1

        update_pool_size(len(self._entries))
        return closed

    async def _retire(self, entry: PooledProducer, reason: str) -> None:
        if entry.leases > 0:
            # Closed when the last lease is released
            entry.retired = True
            self._retired.append(entry)
            return
        await self._close_entry(entry, reason)

    async def _close_entry(self, entry: PooledProducer, reason: str) -> None:
        if entry in self._retired:
            self._retired.remove(entry)
        try:
            await entry.writer.close()
        except Exception as e:
            self._log_exception(
                e,
                "Error closing pooled producer",
                level=logging.WARNING,
                cluster_id=entry.cluster_id,
            )
        record_producer_eviction(reason)

    async def _cleanup_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.cleanup_interval_seconds,
                )
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.reclaim()
            except Exception as e:
                self._log_exception(e, "Producer pool reclamation failed")

    async def start(self) -> None:
        """Start the background reclamation loop."""
        if self._cleanup_task is not None:
            return
        self._closed = False
        self._shutdown_event.clear()
        self._cleanup_task = asyncio.create_task(
            self._cleanup_loop(), name="producer-pool-cleanup"
        )
        self._log(
            logging.INFO,
            "Producer pool started",
            idle_seconds=self.idle_timeout_seconds,
        )

    async def stop(self) -> None:
        """Stop reclamation and close every producer."""
        self._closed = True
        self._shutdown_event.set()
        if self._cleanup_task is not None:
            await self._cleanup_task
            self._cleanup_task = None

        entries = list(self._entries.values()) + list(self._retired)
        self._entries.clear()
        self._retired.clear()
        for entry in entries:
            await self._close_entry(entry, "shutdown")
        update_pool_size(0)
        self._log(logging.INFO, "Producer pool stopped", pool_size=len(entries))

    @property
    def size(self) -> int:
        return len(self._entries)

    def has_producer(self, cluster_id: str) -> bool:
        return cluster_id in self._entries


__all__ = ["PooledProducer", "ProducerPool"]

"""
Pytest fixtures for replay engine unit tests.

The fakes live in ``fakes.py``; these fixtures wire them to the real engine
components.
"""

import pytest

from fakes import CLUSTER_ID, FakeClientFactory, FakeClock, FakeCluster
from kafka_replay.config import ReplayConfig
from kafka_replay.engine.producer_pool import ProducerPool
from kafka_replay.engine.service import ReplayEngine
from kafka_replay.engine.tracker import RetryTracker
from kafka_replay.kafka.connection import ClusterConnection, StaticConnectionProvider
from kafka_replay.store import InMemoryJobStore


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def factory(cluster: FakeCluster) -> FakeClientFactory:
    return FakeClientFactory(cluster)


@pytest.fixture
def provider() -> StaticConnectionProvider:
    return StaticConnectionProvider(
        {CLUSTER_ID: ClusterConnection(cluster_id=CLUSTER_ID, bootstrap_servers="localhost:9092")}
    )


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def config() -> ReplayConfig:
    return ReplayConfig(batch_size=10, max_concurrent_jobs=3, poll_interval_seconds=0.05)


@pytest.fixture
def tracker(store: InMemoryJobStore, clock: FakeClock) -> RetryTracker:
    return RetryTracker(store, clock=clock)


@pytest.fixture
def pool(provider: StaticConnectionProvider, factory: FakeClientFactory) -> ProducerPool:
    return ProducerPool(provider, factory)


@pytest.fixture
def engine(
    config: ReplayConfig,
    store: InMemoryJobStore,
    provider: StaticConnectionProvider,
    factory: FakeClientFactory,
    clock: FakeClock,
) -> ReplayEngine:
    return ReplayEngine(config, store, provider, factory, clock=clock)

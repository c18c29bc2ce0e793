"""
Global pytest configuration and fixtures.

Unit tests run against ``FakeRedis``. Fixtures that depend on ``client`` are
parametrized over both execution paths: ``pipeline`` (single node, MULTI/EXEC
batches) and ``cluster`` (sequential commands), so every operation test runs
twice.
"""

import os
import sys

import pytest
import structlog
from prometheus_client import CollectorRegistry

from src.cache.monitoring import CacheMetrics
from src.cache.store import RedisTagStore
from tests.fixtures.fake_redis import FakeClock, FakeRedis, FakeRedisCluster

# Keep configuration tests independent of a developer's shell
os.environ.setdefault('CACHE_ENV', 'testing')

PREFIX = 'cache:'
START_TIME = 1_700_000_000


@pytest.fixture(autouse=True)
def log_to_stderr():
    """Keep log lines off stdout so command output can be parsed."""
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(sys.stderr))
    yield
    structlog.reset_defaults()


@pytest.fixture
def clock():
    """Frozen clock; advance it explicitly to expire entries."""
    return FakeClock(START_TIME)


@pytest.fixture(params=['pipeline', 'cluster'])
def client(request, clock):
    """In-memory Redis for both execution paths."""
    if request.param == 'cluster':
        return FakeRedisCluster(clock=clock)
    return FakeRedis(clock=clock)


@pytest.fixture
def metrics():
    """Metrics bound to a private registry."""
    return CacheMetrics(registry=CollectorRegistry())


def make_store(client, clock, tag_mode, metrics=None, prefix=PREFIX):
    return RedisTagStore(
        client,
        prefix=prefix,
        tag_mode=tag_mode,
        cluster=client.is_cluster,
        clock=clock,
        metrics=metrics
    )


@pytest.fixture
def all_store(client, clock, metrics):
    """Intersection-mode store."""
    return make_store(client, clock, 'all', metrics)


@pytest.fixture
def any_store(client, clock, metrics):
    """Union-mode store."""
    return make_store(client, clock, 'any', metrics)


@pytest.fixture
def store_factory(client, clock):
    """Build extra stores (other prefix or mode) on the same backend."""
    def factory(tag_mode='all', prefix=PREFIX, metrics=None):
        return make_store(client, clock, tag_mode, metrics, prefix)
    return factory

"""
Shared test doubles.

``fake_redis`` provides the in-memory Redis used by the unit suite and the
controllable clock that drives its TTLs.
"""

from tests.fixtures.fake_redis import FakeClock, FakeRedis, FakeRedisCluster

__all__ = ['FakeClock', 'FakeRedis', 'FakeRedisCluster']

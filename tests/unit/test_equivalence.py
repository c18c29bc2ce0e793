"""
Pipelined and cluster-sequential execution must leave the same data behind.

Each scenario runs once against a single-node backend and once against a
cluster backend, then the two key spaces (values, key TTLs and hash field
TTLs) are compared.
"""

import pytest

from src.cache.store import RedisTagStore
from tests.fixtures.fake_redis import FakeClock, FakeRedis, FakeRedisCluster

START_TIME = 1_700_000_000


def snapshot(client):
    keys = client.keys()
    return {
        'data': {key: client._data[key] for key in keys},
        'expires': {key: client._expires[key] for key in keys if key in client._expires},
        'field_expires': {
            key: dict(fields) for key, fields in client._field_expires.items() if key in keys and fields
        },
    }


def run_on_both(tag_mode, scenario):
    """Run ``scenario(store, clock)`` on both backends; return the two snapshots and results."""
    outcomes = []
    for backend in (FakeRedis, FakeRedisCluster):
        clock = FakeClock(START_TIME)
        client = backend(clock=clock)
        store = RedisTagStore(client, prefix='cache:', tag_mode=tag_mode,
                              cluster=client.is_cluster, clock=clock)
        result = scenario(store, clock)
        outcomes.append((snapshot(client), result))
    return outcomes


def all_mode_scenario(store, clock):
    users = store.tags('users')
    feed = store.tags('users', 'posts')
    results = [
        users.put('profile', {'name': 'ada'}, 60),
        feed.put_many({'a': 1, 'b': 'two'}, 120),
        feed.forever('pinned', [1, 2]),
        users.add('profile', 'ignored', 60),
        store.tags('counters').increment('hits', 3),
        store.tags('counters').decrement('hits'),
        users.remember('lazy', 30, lambda: 'computed'),
    ]
    clock.advance(90)
    results.append(feed.flush_stale())
    results.append(store.tags('posts').flush())
    results.append(store.prune())
    return results


def any_mode_scenario(store, clock):
    results = [
        store.tags('a', 'b').put('k1', 'v1', 60),
        store.tags('b').put_many({'k2': 2, 'k3': 3}, 30),
        store.tags('a').forever('k4', 'v4'),
        store.tags('c').add('k5', 'v5', 45),
        store.tags('c').increment('n', 5),
        store.tags('a', 'c').put('k1', 'moved', 60),
        store.tags('b').remember_forever('k6', lambda: 'six'),
    ]
    clock.advance(40)
    results.append(store.tags('c').flush())
    store.forget('k4')
    results.append(store.prune())
    return results


class TestExecutionPathEquivalence:

    @pytest.mark.parametrize('tag_mode, scenario', [
        ('all', all_mode_scenario),
        ('any', any_mode_scenario),
    ])
    def test_same_final_state(self, tag_mode, scenario):
        (pipelined_state, pipelined_results), (cluster_state, cluster_results) = run_on_both(
            tag_mode, scenario
        )

        assert pipelined_state == cluster_state
        assert pipelined_results == cluster_results
        assert pipelined_state['data']

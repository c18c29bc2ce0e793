"""
Batch executor tests.

PipelineBatch must report a failed pipeline as a whole (None); SequentialBatch
must keep going and leave each failure in place of its result.
"""

from unittest.mock import MagicMock

import pytest
import redis

from src.cache.batch import PipelineBatch, SequentialBatch, completed, succeeded
from tests.fixtures.fake_redis import FakeRedis, FakeRedisCluster


class TestResultHelpers:

    @pytest.mark.parametrize('result, expected', [
        (True, True),
        (1, True),
        ('OK', True),
        (0, True),
        (None, False),
        (False, False),
        (redis.ResponseError('WRONGTYPE'), False),
    ])
    def test_succeeded(self, result, expected):
        assert succeeded(result) is expected

    def test_completed(self):
        assert completed([1, None, False]) is True
        assert completed([]) is True
        assert completed(None) is False
        assert completed([1, redis.ConnectionError('x')]) is False


class TestPipelineBatch:

    def test_queues_and_executes_in_one_round_trip(self):
        client = FakeRedis()
        batch = PipelineBatch(client, operation='put')

        batch.set('a', '1').zadd('t', {'a': -1})

        assert len(batch) == 2
        assert batch.execute() == [True, 1]
        assert client.pipelines == [['set', 'zadd']]

    def test_uses_transaction_by_default(self):
        client = MagicMock()
        PipelineBatch(client)
        client.pipeline.assert_called_once_with(transaction=True)

    def test_failed_pipeline_returns_none(self):
        client = MagicMock()
        client.pipeline.return_value.execute.side_effect = redis.ConnectionError('EXEC aborted')
        batch = PipelineBatch(client, operation='flush')
        batch.delete('a')

        assert batch.execute() is None

    def test_response_error_fails_whole_batch(self):
        client = FakeRedis()
        client.set('text', '"abc"')
        batch = PipelineBatch(client)
        batch.incrby('text', 1).set('b', '1')

        assert batch.execute() is None

    def test_unknown_command_fails_at_queue_time(self):
        batch = PipelineBatch(FakeRedis())
        with pytest.raises(AttributeError):
            batch.not_a_command('x')


class TestSequentialBatch:

    def test_runs_commands_in_order_without_pipeline(self):
        client = FakeRedisCluster()
        batch = SequentialBatch(client, operation='put')

        batch.set('a', '1').get('a').delete('a')

        assert len(batch) == 3
        assert batch.execute() == [True, '1', 1]
        assert client.command_names() == ['set', 'get', 'delete']
        assert client.pipelines == []

    def test_failure_is_kept_in_place_and_rest_still_runs(self):
        client = FakeRedisCluster()
        client.fail_commands.add('zadd')
        batch = SequentialBatch(client)

        batch.zadd('t', {'a': 1}).set('a', '1')
        results = batch.execute()

        assert isinstance(results[0], redis.ConnectionError)
        assert results[1] is True
        assert client.get('a') == '1'
        assert completed(results) is False

    def test_execute_drains_the_queue(self):
        client = FakeRedisCluster()
        batch = SequentialBatch(client)
        batch.set('a', '1')

        batch.execute()

        assert len(batch) == 0
        assert batch.execute() == []

    def test_unknown_command_fails_at_queue_time(self):
        batch = SequentialBatch(FakeRedisCluster())
        with pytest.raises(AttributeError):
            batch.not_a_command('x')

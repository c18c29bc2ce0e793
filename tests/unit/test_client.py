"""
Redis connection manager and store factory tests.

redis-py classes are patched in ``src.cache.client`` so no server is needed.
"""

import os
from unittest.mock import MagicMock, patch

import pytest
import redis

import src.cache.client as client_module
from src.cache.client import (
    RedisConnectionManager,
    close_tag_store,
    create_store,
    get_tag_store,
    init_tag_store,
)
from src.cache.exceptions import RedisConnectionError
from src.cache.store import RedisTagStore, TagMode
from src.config.cache import CacheConfig
from tests.fixtures.fake_redis import FakeRedis


def make_config(**env):
    values = {'CACHE_METRICS_ENABLED': 'false'}
    values.update(env)
    with patch.dict(os.environ, values, clear=True):
        return CacheConfig('testing')


@pytest.fixture
def no_retry_wait():
    """Skip tenacity's backoff sleeps for the PING validation."""
    with patch.object(
        RedisConnectionManager._validate_connection.retry, 'sleep', lambda _seconds: None
    ):
        yield


@pytest.fixture(autouse=True)
def reset_global_store():
    yield
    client_module._tag_store = None
    client_module._connection_manager = None


class TestSingleNodeConnection:

    @patch('src.cache.client.redis.Redis')
    @patch('src.cache.client.ConnectionPool')
    def test_pool_from_host_settings(self, mock_pool, mock_redis):
        config = make_config(REDIS_HOST='cache-host', REDIS_PASSWORD='pw')

        client = RedisConnectionManager(config).get_client()

        kwargs = mock_pool.call_args.kwargs
        assert kwargs['host'] == 'cache-host'
        assert kwargs['db'] == 15
        assert kwargs['password'] == 'pw'
        assert kwargs['decode_responses'] is True
        assert kwargs['max_connections'] == 10
        assert 'connection_class' not in kwargs
        mock_redis.assert_called_once_with(connection_pool=mock_pool.return_value)
        assert client is mock_redis.return_value
        client.ping.assert_called_once()

    @patch('src.cache.client.redis.Redis')
    @patch('src.cache.client.ConnectionPool')
    def test_ssl_uses_ssl_connection(self, mock_pool, mock_redis):
        RedisConnectionManager(make_config(REDIS_SSL='true')).get_client()

        assert mock_pool.call_args.kwargs['connection_class'] is redis.SSLConnection

    @patch('src.cache.client.redis.Redis')
    @patch('src.cache.client.ConnectionPool')
    def test_url_wins_over_host(self, mock_pool, mock_redis):
        RedisConnectionManager(make_config(REDIS_URL='redis://example:6390/2')).get_client()

        mock_pool.from_url.assert_called_once()
        assert mock_pool.from_url.call_args.args == ('redis://example:6390/2',)
        mock_pool.assert_not_called()

    @patch('src.cache.client.redis.Redis')
    @patch('src.cache.client.ConnectionPool')
    def test_client_is_created_once(self, mock_pool, mock_redis):
        manager = RedisConnectionManager(make_config())

        assert manager.get_client() is manager.get_client()
        mock_redis.assert_called_once()

    @patch('src.cache.client.redis.Redis')
    @patch('src.cache.client.ConnectionPool')
    def test_close_disconnects_pool(self, mock_pool, mock_redis):
        manager = RedisConnectionManager(make_config())
        client = manager.get_client()

        manager.close()

        client.close.assert_called_once()
        mock_pool.return_value.disconnect.assert_called_once()


class TestClusterConnection:

    @patch('src.cache.client.RedisCluster')
    def test_cluster_client_from_host(self, mock_cluster):
        manager = RedisConnectionManager(make_config(REDIS_CLUSTER='true', REDIS_HOST='node-1'))

        client = manager.get_client()

        assert manager.is_cluster is True
        kwargs = mock_cluster.call_args.kwargs
        assert kwargs['host'] == 'node-1'
        assert kwargs['decode_responses'] is True
        assert kwargs['max_connections'] == 10
        assert client is mock_cluster.return_value

    @patch('src.cache.client.RedisCluster')
    def test_cluster_client_from_url(self, mock_cluster):
        config = make_config(REDIS_CLUSTER='true', REDIS_URL='redis://node-1:7000')

        RedisConnectionManager(config).get_client()

        mock_cluster.from_url.assert_called_once()
        mock_cluster.assert_not_called()


class TestConnectionValidation:

    @patch('src.cache.client.redis.Redis')
    @patch('src.cache.client.ConnectionPool')
    def test_ping_is_retried(self, mock_pool, mock_redis, no_retry_wait):
        mock_redis.return_value.ping.side_effect = [redis.ConnectionError('starting'), True]

        RedisConnectionManager(make_config()).get_client()

        assert mock_redis.return_value.ping.call_count == 2

    @patch('src.cache.client.redis.Redis')
    @patch('src.cache.client.ConnectionPool')
    def test_unreachable_backend_raises(self, mock_pool, mock_redis, no_retry_wait):
        mock_redis.return_value.ping.side_effect = redis.ConnectionError('refused')
        manager = RedisConnectionManager(make_config())

        with pytest.raises(RedisConnectionError):
            manager.get_client()

        assert mock_redis.return_value.ping.call_count == 3
        mock_pool.return_value.disconnect.assert_called_once()

    @patch('src.cache.client.redis.Redis')
    @patch('src.cache.client.ConnectionPool')
    def test_response_error_is_not_retried(self, mock_pool, mock_redis):
        mock_redis.return_value.ping.side_effect = redis.ResponseError('NOAUTH')

        with pytest.raises(RedisConnectionError) as exc_info:
            RedisConnectionManager(make_config()).get_client()

        assert mock_redis.return_value.ping.call_count == 1
        assert exc_info.value.connection_info['db'] == 15


class TestCreateStore:

    def test_store_from_config(self):
        manager = MagicMock(spec=RedisConnectionManager)
        manager.get_client.return_value = FakeRedis()
        config = make_config(CACHE_PREFIX='app:', CACHE_TAG_MODE='any')

        store = create_store(config, connection_manager=manager)

        assert isinstance(store, RedisTagStore)
        assert store.get_prefix() == 'app:'
        assert store.tag_mode is TagMode.ANY
        assert store.context.metrics is None

    @patch('src.cache.client.get_cache_metrics')
    def test_metrics_enabled_uses_shared_metrics(self, mock_get_metrics):
        manager = MagicMock(spec=RedisConnectionManager)
        manager.get_client.return_value = FakeRedis()
        config = make_config(CACHE_METRICS_ENABLED='true')

        store = create_store(config, connection_manager=manager)

        assert store.context.metrics is mock_get_metrics.return_value


class TestGlobalStore:

    def test_get_before_init_raises(self):
        with pytest.raises(RuntimeError):
            get_tag_store()

    @patch('src.cache.client.redis.Redis')
    @patch('src.cache.client.ConnectionPool')
    def test_init_get_close(self, mock_pool, mock_redis):
        config = make_config()

        store = init_tag_store(config)

        assert get_tag_store() is store
        assert init_tag_store(config) is store

        close_tag_store()

        mock_pool.return_value.disconnect.assert_called_once()
        with pytest.raises(RuntimeError):
            get_tag_store()

    @patch('src.cache.client.redis.Redis')
    @patch('src.cache.client.ConnectionPool')
    def test_failed_init_leaves_no_store(self, mock_pool, mock_redis):
        mock_redis.return_value.ping.side_effect = redis.ResponseError('NOAUTH')

        with pytest.raises(RedisConnectionError):
            init_tag_store(make_config())

        with pytest.raises(RuntimeError):
            get_tag_store()

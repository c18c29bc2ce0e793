"""
Cache configuration tests.
"""

import os
from unittest.mock import patch

import pytest

import src.config.cache as cache_config_module
from src.cache.exceptions import CacheConfigurationError
from src.config.cache import (
    CacheConfig,
    create_cache_config,
    get_cache_config,
    init_cache_config,
)


@pytest.fixture(autouse=True)
def reset_global_config():
    original = cache_config_module._global_config
    cache_config_module._global_config = None
    yield
    cache_config_module._global_config = original


class TestDefaults:

    @patch.dict(os.environ, {}, clear=True)
    def test_development_defaults(self):
        config = CacheConfig()

        assert config.environment == 'development'
        assert config.redis_config['host'] == 'localhost'
        assert config.redis_config['port'] == 6379
        assert config.redis_config['db'] == 0
        assert config.redis_config['url'] is None
        assert config.redis_config['decode_responses'] is True
        assert config.cluster is False
        assert config.prefix == 'cache:'
        assert config.tag_mode == 'all'
        assert config.prune_scan_count == 1000
        assert config.metrics_enabled is True
        assert config.log_level == 'INFO'
        assert config.log_format == 'json'

    @patch.dict(os.environ, {'REDIS_MAX_CONNECTIONS': '100'}, clear=True)
    def test_development_caps_pool_size(self):
        assert CacheConfig().redis_pool_config['max_connections'] == 20

    @patch.dict(os.environ, {'FLASK_ENV': 'staging'}, clear=True)
    def test_flask_env_is_honoured(self):
        config = CacheConfig()

        assert config.environment == 'staging'
        assert config.redis_config['db'] == 1

    @patch.dict(os.environ, {'CACHE_ENV': 'testing', 'FLASK_ENV': 'production'}, clear=True)
    def test_cache_env_wins(self):
        config = CacheConfig()

        assert config.environment == 'testing'
        assert config.redis_config['db'] == 15
        assert config.redis_pool_config['max_connections'] == 10

    @patch.dict(os.environ, {'CACHE_ENV': 'testing'}, clear=True)
    def test_explicit_environment_wins(self):
        assert CacheConfig('production').environment == 'production'


class TestEnvironmentOverrides:

    @patch.dict(os.environ, {
        'REDIS_HOST': 'redis.internal',
        'REDIS_PORT': '6380',
        'REDIS_PASSWORD': 'secret',
        'REDIS_SSL': 'true',
        'REDIS_CLUSTER': 'yes',
        'CACHE_PREFIX': 'app:',
        'CACHE_TAG_MODE': ' ANY ',
        'CACHE_PRUNE_SCAN_COUNT': '250',
        'CACHE_METRICS_ENABLED': 'false',
        'LOG_FORMAT': 'Console',
    }, clear=True)
    def test_values_are_read(self):
        config = CacheConfig('production')

        assert config.redis_config['host'] == 'redis.internal'
        assert config.redis_config['port'] == 6380
        assert config.redis_config['ssl'] is True
        assert config.cluster is True
        assert config.prefix == 'app:'
        assert config.tag_mode == 'any'
        assert config.prune_scan_count == 250
        assert config.metrics_enabled is False
        assert config.log_format == 'console'

    @patch.dict(os.environ, {'REDIS_TEST_HOST': 'test-redis', 'REDIS_TEST_DB': '3'}, clear=True)
    def test_testing_overrides(self):
        config = CacheConfig('testing')

        assert config.redis_config['host'] == 'test-redis'
        assert config.redis_config['db'] == 3

    @patch.dict(os.environ, {'REDIS_PASSWORD': 'secret', 'REDIS_CLUSTER': 'true'}, clear=True)
    def test_connection_info_has_no_credentials(self):
        info = CacheConfig().connection_info()

        assert 'password' not in info
        assert info['cluster'] is True
        assert info['max_connections'] == 20


class TestValidation:

    @patch.dict(os.environ, {'CACHE_TAG_MODE': 'both'}, clear=True)
    def test_invalid_tag_mode(self):
        with pytest.raises(CacheConfigurationError) as exc_info:
            CacheConfig()

        assert exc_info.value.setting == 'CACHE_TAG_MODE'

    @patch.dict(os.environ, {'REDIS_PORT': 'not-a-port'}, clear=True)
    def test_invalid_port(self):
        with pytest.raises(CacheConfigurationError) as exc_info:
            CacheConfig()

        assert exc_info.value.setting == 'REDIS_PORT'

    @patch.dict(os.environ, {'REDIS_SOCKET_TIMEOUT': 'soon'}, clear=True)
    def test_invalid_timeout(self):
        with pytest.raises(CacheConfigurationError):
            CacheConfig()

    @patch.dict(os.environ, {'CACHE_PRUNE_SCAN_COUNT': '0'}, clear=True)
    def test_scan_count_must_be_positive(self):
        with pytest.raises(CacheConfigurationError):
            CacheConfig()

    @patch.dict(os.environ, {}, clear=True)
    def test_unknown_environment(self):
        with pytest.raises(CacheConfigurationError):
            CacheConfig('qa')


class TestGlobalConfig:

    def test_get_before_init_raises(self):
        with pytest.raises(RuntimeError):
            get_cache_config()

    @patch.dict(os.environ, {}, clear=True)
    def test_init_and_get(self):
        config = init_cache_config('testing')

        assert get_cache_config() is config
        assert config.environment == 'testing'

    @patch.dict(os.environ, {}, clear=True)
    def test_create_returns_new_instances(self):
        assert create_cache_config() is not create_cache_config()

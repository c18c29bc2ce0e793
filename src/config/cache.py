"""
Tagged cache configuration.

Settings are read from environment variables (a ``.env`` file is loaded
first through python-dotenv) with environment-specific overrides for
testing, staging and production. The resulting ``CacheConfig`` carries the
Redis connection settings, the connection pool settings, and the store
settings (key prefix, tag mode, prune batch size, metrics switch).

Environment variables:
    CACHE_ENV / FLASK_ENV          deployment environment (default development)
    REDIS_URL                      connection URL, wins over host/port/db
    REDIS_HOST, REDIS_PORT, REDIS_DB, REDIS_USERNAME, REDIS_PASSWORD
    REDIS_SSL                      true to enable TLS
    REDIS_CLUSTER                  true to connect with RedisCluster
    REDIS_MAX_CONNECTIONS, REDIS_SOCKET_TIMEOUT,
    REDIS_SOCKET_CONNECT_TIMEOUT, REDIS_HEALTH_CHECK_INTERVAL
    CACHE_PREFIX                   key prefix (default ``cache:``)
    CACHE_TAG_MODE                 all | any (default all)
    CACHE_PRUNE_SCAN_COUNT         SCAN/ZSCAN/HSCAN page size for prune
    CACHE_METRICS_ENABLED          true to collect Prometheus metrics
    LOG_LEVEL, LOG_FORMAT          logging setup (json | console)
"""

import os
from threading import Lock
from typing import Any, Dict, Optional

import structlog
from dotenv import load_dotenv

from src.cache.exceptions import CacheConfigurationError

# Load environment variables
load_dotenv()

logger = structlog.get_logger(__name__)

ENVIRONMENTS = ('development', 'testing', 'staging', 'production')
TAG_MODES = ('all', 'any')


def _env_bool(name: str, default: str = 'false') -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: str) -> int:
    value = os.getenv(name, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise CacheConfigurationError(
            message=f"{name} must be an integer, got {value!r}",
            setting=name,
            value=value
        )


def _env_float(name: str, default: str) -> float:
    value = os.getenv(name, default)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise CacheConfigurationError(
            message=f"{name} must be a number, got {value!r}",
            setting=name,
            value=value
        )


class CacheConfig:
    """
    Redis and tagged cache configuration for one deployment environment.
    """

    def __init__(self, environment: Optional[str] = None):
        """
        Initialize cache configuration for the specified environment.

        Args:
            environment: Target environment (development, testing, staging, production)
        """
        self.environment = (
            environment or os.getenv('CACHE_ENV') or os.getenv('FLASK_ENV', 'development')
        )
        if self.environment not in ENVIRONMENTS:
            raise CacheConfigurationError(
                message=f"Unknown environment {self.environment!r}",
                setting='CACHE_ENV',
                value=self.environment
            )

        self._load_environment_config()

        logger.info(
            "Cache configuration initialized",
            environment=self.environment,
            redis_host=self.redis_config.get('host'),
            cluster=self.cluster,
            tag_mode=self.tag_mode,
            prefix=self.prefix
        )

    def _load_environment_config(self):
        """Load environment-specific settings."""
        self.redis_config = self._get_redis_config()
        self.redis_pool_config = self._get_connection_pool_config()
        self.cluster = _env_bool('REDIS_CLUSTER')

        self.prefix = os.getenv('CACHE_PREFIX', 'cache:')
        self.tag_mode = os.getenv('CACHE_TAG_MODE', 'all').strip().lower()
        if self.tag_mode not in TAG_MODES:
            raise CacheConfigurationError(
                message=f"CACHE_TAG_MODE must be one of {', '.join(TAG_MODES)}",
                setting='CACHE_TAG_MODE',
                value=self.tag_mode
            )

        self.prune_scan_count = _env_int('CACHE_PRUNE_SCAN_COUNT', '1000')
        if self.prune_scan_count < 1:
            raise CacheConfigurationError(
                message="CACHE_PRUNE_SCAN_COUNT must be positive",
                setting='CACHE_PRUNE_SCAN_COUNT',
                value=self.prune_scan_count
            )

        self.metrics_enabled = _env_bool('CACHE_METRICS_ENABLED', 'true')
        self.log_level = os.getenv('LOG_LEVEL', 'INFO').upper()
        self.log_format = os.getenv('LOG_FORMAT', 'json').lower()

    def _get_redis_config(self) -> Dict[str, Any]:
        """
        Get Redis connection configuration.

        Returns:
            Redis configuration dictionary with connection parameters
        """
        config = {
            'url': os.getenv('REDIS_URL'),
            'host': os.getenv('REDIS_HOST', 'localhost'),
            'port': _env_int('REDIS_PORT', '6379'),
            'db': _env_int('REDIS_DB', '0'),
            'username': os.getenv('REDIS_USERNAME'),
            'password': os.getenv('REDIS_PASSWORD'),
            'ssl': _env_bool('REDIS_SSL'),
            'decode_responses': True,
        }

        # Environment-specific overrides
        if self.environment == 'testing':
            config.update({
                'host': os.getenv('REDIS_TEST_HOST', config['host']),
                'port': _env_int('REDIS_TEST_PORT', str(config['port'])),
                'db': _env_int('REDIS_TEST_DB', '15')
            })
        elif self.environment == 'staging':
            config.update({
                'host': os.getenv('REDIS_STAGING_HOST', config['host']),
                'port': _env_int('REDIS_STAGING_PORT', str(config['port'])),
                'db': _env_int('REDIS_STAGING_DB', '1')
            })
        elif self.environment == 'production':
            config.update({
                'host': os.getenv('REDIS_PRODUCTION_HOST', config['host']),
                'port': _env_int('REDIS_PRODUCTION_PORT', str(config['port'])),
                'db': _env_int('REDIS_PRODUCTION_DB', str(config['db']))
            })

        return config

    def _get_connection_pool_config(self) -> Dict[str, Any]:
        config = {
            'max_connections': _env_int('REDIS_MAX_CONNECTIONS', '50'),
            'socket_timeout': _env_float('REDIS_SOCKET_TIMEOUT', '30.0'),
            'socket_connect_timeout': _env_float('REDIS_SOCKET_CONNECT_TIMEOUT', '10.0'),
            'retry_on_timeout': _env_bool('REDIS_RETRY_ON_TIMEOUT', 'true'),
            'health_check_interval': _env_int('REDIS_HEALTH_CHECK_INTERVAL', '30'),
        }

        if self.environment == 'testing':
            config['max_connections'] = 10
        elif self.environment == 'development':
            config['max_connections'] = min(config['max_connections'], 20)

        return config

    def connection_info(self) -> Dict[str, Any]:
        """Connection details safe to log (no credentials)."""
        return {
            'host': self.redis_config['host'],
            'port': self.redis_config['port'],
            'db': self.redis_config['db'],
            'ssl': self.redis_config['ssl'],
            'cluster': self.cluster,
            'max_connections': self.redis_pool_config['max_connections'],
        }


def create_cache_config(environment: Optional[str] = None) -> CacheConfig:
    """Factory function for ``CacheConfig``."""
    return CacheConfig(environment)


_global_config: Optional[CacheConfig] = None
_config_lock = Lock()


def init_cache_config(environment: Optional[str] = None) -> CacheConfig:
    """
    Initialize global cache configuration.

    Args:
        environment: Target environment name
    """
    global _global_config

    with _config_lock:
        _global_config = create_cache_config(environment)
        return _global_config


def get_cache_config() -> CacheConfig:
    """
    Get global cache configuration instance.

    Raises:
        RuntimeError: If configuration not initialized
    """
    if _global_config is None:
        raise RuntimeError("Cache configuration not initialized. Call init_cache_config() first.")
    return _global_config


__all__ = [
    'CacheConfig',
    'create_cache_config',
    'init_cache_config',
    'get_cache_config',
]

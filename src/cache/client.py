"""
Redis connection management for the tagged cache.

``RedisConnectionManager`` turns a ``CacheConfig`` into a ready redis-py
client: a ``redis.Redis`` over a ``ConnectionPool`` for a single node, or a
``redis.cluster.RedisCluster`` when ``REDIS_CLUSTER`` is set. Both are created
with ``decode_responses=True``. The first ``PING`` is retried with tenacity
exponential backoff so a store can be created while Redis is still starting.

``create_store`` wires configuration, connection and metrics into a
``RedisTagStore``; ``init_tag_store`` / ``get_tag_store`` / ``close_tag_store``
keep one process-wide store.
"""

import time
from threading import Lock, RLock
from typing import Any, Dict, Optional, Union

import redis
import structlog
from redis.cluster import RedisCluster
from redis.connection import ConnectionPool
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.cache.exceptions import CacheError, RedisConnectionError, handle_redis_exception
from src.cache.monitoring import CacheMetrics, get_cache_metrics
from src.cache.store import RedisTagStore, create_tag_store
from src.config.cache import CacheConfig, get_cache_config

logger = structlog.get_logger(__name__)

RedisClientType = Union[redis.Redis, RedisCluster]


class RedisConnectionManager:
    """
    Owns the connection pool and client built from one ``CacheConfig``.

    The client is created lazily by ``get_client()`` (or eagerly by
    ``initialize()``) and validated with ``PING`` before it is handed out.
    """

    def __init__(self, config: Optional[CacheConfig] = None):
        """
        Initialize Redis connection manager with configuration.

        Args:
            config: Cache configuration instance (defaults to global config)
        """
        self._config = config or get_cache_config()
        self._client: Optional[RedisClientType] = None
        self._pool: Optional[ConnectionPool] = None
        self._lock = RLock()
        self._initialized = False

    @property
    def is_cluster(self) -> bool:
        return self._config.cluster

    def initialize(self):
        """
        Create the pool and client and validate the connection.

        Raises:
            RedisConnectionError: If Redis cannot be reached after retries
        """
        with self._lock:
            if self._initialized:
                logger.warning("RedisConnectionManager already initialized")
                return

            try:
                if self._config.cluster:
                    self._initialize_cluster_client()
                else:
                    self._initialize_connection_pool()
                    self._initialize_client()
                self._validate_connection()
            except redis.RedisError as e:
                self._discard()
                error = handle_redis_exception(e, 'connect')
                if isinstance(error, RedisConnectionError):
                    raise error from e
                raise RedisConnectionError(
                    message=f"Failed to initialize Redis client: {str(e)}",
                    redis_error=e,
                    connection_info=self._get_connection_info()
                ) from e

            self._initialized = True

            logger.info(
                "Redis client initialized successfully",
                **self._config.connection_info()
            )

    def _initialize_connection_pool(self):
        """
        Build the single-node connection pool from ``REDIS_URL`` or host/port.
        """
        redis_config = self._config.redis_config
        pool_config = self._config.redis_pool_config.copy()

        if redis_config.get('url'):
            self._pool = ConnectionPool.from_url(
                redis_config['url'],
                decode_responses=True,
                **pool_config
            )
        else:
            connection_kwargs: Dict[str, Any] = {
                'host': redis_config['host'],
                'port': redis_config['port'],
                'db': redis_config['db'],
                'username': redis_config.get('username'),
                'password': redis_config.get('password'),
                'decode_responses': True,
            }
            if redis_config.get('ssl'):
                connection_kwargs['connection_class'] = redis.SSLConnection
            self._pool = ConnectionPool(**connection_kwargs, **pool_config)

        logger.info(
            "Redis connection pool initialized",
            max_connections=pool_config['max_connections'],
            socket_timeout=pool_config['socket_timeout'],
            socket_connect_timeout=pool_config['socket_connect_timeout'],
            **{k: v for k, v in self._get_connection_info().items() if k != 'max_connections'}
        )

    def _initialize_client(self):
        self._client = redis.Redis(connection_pool=self._pool)

    def _initialize_cluster_client(self):
        """
        Build a ``RedisCluster`` client; it keeps one pool per node itself.
        """
        redis_config = self._config.redis_config
        pool_config = self._config.redis_pool_config

        cluster_kwargs: Dict[str, Any] = {
            'decode_responses': True,
            'max_connections': pool_config['max_connections'],
            'socket_timeout': pool_config['socket_timeout'],
            'socket_connect_timeout': pool_config['socket_connect_timeout'],
        }

        if redis_config.get('url'):
            self._client = RedisCluster.from_url(redis_config['url'], **cluster_kwargs)
        else:
            self._client = RedisCluster(
                host=redis_config['host'],
                port=redis_config['port'],
                username=redis_config.get('username'),
                password=redis_config.get('password'),
                ssl=redis_config.get('ssl', False),
                **cluster_kwargs
            )

        logger.info("Redis cluster client initialized", **self._get_connection_info())

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((redis.ConnectionError, redis.TimeoutError)),
        reraise=True
    )
    def _validate_connection(self):
        """
        Validate the connection with ``PING``; connection errors are retried.
        """
        start_time = time.perf_counter()
        if not self._client.ping():
            raise redis.ConnectionError("Redis PING returned a falsy reply")

        logger.info(
            "Redis connection validated successfully",
            connection_time=time.perf_counter() - start_time
        )

    def _get_connection_info(self) -> Dict[str, Any]:
        """
        Get connection information for error reporting and monitoring.

        Returns:
            Dictionary containing sanitized connection information
        """
        return self._config.connection_info()

    def get_client(self) -> RedisClientType:
        """
        Get the Redis client, initializing it on first use.

        Raises:
            RedisConnectionError: If client initialization fails
        """
        if not self._initialized:
            self.initialize()

        if self._client is None:
            raise RedisConnectionError(
                message="Redis client not initialized",
                connection_info=self._get_connection_info()
            )

        return self._client

    def _discard(self):
        if self._client is not None:
            self._client.close()
            self._client = None
        if self._pool is not None:
            self._pool.disconnect()
            self._pool = None

    def close(self):
        """
        Close Redis connections and clean up resources.
        """
        with self._lock:
            try:
                self._discard()
            except redis.RedisError as e:
                logger.error("Error closing Redis connection manager", error=str(e))
            self._initialized = False
            logger.info("Redis connection manager closed")


def create_store(
    config: Optional[CacheConfig] = None,
    metrics: Optional[CacheMetrics] = None,
    connection_manager: Optional[RedisConnectionManager] = None
) -> RedisTagStore:
    """
    Build a ``RedisTagStore`` from configuration.

    Args:
        config: Cache configuration (defaults to global config)
        metrics: Metrics sink; the process-wide instance is used when metrics
            are enabled in configuration and none is given
        connection_manager: Existing manager to take the client from

    Returns:
        RedisTagStore: Store with a validated client
    """
    if config is None:
        config = get_cache_config()

    if connection_manager is None:
        connection_manager = RedisConnectionManager(config)

    if metrics is None and config.metrics_enabled:
        metrics = get_cache_metrics()

    return create_tag_store(
        connection_manager.get_client(),
        prefix=config.prefix,
        tag_mode=config.tag_mode,
        metrics=metrics
    )


# Process-wide store
_tag_store: Optional[RedisTagStore] = None
_connection_manager: Optional[RedisConnectionManager] = None
_store_lock = Lock()


def init_tag_store(
    config: Optional[CacheConfig] = None,
    metrics: Optional[CacheMetrics] = None
) -> RedisTagStore:
    """
    Initialize the process-wide store; returns the existing one if present.
    """
    global _tag_store, _connection_manager

    with _store_lock:
        if _tag_store is not None:
            logger.warning("Tag store already initialized, returning existing instance")
            return _tag_store

        manager = RedisConnectionManager(config)
        try:
            store = create_store(config, metrics, connection_manager=manager)
        except CacheError:
            manager.close()
            raise

        _connection_manager = manager
        _tag_store = store
        return _tag_store


def get_tag_store() -> RedisTagStore:
    """
    Get the process-wide store.

    Raises:
        RuntimeError: If the store has not been initialized
    """
    if _tag_store is None:
        raise RuntimeError("Tag store not initialized. Call init_tag_store() first.")
    return _tag_store


def close_tag_store():
    """Close the process-wide store's connections."""
    global _tag_store, _connection_manager

    with _store_lock:
        if _connection_manager is not None:
            _connection_manager.close()
        _connection_manager = None
        _tag_store = None


__all__ = [
    'RedisConnectionManager',
    'create_store',
    'init_tag_store',
    'get_tag_store',
    'close_tag_store',
]

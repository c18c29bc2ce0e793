"""
Redis cache store with tag support.

``RedisTagStore`` owns the key prefix and the Redis client. Plain calls
(``get``, ``put``, ``forget`` ...) touch only ``{prefix}{key}``; ``tags()``
returns an all-mode or any-mode tagged cache depending on the store's tag
mode, and those delegate to the operation objects built on the shared
``StoreContext``.
"""

import time
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Union

import redis
import structlog

from src.cache.batch import succeeded
from src.cache.context import StoreContext
from src.cache.exceptions import CacheKeyError
from src.cache.monitoring import monitor_cache_operation
from src.cache.operations.all_tag import AllTagOperations
from src.cache.operations.any_tag import AnyTagOperations
from src.cache.serialization import deserialize, serialize
from src.cache.tag_set import AllTagSet, AnyTagSet
from src.cache.tagged import AllTaggedCache, AnyTaggedCache

logger = structlog.get_logger(__name__)


class TagMode(Enum):
    """How tags relate to the keys written under them."""

    ALL = 'all'
    ANY = 'any'

    @classmethod
    def from_config(cls, value: Union['TagMode', str, None]) -> 'TagMode':
        """Resolve a configured mode; unknown values fall back to ``ALL``."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            logger.warning("Unknown tag mode, falling back to all", tag_mode=value)
            return cls.ALL


def _validate_key(key: Any) -> str:
    if not key or not isinstance(key, str):
        raise CacheKeyError(message=f"Invalid cache key: {key!r}", key=key)
    return key


class RedisTagStore:
    """
    Cache store over a redis-py client.

    Args:
        client: ``redis.Redis`` or ``redis.cluster.RedisCluster`` created with
            ``decode_responses=True``
        prefix: Key prefix including its separator, e.g. ``"cache:"``
        tag_mode: ``TagMode`` or its string value
        cluster: Force cluster execution; detected from the client when None
        clock: Current Unix time provider
        metrics: Optional ``CacheMetrics``
    """

    def __init__(
        self,
        client: Any,
        prefix: str = '',
        tag_mode: Union[TagMode, str] = TagMode.ALL,
        cluster: Optional[bool] = None,
        clock: Callable[[], float] = time.time,
        metrics: Optional[Any] = None
    ):
        self._client = client
        self._prefix = prefix or ''
        self._tag_mode = TagMode.from_config(tag_mode)
        self._cluster = cluster
        self._clock = clock
        self._metrics = metrics
        self._clear_cached_instances()

    def _clear_cached_instances(self):
        self._context: Optional[StoreContext] = None
        self._all_tag_operations: Optional[AllTagOperations] = None
        self._any_tag_operations: Optional[AnyTagOperations] = None

    @property
    def context(self) -> StoreContext:
        if self._context is None:
            self._context = StoreContext(
                self._client,
                prefix=self._prefix,
                cluster=self._cluster,
                clock=self._clock,
                metrics=self._metrics
            )
        return self._context

    @property
    def client(self) -> Any:
        return self._client

    def set_client(self, client: Any, cluster: Optional[bool] = None) -> 'RedisTagStore':
        self._client = client
        self._cluster = cluster
        self._clear_cached_instances()
        return self

    def get_prefix(self) -> str:
        return self._prefix

    def set_prefix(self, prefix: str) -> 'RedisTagStore':
        self._prefix = prefix or ''
        self._clear_cached_instances()
        return self

    @property
    def tag_mode(self) -> TagMode:
        return self._tag_mode

    def set_tag_mode(self, mode: Union[TagMode, str]) -> 'RedisTagStore':
        self._tag_mode = TagMode.from_config(mode)
        self._clear_cached_instances()
        return self

    def all_tag_ops(self) -> AllTagOperations:
        if self._all_tag_operations is None:
            self._all_tag_operations = AllTagOperations(self.context)
        return self._all_tag_operations

    def any_tag_ops(self) -> AnyTagOperations:
        if self._any_tag_operations is None:
            self._any_tag_operations = AnyTagOperations(self.context)
        return self._any_tag_operations

    def tags(self, *names: Union[str, Iterable[str]]) -> Union[AllTaggedCache, AnyTaggedCache]:
        """
        Return a tagged cache for the given tag names.

        Accepts ``tags('a', 'b')`` or ``tags(['a', 'b'])``.
        """
        if len(names) == 1 and not isinstance(names[0], str):
            names = tuple(names[0])
        names = [str(name) for name in names]

        if self._tag_mode is TagMode.ANY:
            return AnyTaggedCache(self, AnyTagSet(self, names))
        return AllTaggedCache(self, AllTagSet(self, names))

    def prune(self, scan_count: int = 1000) -> Dict[str, int]:
        """Run the reconciliation sweep for the store's tag mode."""
        if self._tag_mode is TagMode.ANY:
            return self.any_tag_ops().prune().execute(scan_count)
        return self.all_tag_ops().prune().execute(scan_count)

    # Plain key operations

    @monitor_cache_operation('get', tag_mode='none')
    def get(self, key: str) -> Any:
        _validate_key(key)
        try:
            return deserialize(self._client.get(self.context.key(key)))
        except redis.RedisError as e:
            logger.warning("Cache get failed, treating as miss", key=key, error=str(e))
            return None

    @monitor_cache_operation('many', tag_mode='none')
    def many(self, keys: Iterable[str]) -> Dict[str, Any]:
        keys = [_validate_key(key) for key in keys]
        if not keys:
            return {}

        prefixed = [self.context.key(key) for key in keys]
        if self.context.is_cluster():
            batch = self.context.batch('many')
            for full_key in prefixed:
                batch.get(full_key)
            values = batch.execute()
        else:
            try:
                values = self._client.mget(prefixed)
            except redis.RedisError as e:
                logger.warning("Cache many failed, treating as miss", keys=len(keys), error=str(e))
                values = None

        if values is None:
            return {key: None for key in keys}

        return {
            key: None if isinstance(raw, Exception) else deserialize(raw)
            for key, raw in zip(keys, values)
        }

    @monitor_cache_operation('put', tag_mode='none')
    def put(self, key: str, value: Any, seconds: int) -> bool:
        _validate_key(key)
        try:
            return bool(self._client.setex(self.context.key(key), max(1, int(seconds)), serialize(value)))
        except redis.RedisError as e:
            logger.warning("Cache put failed", key=key, error=str(e))
            return False

    @monitor_cache_operation('put_many', tag_mode='none')
    def put_many(self, values: Dict[str, Any], seconds: int) -> bool:
        if not values:
            return True

        ttl = max(1, int(seconds))
        batch = self.context.batch('put_many')
        for key, value in values.items():
            batch.setex(self.context.key(_validate_key(key)), ttl, serialize(value))

        results = batch.execute()
        return results is not None and all(succeeded(result) for result in results)

    @monitor_cache_operation('add', tag_mode='none')
    def add(self, key: str, value: Any, seconds: int) -> bool:
        _validate_key(key)
        try:
            return bool(self._client.set(
                self.context.key(key), serialize(value), nx=True, ex=max(1, int(seconds))
            ))
        except redis.RedisError as e:
            logger.warning("Cache add failed", key=key, error=str(e))
            return False

    @monitor_cache_operation('increment', tag_mode='none')
    def increment(self, key: str, amount: int = 1) -> Union[int, bool]:
        _validate_key(key)
        try:
            return self._client.incrby(self.context.key(key), amount)
        except redis.RedisError as e:
            logger.warning("Cache increment failed", key=key, error=str(e))
            return False

    @monitor_cache_operation('decrement', tag_mode='none')
    def decrement(self, key: str, amount: int = 1) -> Union[int, bool]:
        _validate_key(key)
        try:
            return self._client.decrby(self.context.key(key), amount)
        except redis.RedisError as e:
            logger.warning("Cache decrement failed", key=key, error=str(e))
            return False

    @monitor_cache_operation('forever', tag_mode='none')
    def forever(self, key: str, value: Any) -> bool:
        _validate_key(key)
        try:
            return bool(self._client.set(self.context.key(key), serialize(value)))
        except redis.RedisError as e:
            logger.warning("Cache forever failed", key=key, error=str(e))
            return False

    @monitor_cache_operation('forget', tag_mode='none')
    def forget(self, key: str) -> bool:
        """
        Delete one key. Tag references to it are left for prune to remove.
        """
        _validate_key(key)
        try:
            return bool(self._client.delete(self.context.key(key)))
        except redis.RedisError as e:
            logger.warning("Cache forget failed", key=key, error=str(e))
            return False

    @monitor_cache_operation('flush', tag_mode='none')
    def flush(self) -> bool:
        """Remove every key in the current database (FLUSHDB)."""
        try:
            self._client.flushdb()
        except redis.RedisError as e:
            logger.warning("Cache flush failed", error=str(e))
            return False
        return True

    def remember(self, key: str, seconds: int, callback: Callable[[], Any]) -> Any:
        value = self.get(key)
        if value is not None:
            return value

        value = callback()
        self.put(key, value, seconds)
        return value

    def remember_forever(self, key: str, callback: Callable[[], Any]) -> Any:
        value = self.get(key)
        if value is not None:
            return value

        value = callback()
        self.forever(key, value)
        return value


def create_tag_store(
    client: Any,
    prefix: str = '',
    tag_mode: Union[TagMode, str] = TagMode.ALL,
    metrics: Optional[Any] = None
) -> RedisTagStore:
    """Factory function for a ``RedisTagStore``."""
    store = RedisTagStore(client, prefix=prefix, tag_mode=tag_mode, metrics=metrics)

    logger.info(
        "Tagged cache store created",
        prefix=prefix,
        tag_mode=store.tag_mode.value,
        cluster=store.context.is_cluster()
    )
    return store


__all__ = ['TagMode', 'RedisTagStore', 'create_tag_store']

"""
Tagged cache on Redis.

Entries are written under tags and invalidated by flushing a tag. Two tag
modes are available:

- ``all`` (intersection): a key written with tags ``[a, b]`` is namespaced by
  that exact tag list and indexed in one sorted set per tag, scored by expiry.
- ``any`` (union): keys are stored as given; each tag is a hash of keys with
  per-field TTLs, each key keeps a reverse index of its tags, and a registry
  sorted set tracks every active tag.

Usage Examples:
    >>> import redis
    >>> from src.cache import create_tag_store
    >>> store = create_tag_store(redis.Redis(decode_responses=True), prefix='cache:')
    >>> store.tags('users', 'posts').put('feed', {'items': []}, 300)
    >>> store.tags('users').flush()

    From environment configuration:
    >>> from src.cache.client import init_tag_store
    >>> store = init_tag_store()

Connection management lives in ``src.cache.client`` and is imported from
there; it depends on ``src.config``.
"""

from src.cache.batch import PipelineBatch, SequentialBatch
from src.cache.context import StoreContext
from src.cache.exceptions import (
    CacheError,
    CacheConfigurationError,
    CacheKeyError,
    CacheOperationTimeoutError,
    CacheSerializationError,
    PruneError,
    RedisConnectionError,
    UnsupportedTagOperationError,
    handle_redis_exception,
)
from src.cache.monitoring import CacheMetrics, check_cache_health, get_cache_metrics
from src.cache.operations import AllTagOperations, AnyTagOperations
from src.cache.store import RedisTagStore, TagMode, create_tag_store
from src.cache.tag_set import AllTagSet, AnyTagSet
from src.cache.tagged import AllTaggedCache, AnyTaggedCache

__all__ = [
    # Store
    'RedisTagStore',
    'TagMode',
    'create_tag_store',
    'StoreContext',
    'PipelineBatch',
    'SequentialBatch',

    # Tagging
    'AllTagOperations',
    'AnyTagOperations',
    'AllTagSet',
    'AnyTagSet',
    'AllTaggedCache',
    'AnyTaggedCache',

    # Monitoring
    'CacheMetrics',
    'check_cache_health',
    'get_cache_metrics',

    # Exceptions
    'CacheError',
    'CacheConfigurationError',
    'CacheKeyError',
    'CacheOperationTimeoutError',
    'CacheSerializationError',
    'PruneError',
    'RedisConnectionError',
    'UnsupportedTagOperationError',
    'handle_redis_exception',
]

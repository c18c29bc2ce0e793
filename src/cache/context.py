"""
Shared execution context for tagged cache operations.

A ``StoreContext`` carries the Redis client, the key prefix, the cluster-mode
flag and the clock. Every operation object receives the same context and
uses it for key naming and for choosing its batch executor, so operations
themselves never look at the deployment topology.

Key layout (prefix includes its trailing separator, e.g. ``cache:``)::

    {prefix}{key}                         cache value
    {prefix}_all:tag:{name}:entries       all-mode tag (sorted set)
    {prefix}_any:tag:{name}:entries       any-mode tag (hash)
    {prefix}{key}:_any:tags               any-mode reverse index (set)
    {prefix}_any:tag:registry             any-mode tag registry (sorted set)
"""

import time
from typing import Any, Callable, Optional, Union

import redis
from redis.cluster import RedisCluster

from src.cache.batch import PipelineBatch, SequentialBatch

ALL_TAG_SEGMENT = "_all:tag:"
ANY_TAG_SEGMENT = "_any:tag:"
TAG_SUFFIX = ":entries"
REVERSE_INDEX_SUFFIX = ":_any:tags"
REGISTRY_SUFFIX = "registry"


class StoreContext:
    """Key naming, topology and clock shared by all operations of one store."""

    TAG_FIELD_VALUE = "1"
    # 9999-12-31 23:59:59 UTC, registry score for tags without expiry
    MAX_EXPIRY = 253402300799
    CHUNK_SIZE = 1000
    SCAN_COUNT = 1000
    FOREVER_SCORE = -1

    def __init__(
        self,
        client: Union[redis.Redis, RedisCluster],
        prefix: str = "",
        cluster: Optional[bool] = None,
        clock: Callable[[], float] = time.time,
        metrics: Optional[Any] = None
    ):
        """
        Args:
            client: redis-py client (``decode_responses=True`` expected)
            prefix: Key prefix, including its trailing separator
            cluster: Force cluster mode; detected from the client when None
            clock: Returns the current Unix time in seconds
            metrics: Optional ``CacheMetrics`` collector
        """
        self.client = client
        self._prefix = prefix or ""
        self._cluster = isinstance(client, RedisCluster) if cluster is None else bool(cluster)
        self._clock = clock
        self.metrics = metrics

    @property
    def prefix(self) -> str:
        return self._prefix

    def is_cluster(self) -> bool:
        return self._cluster

    def now(self) -> int:
        """Current Unix time in whole seconds."""
        return int(self._clock())

    def batch(self, operation: str = "batch") -> Union[PipelineBatch, SequentialBatch]:
        """Return the batch executor matching the deployment topology."""
        if self._cluster:
            return SequentialBatch(self.client, operation=operation)
        return PipelineBatch(self.client, operation=operation)

    # Value keys

    def key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def strip_prefix(self, full_key: str) -> str:
        if self._prefix and full_key.startswith(self._prefix):
            return full_key[len(self._prefix):]
        return full_key

    # All-mode naming

    @staticmethod
    def all_tag_id(name: str) -> str:
        """Unprefixed identifier of an all-mode tag, as used by tag sets."""
        return f"{ALL_TAG_SEGMENT}{name}{TAG_SUFFIX}"

    def all_tag_key(self, tag_id: str) -> str:
        return f"{self._prefix}{tag_id}"

    def all_tag_pattern(self) -> str:
        return f"{self._prefix}{ALL_TAG_SEGMENT}*{TAG_SUFFIX}"

    # Any-mode naming

    def tag_hash_key(self, name: str) -> str:
        return f"{self._prefix}{ANY_TAG_SEGMENT}{name}{TAG_SUFFIX}"

    def tag_hash_prefix(self) -> str:
        return f"{self._prefix}{ANY_TAG_SEGMENT}"

    def reverse_index_key(self, key: str) -> str:
        return f"{self._prefix}{key}{REVERSE_INDEX_SUFFIX}"

    def registry_key(self) -> str:
        return f"{self._prefix}{ANY_TAG_SEGMENT}{REGISTRY_SUFFIX}"

    def any_tag_pattern(self) -> str:
        return f"{self._prefix}{ANY_TAG_SEGMENT}*{TAG_SUFFIX}"


__all__ = ["StoreContext"]

"""
Any-mode (union) tag operations.

A tag is a hash ``{prefix}_any:tag:{name}:entries`` mapping plain cache keys
to a placeholder value, with a native per-field TTL (HSETEX / HEXPIRE,
Redis 8+) so expired members disappear on their own. Two companion
structures keep tags discoverable and consistent:

- the reverse index ``{prefix}{key}:_any:tags``, the set of tags a key
  currently belongs to, so an overwrite can drop the key from tags it left;
- the registry ``{prefix}_any:tag:registry``, a sorted set of tag names
  scored by the latest expiry written to them, used by prune.

Writes read the reverse index first, then send every mutation through one
batch: a MULTI/EXEC pipeline on a single node, sequential commands on a
cluster.
"""

from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

import redis
import structlog

from src.cache.batch import completed, succeeded
from src.cache.context import StoreContext
from src.cache.exceptions import PruneError
from src.cache.monitoring import monitor_cache_operation
from src.cache.serialization import deserialize, serialize

logger = structlog.get_logger(__name__)

# Hashes up to this size are listed with a single HKEYS
HKEYS_THRESHOLD = 1000


class _AnyTagOperation:
    """Base for operation objects; holds the shared context."""

    tag_mode = 'any'

    def __init__(self, context: StoreContext):
        self.context = context

    def _old_tags(self, key: str) -> set:
        try:
            return set(self.context.client.smembers(self.context.reverse_index_key(key)) or ())
        except redis.RedisError as e:
            logger.warning("Reverse index read failed", key=key, error=str(e))
            return set()

    def _queue_reverse_index(self, batch, key: str, tags: List[str], ttl: Optional[int]):
        """Replace the reverse index of ``key`` with ``tags``."""
        reverse_key = self.context.reverse_index_key(key)
        batch.delete(reverse_key)
        if tags:
            batch.sadd(reverse_key, *tags)
            if ttl:
                batch.expire(reverse_key, ttl)

    def _queue_tag_fields(self, batch, key: str, tags: List[str], ttl: Optional[int]):
        for tag in tags:
            if ttl:
                batch.hsetex(
                    self.context.tag_hash_key(tag),
                    mapping={key: StoreContext.TAG_FIELD_VALUE},
                    ex=ttl
                )
            else:
                batch.hset(self.context.tag_hash_key(tag), key, StoreContext.TAG_FIELD_VALUE)

    def _queue_registry(self, batch, tags: Iterable[str], expiry: int):
        mapping = {tag: expiry for tag in tags}
        if mapping:
            batch.zadd(self.context.registry_key(), mapping, gt=True)

    def _queue_removals(self, batch, key: str, old_tags: set, tags: List[str]):
        for tag in sorted(old_tags - set(tags)):
            batch.hdel(self.context.tag_hash_key(tag), key)


class Put(_AnyTagOperation):
    """Store a value and make it the member of exactly ``tags``."""

    @monitor_cache_operation('put')
    def execute(self, key: str, value: Any, seconds: int, tags: List[str]) -> bool:
        tags = _unique(tags)
        ttl = max(1, int(seconds))
        old_tags = self._old_tags(key)

        batch = self.context.batch('put')
        batch.setex(self.context.key(key), ttl, serialize(value))
        self._queue_reverse_index(batch, key, tags, ttl)
        self._queue_removals(batch, key, old_tags, tags)
        self._queue_tag_fields(batch, key, tags, ttl)
        self._queue_registry(batch, tags, self.context.now() + ttl)

        results = batch.execute()
        return results is not None and succeeded(results[0])


class PutMany(_AnyTagOperation):
    """
    Store several values under the same tags, in chunks of 1000 keys.

    Per chunk: one round of SMEMBERS for the reverse indexes, then a single
    write batch with one HDEL per tag being left, one HSET + HEXPIRE per tag
    and one registry ZADD.
    """

    @monitor_cache_operation('put_many')
    def execute(self, values: Dict[str, Any], seconds: int, tags: List[str]) -> bool:
        if not values:
            return True

        tags = _unique(tags)
        ttl = max(1, int(seconds))
        items = list(values.items())
        ok = True

        for start in range(0, len(items), StoreContext.CHUNK_SIZE):
            chunk = items[start:start + StoreContext.CHUNK_SIZE]
            ok = self._put_chunk(chunk, ttl, tags) and ok

        return ok

    def _put_chunk(self, chunk: List[Tuple[str, Any]], ttl: int, tags: List[str]) -> bool:
        keys = [key for key, _value in chunk]

        reads = self.context.batch('put_many')
        for key in keys:
            reads.smembers(self.context.reverse_index_key(key))
        old_results = reads.execute()
        if old_results is None:
            return False

        keys_to_remove_by_tag: Dict[str, List[str]] = {}
        batch = self.context.batch('put_many')
        setex_positions = []

        for (key, value), old_tags in zip(chunk, old_results):
            if isinstance(old_tags, Exception) or not old_tags:
                old_tags = set()
            for tag in sorted(set(old_tags) - set(tags)):
                keys_to_remove_by_tag.setdefault(tag, []).append(key)

            setex_positions.append(len(batch))
            batch.setex(self.context.key(key), ttl, serialize(value))
            self._queue_reverse_index(batch, key, tags, ttl)

        for tag, removed_keys in keys_to_remove_by_tag.items():
            batch.hdel(self.context.tag_hash_key(tag), *removed_keys)

        for tag in tags:
            tag_key = self.context.tag_hash_key(tag)
            batch.hset(tag_key, mapping={key: StoreContext.TAG_FIELD_VALUE for key in keys})
            batch.hexpire(tag_key, ttl, *keys)

        self._queue_registry(batch, tags, self.context.now() + ttl)

        results = batch.execute()
        if results is None:
            return False
        return all(succeeded(results[position]) for position in setex_positions)


class Add(_AnyTagOperation):
    """Store a value only if the key is absent; tags are written only on success."""

    @monitor_cache_operation('add')
    def execute(self, key: str, value: Any, seconds: int, tags: List[str]) -> bool:
        tags = _unique(tags)
        ttl = max(1, int(seconds))

        try:
            added = self.context.client.set(self.context.key(key), serialize(value), nx=True, ex=ttl)
        except redis.RedisError as e:
            logger.warning("Conditional set failed", key=key, error=str(e))
            return False

        if not added:
            return False

        if tags:
            batch = self.context.batch('add')
            self._queue_reverse_index(batch, key, tags, ttl)
            self._queue_tag_fields(batch, key, tags, ttl)
            self._queue_registry(batch, tags, self.context.now() + ttl)
            batch.execute()

        return True


class Forever(_AnyTagOperation):
    """Store a value without expiry; tag fields carry no TTL."""

    @monitor_cache_operation('forever')
    def execute(self, key: str, value: Any, tags: List[str]) -> bool:
        tags = _unique(tags)
        old_tags = self._old_tags(key)

        batch = self.context.batch('forever')
        batch.set(self.context.key(key), serialize(value))
        self._queue_reverse_index(batch, key, tags, None)
        self._queue_removals(batch, key, old_tags, tags)
        self._queue_tag_fields(batch, key, tags, None)
        self._queue_registry(batch, tags, StoreContext.MAX_EXPIRY)

        results = batch.execute()
        return results is not None and succeeded(results[0])


class _Counter(_AnyTagOperation):
    command = 'incrby'

    def _apply(self, key: str, amount: int, tags: List[str]) -> Union[int, bool]:
        tags = _unique(tags)
        value_key = self.context.key(key)

        counter = self.context.batch(self.command)
        getattr(counter, self.command)(value_key, amount)
        counter.ttl(value_key)
        results = counter.execute()
        if results is None:
            return False

        new_value, ttl = results
        if not isinstance(new_value, int) or isinstance(new_value, bool):
            return False

        if not tags:
            return new_value

        # Tag bookkeeping inherits whatever TTL the counter has left
        ttl = ttl if isinstance(ttl, int) and ttl > 0 else None
        old_tags = self._old_tags(key)

        batch = self.context.batch(self.command)
        self._queue_reverse_index(batch, key, tags, ttl)
        self._queue_removals(batch, key, old_tags, tags)
        self._queue_tag_fields(batch, key, tags, ttl)
        expiry = self.context.now() + ttl if ttl else StoreContext.MAX_EXPIRY
        self._queue_registry(batch, tags, expiry)
        batch.execute()

        return new_value


class Increment(_Counter):
    command = 'incrby'

    @monitor_cache_operation('increment')
    def execute(self, key: str, amount: int, tags: List[str]) -> Union[int, bool]:
        return self._apply(key, amount, tags)


class Decrement(_Counter):
    command = 'decrby'

    @monitor_cache_operation('decrement')
    def execute(self, key: str, amount: int, tags: List[str]) -> Union[int, bool]:
        return self._apply(key, amount, tags)


class _Remembering(_AnyTagOperation):

    def _lookup(self, key: str) -> Optional[Any]:
        try:
            raw = self.context.client.get(self.context.key(key))
        except redis.RedisError as e:
            logger.warning("Cache lookup failed, treating as miss", key=key, error=str(e))
            return None

        metrics = self.context.metrics
        if metrics is not None:
            if raw is None:
                metrics.record_miss(self.tag_mode)
            else:
                metrics.record_hit(self.tag_mode)
        return raw


class Remember(_Remembering):
    """Return the cached value, or compute it and store it like ``Put``."""

    def __init__(self, context: StoreContext, put: Optional[Put] = None):
        super().__init__(context)
        self._put = put or Put(context)

    @monitor_cache_operation('remember')
    def execute(
        self,
        key: str,
        seconds: int,
        callback: Callable[[], Any],
        tags: List[str]
    ) -> Tuple[Any, bool]:
        raw = self._lookup(key)
        if raw is not None:
            return deserialize(raw), True

        value = callback()
        self._put.execute(key, value, seconds, tags)
        return value, False


class RememberForever(_Remembering):

    def __init__(self, context: StoreContext, forever: Optional[Forever] = None):
        super().__init__(context)
        self._forever = forever or Forever(context)

    @monitor_cache_operation('remember_forever')
    def execute(self, key: str, callback: Callable[[], Any], tags: List[str]) -> Tuple[Any, bool]:
        raw = self._lookup(key)
        if raw is not None:
            return deserialize(raw), True

        value = callback()
        self._forever.execute(key, value, tags)
        return value, False


class GetTaggedKeys(_AnyTagOperation):
    """
    Lazily yield the keys currently recorded under one tag.

    Small hashes are read with one HKEYS, large ones are walked with HSCAN.
    Each call starts a fresh iteration.
    """

    def execute(self, tag: str) -> Iterator[str]:
        tag_key = self.context.tag_hash_key(tag)
        client = self.context.client

        try:
            size = client.hlen(tag_key)
            if size <= HKEYS_THRESHOLD:
                yield from client.hkeys(tag_key) or []
                return

            for field, _value in client.hscan_iter(tag_key, match='*', count=StoreContext.SCAN_COUNT):
                yield field
        except redis.RedisError as e:
            logger.warning("Tagged key listing failed", tag=tag, error=str(e))


class GetTagItems(_AnyTagOperation):
    """
    Yield ``(key, value)`` pairs for every key under any of the given tags.

    Keys carrying several of the requested tags are yielded once. Keys whose
    value is gone are skipped.
    """

    def __init__(self, context: StoreContext, get_tagged_keys: Optional[GetTaggedKeys] = None):
        super().__init__(context)
        self._get_tagged_keys = get_tagged_keys or GetTaggedKeys(context)

    def execute(self, tags: List[str]) -> Iterator[Tuple[str, Any]]:
        seen = set()
        chunk: List[str] = []

        for tag in _unique(tags):
            for key in self._get_tagged_keys.execute(tag):
                if key in seen:
                    continue
                seen.add(key)
                chunk.append(key)

                if len(chunk) >= StoreContext.CHUNK_SIZE:
                    yield from self._fetch(chunk)
                    chunk = []

        if chunk:
            yield from self._fetch(chunk)

    def _fetch(self, keys: List[str]) -> Iterator[Tuple[str, Any]]:
        prefixed = [self.context.key(key) for key in keys]

        if self.context.is_cluster():
            batch = self.context.batch('items')
            for full_key in prefixed:
                batch.get(full_key)
            values = batch.execute()
        else:
            try:
                values = self.context.client.mget(prefixed)
            except redis.RedisError as e:
                logger.warning("Tagged item fetch failed", keys=len(keys), error=str(e))
                return

        for key, raw in zip(keys, values):
            if raw is None or isinstance(raw, Exception):
                continue
            yield key, deserialize(raw)


class Flush(_AnyTagOperation):
    """
    Delete every key under the given tags, their reverse indexes, the tag
    hashes and the tags' registry entries.

    Other tags that shared a flushed key keep their reference until prune.
    """

    def __init__(self, context: StoreContext, get_tagged_keys: Optional[GetTaggedKeys] = None):
        super().__init__(context)
        self._get_tagged_keys = get_tagged_keys or GetTaggedKeys(context)

    @monitor_cache_operation('flush')
    def execute(self, tags: List[str], lazy: bool = True) -> bool:
        """
        Args:
            tags: Tag names to flush
            lazy: Free values with UNLINK instead of DEL
        """
        tags = _unique(tags)
        ok = True
        buffer: Dict[str, None] = {}

        for tag in tags:
            for key in self._get_tagged_keys.execute(tag):
                buffer[key] = None
                if len(buffer) >= StoreContext.CHUNK_SIZE:
                    ok = self._delete_chunk(list(buffer), lazy) and ok
                    buffer = {}

        if buffer:
            ok = self._delete_chunk(list(buffer), lazy) and ok

        if tags:
            batch = self.context.batch('flush')
            for tag in tags:
                batch.delete(self.context.tag_hash_key(tag))
                batch.zrem(self.context.registry_key(), tag)
            ok = completed(batch.execute()) and ok

        if not ok:
            logger.warning("Tag flush incomplete", tags=tags)
        return ok

    def _delete_chunk(self, keys: List[str], lazy: bool) -> bool:
        batch = self.context.batch('flush')
        batch.delete(*[self.context.reverse_index_key(key) for key in keys])
        values = [self.context.key(key) for key in keys]
        if lazy:
            batch.unlink(*values)
        else:
            batch.delete(*values)
        return completed(batch.execute())


class Prune(_AnyTagOperation):
    """
    Reconcile the any-mode tag structures.

    Drops registry entries whose expiry has passed, then walks every tag
    still registered: fields whose cache key no longer exists are removed and
    hashes left empty are deleted.
    """

    DEFAULT_SCAN_COUNT = 1000

    @monitor_cache_operation('prune')
    def execute(self, scan_count: int = DEFAULT_SCAN_COUNT) -> Dict[str, int]:
        stats = {
            'hashes_scanned': 0,
            'fields_checked': 0,
            'orphans_removed': 0,
            'empty_hashes_deleted': 0,
            'expired_tags_removed': 0,
        }
        client = self.context.client
        registry_key = self.context.registry_key()

        try:
            expired = client.zremrangebyscore(registry_key, '-inf', self.context.now())
            stats['expired_tags_removed'] = expired if isinstance(expired, int) else 0

            for tag in client.zrange(registry_key, 0, -1) or []:
                checked, removed, deleted = self._clean_tag_hash(self.context.tag_hash_key(tag), scan_count)
                stats['hashes_scanned'] += 1
                stats['fields_checked'] += checked
                stats['orphans_removed'] += removed
                if deleted:
                    stats['empty_hashes_deleted'] += 1
        except redis.RedisError as e:
            logger.error("Any-mode prune aborted", error=str(e), **stats)
            raise PruneError(f"Any-mode prune failed: {str(e)}", tag_mode='any', stats=stats) from e

        if self.context.metrics is not None:
            self.context.metrics.record_prune('any', stats)
        logger.info("Any-mode prune completed", **stats)
        return stats

    def _clean_tag_hash(self, tag_key: str, scan_count: int) -> Tuple[int, int, bool]:
        client = self.context.client
        checked = 0
        removed = 0
        cursor = 0

        while True:
            cursor, fields = client.hscan(tag_key, cursor=cursor, match='*', count=scan_count)
            keys = list(fields or {})

            if keys:
                checked += len(keys)
                batch = self.context.batch('prune')
                for key in keys:
                    batch.exists(self.context.key(key))
                results = batch.execute()
                if results is None:
                    raise redis.RedisError(f"EXISTS batch failed for {tag_key}")

                orphans = [key for key, exists in zip(keys, results) if exists == 0]
                if orphans:
                    client.hdel(tag_key, *orphans)
                    removed += len(orphans)

            if not cursor:
                break

        deleted = False
        if client.hlen(tag_key) == 0:
            client.delete(tag_key)
            deleted = True

        return checked, removed, deleted


def _unique(tags: Iterable[str]) -> List[str]:
    """Tag names as strings, first occurrence order kept."""
    return list(dict.fromkeys(str(tag) for tag in tags))


class AnyTagOperations:
    """Lazily built, cached operation objects for any-mode tags."""

    def __init__(self, context: StoreContext):
        self._context = context
        self._instances: Dict[str, Any] = {}

    def _get(self, name: str, factory: Callable[[], Any]) -> Any:
        if name not in self._instances:
            self._instances[name] = factory()
        return self._instances[name]

    def put(self) -> Put:
        return self._get('put', lambda: Put(self._context))

    def put_many(self) -> PutMany:
        return self._get('put_many', lambda: PutMany(self._context))

    def add(self) -> Add:
        return self._get('add', lambda: Add(self._context))

    def forever(self) -> Forever:
        return self._get('forever', lambda: Forever(self._context))

    def increment(self) -> Increment:
        return self._get('increment', lambda: Increment(self._context))

    def decrement(self) -> Decrement:
        return self._get('decrement', lambda: Decrement(self._context))

    def remember(self) -> Remember:
        return self._get('remember', lambda: Remember(self._context, put=self.put()))

    def remember_forever(self) -> RememberForever:
        return self._get(
            'remember_forever', lambda: RememberForever(self._context, forever=self.forever())
        )

    def get_tagged_keys(self) -> GetTaggedKeys:
        return self._get('get_tagged_keys', lambda: GetTaggedKeys(self._context))

    def get_tag_items(self) -> GetTagItems:
        return self._get(
            'get_tag_items',
            lambda: GetTagItems(self._context, get_tagged_keys=self.get_tagged_keys())
        )

    def flush(self) -> Flush:
        return self._get('flush', lambda: Flush(self._context, get_tagged_keys=self.get_tagged_keys()))

    def prune(self) -> Prune:
        return self._get('prune', lambda: Prune(self._context))


__all__ = [
    'Put',
    'PutMany',
    'Add',
    'Forever',
    'Increment',
    'Decrement',
    'Remember',
    'RememberForever',
    'GetTaggedKeys',
    'GetTagItems',
    'Flush',
    'Prune',
    'AnyTagOperations',
]

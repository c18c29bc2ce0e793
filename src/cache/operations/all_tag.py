"""
All-mode (intersection) tag operations.

A tag is a sorted set ``{prefix}_all:tag:{name}:entries`` whose members are
the namespaced keys written under it, scored by their Unix expiry time or
``-1`` for entries that never expire. Tag identifiers passed to these
operations are the unprefixed set names (``_all:tag:users:entries``); keys
are already namespaced by the calling tag set.

Overwriting a key under a different tag combination does not touch the old
tag sets; their references become orphans that ``Prune`` removes later.
"""

from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

import redis
import structlog

from src.cache.batch import completed, succeeded
from src.cache.context import StoreContext
from src.cache.exceptions import PruneError
from src.cache.monitoring import monitor_cache_operation
from src.cache.serialization import deserialize, serialize

logger = structlog.get_logger(__name__)

ZADD_CONDITIONS = ('NX', 'XX', 'GT', 'LT')


def _ttl(seconds: int) -> int:
    return max(1, int(seconds))


class _AllTagOperation:
    """Base for operation objects; holds the shared context."""

    tag_mode = 'all'

    def __init__(self, context: StoreContext):
        self.context = context


class AddEntry(_AllTagOperation):
    """Record ``key`` in each tag set without writing a value."""

    @monitor_cache_operation('add_entry')
    def execute(
        self,
        key: str,
        seconds: int,
        tag_ids: List[str],
        update_when: Optional[str] = None
    ) -> bool:
        """
        Args:
            key: Namespaced cache key
            seconds: TTL; zero or negative stores the entry as forever
            tag_ids: Tag set identifiers
            update_when: Optional ZADD condition (NX, XX, GT or LT)
        """
        if not tag_ids:
            return True

        score = self.context.now() + seconds if seconds > 0 else StoreContext.FOREVER_SCORE
        flags = {}
        if update_when:
            condition = update_when.upper()
            if condition not in ZADD_CONDITIONS:
                raise ValueError(f"Unsupported ZADD condition: {update_when}")
            flags[condition.lower()] = True

        batch = self.context.batch('add_entry')
        for tag_id in tag_ids:
            batch.zadd(self.context.all_tag_key(tag_id), {key: score}, **flags)

        return completed(batch.execute())


class Put(_AllTagOperation):
    """Store a value and record it in every tag set with its expiry score."""

    @monitor_cache_operation('put')
    def execute(self, key: str, value: Any, seconds: int, tag_ids: List[str]) -> bool:
        ttl = _ttl(seconds)
        score = self.context.now() + ttl

        batch = self.context.batch('put')
        for tag_id in tag_ids:
            batch.zadd(self.context.all_tag_key(tag_id), {key: score})
        batch.setex(self.context.key(key), ttl, serialize(value))

        results = batch.execute()
        return results is not None and succeeded(results[-1])


class PutMany(_AllTagOperation):
    """
    Store several values under the same tags.

    Tag bookkeeping costs one variadic ZADD per tag carrying every key,
    followed by one SETEX per key.
    """

    @monitor_cache_operation('put_many')
    def execute(
        self,
        values: Dict[str, Any],
        seconds: int,
        tag_ids: List[str],
        namespace: str = ''
    ) -> bool:
        if not values:
            return True

        ttl = _ttl(seconds)
        score = self.context.now() + ttl
        members = {f"{namespace}{key}": score for key in values}

        batch = self.context.batch('put_many')
        for tag_id in tag_ids:
            batch.zadd(self.context.all_tag_key(tag_id), members)
        for key, value in values.items():
            batch.setex(self.context.key(f"{namespace}{key}"), ttl, serialize(value))

        results = batch.execute()
        if results is None:
            return False

        return all(succeeded(result) for result in results[-len(values):])


class Add(_AllTagOperation):
    """Store a value only if the key does not exist yet (SET NX EX)."""

    @monitor_cache_operation('add')
    def execute(self, key: str, value: Any, seconds: int, tag_ids: List[str]) -> bool:
        ttl = _ttl(seconds)
        score = self.context.now() + ttl

        batch = self.context.batch('add')
        for tag_id in tag_ids:
            batch.zadd(self.context.all_tag_key(tag_id), {key: score})
        batch.set(self.context.key(key), serialize(value), nx=True, ex=ttl)

        results = batch.execute()
        return results is not None and succeeded(results[-1])


class Forever(_AllTagOperation):
    """Store a value without expiry; tag entries are scored -1."""

    @monitor_cache_operation('forever')
    def execute(self, key: str, value: Any, tag_ids: List[str]) -> bool:
        batch = self.context.batch('forever')
        for tag_id in tag_ids:
            batch.zadd(self.context.all_tag_key(tag_id), {key: StoreContext.FOREVER_SCORE})
        batch.set(self.context.key(key), serialize(value))

        results = batch.execute()
        return results is not None and succeeded(results[-1])


class _Counter(_AllTagOperation):
    command = 'incrby'

    def _apply(self, key: str, amount: int, tag_ids: List[str]) -> Union[int, bool]:
        batch = self.context.batch(self.command)
        for tag_id in tag_ids:
            # NX keeps the score of an entry written by put()
            batch.zadd(
                self.context.all_tag_key(tag_id),
                {key: StoreContext.FOREVER_SCORE},
                nx=True
            )
        getattr(batch, self.command)(self.context.key(key), amount)

        results = batch.execute()
        if results is None:
            return False

        new_value = results[-1]
        if isinstance(new_value, int) and not isinstance(new_value, bool):
            return new_value
        return False


class Increment(_Counter):
    command = 'incrby'

    @monitor_cache_operation('increment')
    def execute(self, key: str, amount: int, tag_ids: List[str]) -> Union[int, bool]:
        return self._apply(key, amount, tag_ids)


class Decrement(_Counter):
    command = 'decrby'

    @monitor_cache_operation('decrement')
    def execute(self, key: str, amount: int, tag_ids: List[str]) -> Union[int, bool]:
        return self._apply(key, amount, tag_ids)


class _Remembering(_AllTagOperation):

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
    """
    Return the cached value or compute, store and tag it.

    The producer is only called on a miss. If it raises, the exception
    propagates and nothing is written.
    """

    def __init__(self, context: StoreContext, put: Optional[Put] = None):
        super().__init__(context)
        self._put = put or Put(context)

    @monitor_cache_operation('remember')
    def execute(
        self,
        key: str,
        seconds: int,
        callback: Callable[[], Any],
        tag_ids: List[str]
    ) -> Tuple[Any, bool]:
        """
        Returns:
            Tuple of (value, was_hit)
        """
        raw = self._lookup(key)
        if raw is not None:
            return deserialize(raw), True

        value = callback()
        self._put.execute(key, value, seconds, tag_ids)
        return value, False


class RememberForever(_Remembering):
    """Like ``Remember`` but the computed value never expires."""

    def __init__(self, context: StoreContext, forever: Optional[Forever] = None):
        super().__init__(context)
        self._forever = forever or Forever(context)

    @monitor_cache_operation('remember_forever')
    def execute(self, key: str, callback: Callable[[], Any], tag_ids: List[str]) -> Tuple[Any, bool]:
        raw = self._lookup(key)
        if raw is not None:
            return deserialize(raw), True

        value = callback()
        self._forever.execute(key, value, tag_ids)
        return value, False


class GetEntries(_AllTagOperation):
    """
    Lazily list the members of the given tag sets.

    Members are unique within one tag; a key present in two tags is yielded
    twice.
    """

    def execute(self, tag_ids: List[str]) -> Iterator[str]:
        for tag_id in tag_ids:
            yield from self._scan_tag(self.context.all_tag_key(tag_id))

    def _scan_tag(self, tag_key: str) -> Iterator[str]:
        client = self.context.client
        seen = set()
        cursor = 0

        while True:
            try:
                result = client.zscan(
                    tag_key, cursor=cursor, match='*', count=StoreContext.SCAN_COUNT
                )
            except redis.RedisError as e:
                logger.warning("Tag scan failed", tag=tag_key, error=str(e))
                return

            if not result:
                return

            cursor, members = result
            for member, _score in members or []:
                if member not in seen:
                    seen.add(member)
                    yield member

            if not cursor:
                return


class Flush(_AllTagOperation):
    """Delete every entry referenced by the tags, then the tag sets themselves."""

    def __init__(self, context: StoreContext, get_entries: Optional[GetEntries] = None):
        super().__init__(context)
        self._get_entries = get_entries or GetEntries(context)

    @monitor_cache_operation('flush')
    def execute(self, tag_ids: List[str], tag_names: List[str]) -> bool:
        ok = True
        chunk: List[str] = []

        for entry in self._get_entries.execute(tag_ids):
            chunk.append(self.context.key(entry))
            if len(chunk) >= StoreContext.CHUNK_SIZE:
                ok = self._delete(chunk) and ok
                chunk = []

        if chunk:
            ok = self._delete(chunk) and ok

        if tag_ids:
            ok = self._delete([self.context.all_tag_key(tag_id) for tag_id in tag_ids]) and ok

        if not ok:
            logger.warning("Tag flush incomplete", tags=list(tag_names))
        return ok

    def _delete(self, keys: List[str]) -> bool:
        batch = self.context.batch('flush')
        batch.delete(*keys)
        return completed(batch.execute())


class FlushStale(_AllTagOperation):
    """Drop entries whose expiry score has passed; forever entries (-1) stay."""

    @monitor_cache_operation('flush_stale')
    def execute(self, tag_ids: List[str]) -> bool:
        if not tag_ids:
            return True

        now = self.context.now()
        batch = self.context.batch('flush_stale')
        for tag_id in tag_ids:
            batch.zremrangebyscore(self.context.all_tag_key(tag_id), '0', now)

        return completed(batch.execute())


class Prune(_AllTagOperation):
    """
    Reconcile every all-mode tag set in the database.

    For each tag set found by SCAN: remove stale entries, remove members whose
    cache key no longer exists, and delete the set when it ends up empty.
    Keys returned twice by SCAN are processed twice.
    """

    DEFAULT_SCAN_COUNT = 1000

    @monitor_cache_operation('prune')
    def execute(self, scan_count: int = DEFAULT_SCAN_COUNT) -> Dict[str, int]:
        stats = {
            'tags_scanned': 0,
            'stale_entries_removed': 0,
            'entries_checked': 0,
            'orphans_removed': 0,
            'empty_sets_deleted': 0,
        }
        client = self.context.client
        now = self.context.now()

        try:
            for tag_key in client.scan_iter(match=self.context.all_tag_pattern(), count=scan_count):
                stats['tags_scanned'] += 1

                removed = client.zremrangebyscore(tag_key, '0', now)
                stats['stale_entries_removed'] += removed if isinstance(removed, int) else 0

                checked, orphans = self._remove_orphans(tag_key, scan_count)
                stats['entries_checked'] += checked
                stats['orphans_removed'] += orphans

                if client.zcard(tag_key) == 0:
                    client.delete(tag_key)
                    stats['empty_sets_deleted'] += 1
        except redis.RedisError as e:
            logger.error("All-mode prune aborted", error=str(e), **stats)
            raise PruneError(f"All-mode prune failed: {str(e)}", tag_mode='all', stats=stats) from e

        if self.context.metrics is not None:
            self.context.metrics.record_prune('all', stats)
        logger.info("All-mode prune completed", **stats)
        return stats

    def _remove_orphans(self, tag_key: str, scan_count: int) -> Tuple[int, int]:
        client = self.context.client
        checked = 0
        removed = 0
        cursor = 0

        while True:
            cursor, members = client.zscan(tag_key, cursor=cursor, match='*', count=scan_count)
            keys = [member for member, _score in members or []]

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
                    client.zrem(tag_key, *orphans)
                    removed += len(orphans)

            if not cursor:
                return checked, removed


class AllTagOperations:
    """Lazily built, cached operation objects for all-mode tags."""

    def __init__(self, context: StoreContext):
        self._context = context
        self._instances: Dict[str, Any] = {}

    def _get(self, name: str, factory: Callable[[], Any]) -> Any:
        if name not in self._instances:
            self._instances[name] = factory()
        return self._instances[name]

    def add_entry(self) -> AddEntry:
        return self._get('add_entry', lambda: AddEntry(self._context))

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

    def get_entries(self) -> GetEntries:
        return self._get('get_entries', lambda: GetEntries(self._context))

    def flush(self) -> Flush:
        return self._get('flush', lambda: Flush(self._context, get_entries=self.get_entries()))

    def flush_stale(self) -> FlushStale:
        return self._get('flush_stale', lambda: FlushStale(self._context))

    def prune(self) -> Prune:
        return self._get('prune', lambda: Prune(self._context))


__all__ = [
    'AddEntry',
    'Put',
    'PutMany',
    'Add',
    'Forever',
    'Increment',
    'Decrement',
    'Remember',
    'RememberForever',
    'GetEntries',
    'Flush',
    'FlushStale',
    'Prune',
    'AllTagOperations',
]

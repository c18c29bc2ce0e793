"""
Tagged cache facades returned by ``RedisTagStore.tags()``.

Both facades accept TTLs as seconds, ``timedelta`` or an absolute
``datetime``; ``None`` means the entry never expires. They resolve tag names
through their tag set and hand every write to the matching operation object.

All mode scopes keys to the tag combination: ``tags('a', 'b').put('k', ...)``
and ``tags('a').put('k', ...)`` are two different entries, and reads must use
the same tags that wrote. Any mode stores keys as given; its tags are write
and flush scopes only, so reads go through the store.
"""

import hashlib
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Tuple, Union

from src.cache.exceptions import UnsupportedTagOperationError
from src.cache.tag_set import AllTagSet, AnyTagSet

TTL = Optional[Union[int, float, timedelta, datetime]]

# add() without a TTL on an any-mode tagged cache keeps the key for a year
DEFAULT_ADD_SECONDS = 31536000


class TaggedCache(ABC):
    """Behaviour shared by both facades."""

    def __init__(self, store, tags):
        self.store = store
        self.tags = tags

    def get_tags(self):
        return self.tags

    def _seconds(self, ttl: Union[int, float, timedelta, datetime]) -> int:
        if isinstance(ttl, timedelta):
            return int(ttl.total_seconds())
        if isinstance(ttl, datetime):
            expires_at = ttl if ttl.tzinfo else ttl.replace(tzinfo=timezone.utc)
            return int(expires_at.timestamp()) - self.store.context.now()
        return int(ttl)

    def _put_many_forever(self, values: Dict[str, Any]) -> bool:
        result = True
        for key, value in values.items():
            if not self.forever(key, value):
                result = False
        return result

    @abstractmethod
    def forever(self, key: str, value: Any) -> bool:
        """Store a value under the tags without expiry."""


class AllTaggedCache(TaggedCache):
    """Intersection-mode facade; keys are namespaced by the full tag list."""

    tags: AllTagSet

    def item_key(self, key: str) -> str:
        namespace = hashlib.sha1(self.tags.get_namespace().encode('utf-8')).hexdigest()
        return f"{namespace}:{key}"

    def _ops(self):
        return self.store.all_tag_ops()

    def get(self, key: str, default: Any = None) -> Any:
        value = self.store.get(self.item_key(key))
        return default if value is None else value

    def many(self, keys: Iterable[str]) -> Dict[str, Any]:
        keys = list(keys)
        values = self.store.many([self.item_key(key) for key in keys])
        return {key: values.get(self.item_key(key)) for key in keys}

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def pull(self, key: str, default: Any = None) -> Any:
        value = self.get(key, default)
        self.forget(key)
        return value

    def forget(self, key: str) -> bool:
        return self.store.forget(self.item_key(key))

    def put(self, key: Union[str, Dict[str, Any]], value: Any = None, ttl: TTL = None) -> bool:
        if isinstance(key, dict):
            return self.put_many(key, value)

        if ttl is None:
            return self.forever(key, value)

        seconds = self._seconds(ttl)
        if seconds <= 0:
            return self.forget(key)

        return self._ops().put().execute(self.item_key(key), value, seconds, self.tags.tag_ids())

    def put_many(self, values: Dict[str, Any], ttl: TTL = None) -> bool:
        if ttl is None:
            return self._put_many_forever(values)

        seconds = self._seconds(ttl)
        if seconds <= 0:
            return False

        namespace = hashlib.sha1(self.tags.get_namespace().encode('utf-8')).hexdigest() + ':'
        return self._ops().put_many().execute(values, seconds, self.tags.tag_ids(), namespace)

    def add(self, key: str, value: Any, ttl: TTL = None) -> bool:
        if ttl is not None:
            seconds = self._seconds(ttl)
            if seconds <= 0:
                return False
            return self._ops().add().execute(self.item_key(key), value, seconds, self.tags.tag_ids())

        # No TTL: check then write forever, not atomic
        if self.get(key) is None:
            return self.forever(key, value)
        return False

    def forever(self, key: str, value: Any) -> bool:
        return self._ops().forever().execute(self.item_key(key), value, self.tags.tag_ids())

    def increment(self, key: str, amount: int = 1) -> Union[int, bool]:
        return self._ops().increment().execute(self.item_key(key), amount, self.tags.tag_ids())

    def decrement(self, key: str, amount: int = 1) -> Union[int, bool]:
        return self._ops().decrement().execute(self.item_key(key), amount, self.tags.tag_ids())

    def remember(self, key: str, ttl: TTL, callback: Callable[[], Any]) -> Any:
        if ttl is None:
            return self.remember_forever(key, callback)

        seconds = self._seconds(ttl)
        if seconds <= 0:
            return callback()

        value, _hit = self._ops().remember().execute(
            self.item_key(key), seconds, callback, self.tags.tag_ids()
        )
        return value

    def remember_forever(self, key: str, callback: Callable[[], Any]) -> Any:
        value, _hit = self._ops().remember_forever().execute(
            self.item_key(key), callback, self.tags.tag_ids()
        )
        return value

    def entries(self) -> Iterator[str]:
        return self.tags.entries()

    def flush(self) -> bool:
        return self.tags.flush()

    def flush_stale(self) -> bool:
        return self.tags.flush_stale()


class AnyTaggedCache(TaggedCache):
    """Union-mode facade; tags only scope writes and flushes."""

    tags: AnyTagSet

    def item_key(self, key: str) -> str:
        return key

    def _ops(self):
        return self.store.any_tag_ops()

    def get(self, key: str, default: Any = None) -> Any:
        raise UnsupportedTagOperationError('get')

    def many(self, keys: Iterable[str]) -> Dict[str, Any]:
        raise UnsupportedTagOperationError('many')

    def has(self, key: str) -> bool:
        raise UnsupportedTagOperationError('has')

    def pull(self, key: str, default: Any = None) -> Any:
        raise UnsupportedTagOperationError('pull')

    def forget(self, key: str) -> bool:
        raise UnsupportedTagOperationError('forget')

    def put(self, key: Union[str, Dict[str, Any]], value: Any = None, ttl: TTL = None) -> bool:
        if isinstance(key, dict):
            return self.put_many(key, value)

        if ttl is None:
            return self.forever(key, value)

        seconds = self._seconds(ttl)
        if seconds <= 0:
            return False

        return self._ops().put().execute(key, value, seconds, self.tags.get_names())

    def put_many(self, values: Dict[str, Any], ttl: TTL = None) -> bool:
        if ttl is None:
            return self._put_many_forever(values)

        seconds = self._seconds(ttl)
        if seconds <= 0:
            return False

        return self._ops().put_many().execute(values, seconds, self.tags.get_names())

    def add(self, key: str, value: Any, ttl: TTL = None) -> bool:
        if ttl is None:
            seconds = DEFAULT_ADD_SECONDS
        else:
            seconds = self._seconds(ttl)
            if seconds <= 0:
                return False

        return self._ops().add().execute(key, value, seconds, self.tags.get_names())

    def forever(self, key: str, value: Any) -> bool:
        return self._ops().forever().execute(key, value, self.tags.get_names())

    def increment(self, key: str, amount: int = 1) -> Union[int, bool]:
        return self._ops().increment().execute(key, amount, self.tags.get_names())

    def decrement(self, key: str, amount: int = 1) -> Union[int, bool]:
        return self._ops().decrement().execute(key, amount, self.tags.get_names())

    def remember(self, key: str, ttl: TTL, callback: Callable[[], Any]) -> Any:
        if ttl is None:
            return self.remember_forever(key, callback)

        seconds = self._seconds(ttl)
        if seconds <= 0:
            return callback()

        value, _hit = self._ops().remember().execute(key, seconds, callback, self.tags.get_names())
        return value

    def remember_forever(self, key: str, callback: Callable[[], Any]) -> Any:
        value, _hit = self._ops().remember_forever().execute(key, callback, self.tags.get_names())
        return value

    def items(self) -> Iterator[Tuple[str, Any]]:
        """``(key, value)`` pairs of every live key under any of the tags."""
        return self._ops().get_tag_items().execute(self.tags.get_names())

    def tagged_keys(self, tag: str) -> Iterator[str]:
        return self._ops().get_tagged_keys().execute(tag)

    def flush(self) -> bool:
        return self.tags.flush()


__all__ = ['TaggedCache', 'AllTaggedCache', 'AnyTaggedCache', 'DEFAULT_ADD_SECONDS']

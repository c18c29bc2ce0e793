"""
Tag sets: the resolved list of tags a tagged cache writes to and flushes.

``AllTagSet`` turns tag names into sorted-set identifiers and derives the
namespace that keeps one key apart under different tag combinations.
``AnyTagSet`` works on plain tag names.
"""

from typing import Iterator, List, Optional

from src.cache.context import StoreContext


class AllTagSet:
    """Tags of an all-mode (intersection) tagged cache."""

    def __init__(self, store, names: List[str]):
        self._store = store
        self._names = [str(name) for name in names]

    def get_names(self) -> List[str]:
        return list(self._names)

    def tag_id(self, name: str) -> str:
        return StoreContext.all_tag_id(name)

    def tag_ids(self) -> List[str]:
        return [self.tag_id(name) for name in self._names]

    def tag_key(self, name: str) -> str:
        """Full Redis key of one tag's sorted set."""
        return self._store.context.all_tag_key(self.tag_id(name))

    def get_namespace(self) -> str:
        return '|'.join(self.tag_ids())

    def entries(self) -> Iterator[str]:
        """Namespaced keys referenced by these tags (unique per tag)."""
        return self._store.all_tag_ops().get_entries().execute(self.tag_ids())

    def add_entry(self, key: str, ttl: int = 0, update_when: Optional[str] = None) -> bool:
        """Record ``key`` under every tag; ``ttl <= 0`` records it as forever."""
        return self._store.all_tag_ops().add_entry().execute(
            key, ttl, self.tag_ids(), update_when
        )

    def flush(self) -> bool:
        return self._store.all_tag_ops().flush().execute(self.tag_ids(), self.get_names())

    def flush_stale(self) -> bool:
        return self._store.all_tag_ops().flush_stale().execute(self.tag_ids())


class AnyTagSet:
    """Tags of an any-mode (union) tagged cache."""

    def __init__(self, store, names: List[str]):
        self._store = store
        self._names = list(dict.fromkeys(str(name) for name in names))

    def get_names(self) -> List[str]:
        return list(self._names)

    def tag_id(self, name: str) -> str:
        return name

    def tag_ids(self) -> List[str]:
        return self.get_names()

    def tag_hash_key(self, name: str) -> str:
        return self._store.context.tag_hash_key(name)

    tag_key = tag_hash_key

    def get_namespace(self) -> str:
        # Any-mode keys are stored as given
        return ''

    def entries(self) -> Iterator[str]:
        """Keys under any of these tags, each yielded once."""
        get_tagged_keys = self._store.any_tag_ops().get_tagged_keys()
        seen = set()
        for name in self._names:
            for key in get_tagged_keys.execute(name):
                if key not in seen:
                    seen.add(key)
                    yield key

    def flush(self) -> bool:
        return self._store.any_tag_ops().flush().execute(self.get_names())

    def flush_tag(self, name: str) -> bool:
        return self._store.any_tag_ops().flush().execute([name])

    def reset_tag(self, name: str) -> str:
        """Flush a single tag and return its name."""
        self.flush_tag(name)
        return name

    def reset(self) -> bool:
        return self.flush()


__all__ = ['AllTagSet', 'AnyTagSet']

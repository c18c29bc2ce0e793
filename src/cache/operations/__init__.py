"""
Tag-mode engines.

``all_tag`` implements intersection tagging on sorted sets; ``any_tag``
implements union tagging on hashes with per-field TTLs, a reverse index per
key and a tag registry.
"""

from src.cache.operations.all_tag import AllTagOperations
from src.cache.operations.any_tag import AnyTagOperations

__all__ = ['AllTagOperations', 'AnyTagOperations']

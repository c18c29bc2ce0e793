"""
Value codec for cache entries.

Integers and floats are written to Redis unserialized so INCRBY/DECRBY keep
working on counters and numeric values stay readable from redis-cli. Every
other value is JSON encoded.
"""

import json
from typing import Any, Optional

from src.cache.exceptions import CacheSerializationError


def is_raw_numeric(value: Any) -> bool:
    """Return True for values stored without serialization."""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def serialize(value: Any) -> Any:
    """
    Encode a value for storage.

    Args:
        value: Value to store

    Returns:
        The value itself for numerics, otherwise its JSON text

    Raises:
        CacheSerializationError: If the value cannot be JSON encoded
    """
    if is_raw_numeric(value):
        return value

    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise CacheSerializationError(
            message=f"Failed to serialize value for cache storage: {str(e)}",
            value_type=type(value).__name__,
            original_error=e
        )


def deserialize(raw: Optional[Any]) -> Any:
    """
    Decode a stored value. ``None`` (missing key) decodes to ``None``.

    Raw numerics come back as ``int``/``float``; anything that is not valid
    JSON is returned unchanged so values written by other clients stay
    readable.
    """
    if raw is None:
        return None

    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")

    if not isinstance(raw, str):
        return raw

    try:
        return json.loads(raw)
    except ValueError:
        pass

    # redis-py writes float('inf') as 'inf'
    try:
        return float(raw)
    except ValueError:
        return raw


__all__ = ["is_raw_numeric", "serialize", "deserialize"]

"""
Configuration package.

``CacheConfig`` reads Redis and tagged cache settings from environment
variables, loading a ``.env`` file first.
"""

from src.config.cache import (
    CacheConfig,
    create_cache_config,
    get_cache_config,
    init_cache_config,
)

__all__ = [
    'CacheConfig',
    'create_cache_config',
    'init_cache_config',
    'get_cache_config',
]

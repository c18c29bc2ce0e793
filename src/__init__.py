"""
Redis tagged cache package.

``src.cache`` holds the store, the tag-mode engines and their facades;
``src.config`` reads deployment configuration from the environment;
``src.monitoring`` configures structured logging.
"""

# Package metadata and version information
__version__ = "1.0.0"
__title__ = "Redis Tagged Cache"
__description__ = "Tag-based cache invalidation on Redis with intersection and union tag modes"

__all__ = [
    '__version__',
    '__title__',
    '__description__',
]

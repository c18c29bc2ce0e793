"""
Observability helpers: structured logging setup.

Cache metrics and health checks live beside the cache in
``src.cache.monitoring``.
"""

from src.monitoring.logging import get_logger, setup_structured_logging

__all__ = ['setup_structured_logging', 'get_logger']

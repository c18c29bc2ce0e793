"""
Cache Performance Monitoring and Observability Module

Prometheus metrics for the tagged cache engine: operation counts by outcome,
operation latency, hit/miss counters for remember lookups, and the counters
reported by prune sweeps. Operation objects are wrapped with
``monitor_cache_operation`` which records into the ``CacheMetrics`` carried by
their ``StoreContext``; a context without metrics is simply not measured.

Metric names:
- tagged_cache_operations_total{operation, tag_mode, status}
- tagged_cache_operation_duration_seconds{operation, tag_mode}
- tagged_cache_hits_total{tag_mode} / tagged_cache_misses_total{tag_mode}
- tagged_cache_prune_removed_total{tag_mode, kind}
- tagged_cache_last_prune_timestamp_seconds{tag_mode}
"""

import time
from datetime import datetime, timezone
from functools import wraps
from threading import Lock
from typing import Any, Callable, Dict, Optional, Tuple

import redis
import structlog
from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    CollectorRegistry,
    REGISTRY
)

logger = structlog.get_logger(__name__)

# Prune stats keys that count removals, mapped to the metric's kind label
PRUNE_REMOVAL_KINDS = {
    "stale_entries_removed": "stale",
    "orphans_removed": "orphan",
    "empty_sets_deleted": "empty_structure",
    "empty_hashes_deleted": "empty_structure",
    "expired_tags_removed": "expired_tag",
}


class CacheMetrics:
    """
    Prometheus collectors for tagged cache operations.

    Pass a dedicated ``CollectorRegistry`` when more than one instance lives in
    the same process (tests, multiple stores); the default registry accepts
    each metric name only once.
    """

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self._registry = registry

        self.operations_total = Counter(
            'tagged_cache_operations_total',
            'Total number of tagged cache operations',
            ['operation', 'tag_mode', 'status'],
            registry=self._registry
        )

        self.operation_duration_seconds = Histogram(
            'tagged_cache_operation_duration_seconds',
            'Tagged cache operation duration in seconds',
            ['operation', 'tag_mode'],
            buckets=[0.0005, 0.001, 0.002, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0],
            registry=self._registry
        )

        self.hits_total = Counter(
            'tagged_cache_hits_total',
            'Total number of cache hits on remember lookups',
            ['tag_mode'],
            registry=self._registry
        )

        self.misses_total = Counter(
            'tagged_cache_misses_total',
            'Total number of cache misses on remember lookups',
            ['tag_mode'],
            registry=self._registry
        )

        self.prune_removed_total = Counter(
            'tagged_cache_prune_removed_total',
            'Tag references and structures removed by prune sweeps',
            ['tag_mode', 'kind'],
            registry=self._registry
        )

        self.last_prune_timestamp = Gauge(
            'tagged_cache_last_prune_timestamp_seconds',
            'Unix time of the last completed prune sweep',
            ['tag_mode'],
            registry=self._registry
        )

    def record_operation(self, operation: str, tag_mode: str, duration: float, status: str):
        """
        Record one operation outcome.

        Args:
            operation: Operation name (put, flush, prune, ...)
            tag_mode: all, any or none for non-tagged store calls
            duration: Elapsed wall time in seconds
            status: success, failure or error
        """
        self.operations_total.labels(
            operation=operation, tag_mode=tag_mode, status=status
        ).inc()
        self.operation_duration_seconds.labels(
            operation=operation, tag_mode=tag_mode
        ).observe(duration)

    def record_hit(self, tag_mode: str):
        self.hits_total.labels(tag_mode=tag_mode).inc()

    def record_miss(self, tag_mode: str):
        self.misses_total.labels(tag_mode=tag_mode).inc()

    def record_prune(self, tag_mode: str, stats: Dict[str, int]):
        """Add the removal counters of a finished prune sweep."""
        for stat_key, kind in PRUNE_REMOVAL_KINDS.items():
            count = stats.get(stat_key, 0)
            if count:
                self.prune_removed_total.labels(tag_mode=tag_mode, kind=kind).inc(count)
        self.last_prune_timestamp.labels(tag_mode=tag_mode).set(time.time())


def _operation_status(result: Any) -> str:
    if result is False:
        return 'failure'
    return 'success'


def monitor_cache_operation(operation: str, tag_mode: Optional[str] = None):
    """
    Decorator recording status and latency of an operation's ``execute``.

    The wrapped method's instance must expose ``context`` (a ``StoreContext``).
    The tag_mode label comes from the argument, else from the instance's
    ``tag_mode`` attribute. Exceptions are recorded as ``error`` and re-raised
    unchanged.
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            metrics = getattr(self.context, 'metrics', None)
            if metrics is None:
                return func(self, *args, **kwargs)

            mode = tag_mode or getattr(self, 'tag_mode', 'none')
            start_time = time.perf_counter()
            try:
                result = func(self, *args, **kwargs)
            except Exception:
                metrics.record_operation(operation, mode, time.perf_counter() - start_time, 'error')
                raise

            metrics.record_operation(
                operation, mode, time.perf_counter() - start_time, _operation_status(result)
            )
            return result

        return wrapper
    return decorator


def check_cache_health(store) -> Tuple[bool, Dict[str, Any]]:
    """
    Ping the backend of a ``RedisTagStore``.

    Returns:
        Tuple of (is_healthy, health_details)
    """
    context = store.context
    details: Dict[str, Any] = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'cluster': context.is_cluster(),
        'tag_mode': store.tag_mode.value,
        'prefix': context.prefix,
    }

    start_time = time.perf_counter()
    try:
        healthy = bool(context.client.ping())
    except redis.RedisError as e:
        logger.warning("Cache health check failed", error=str(e), error_type=type(e).__name__)
        details['error'] = str(e)
        healthy = False

    details['ping_latency_seconds'] = time.perf_counter() - start_time
    details['healthy'] = healthy
    return healthy, details


_global_metrics: Optional[CacheMetrics] = None
_metrics_lock = Lock()


def get_cache_metrics() -> CacheMetrics:
    """Return the process-wide ``CacheMetrics`` bound to the default registry."""
    global _global_metrics

    with _metrics_lock:
        if _global_metrics is None:
            _global_metrics = CacheMetrics()
        return _global_metrics


__all__ = [
    'CacheMetrics',
    'monitor_cache_operation',
    'check_cache_health',
    'get_cache_metrics',
]

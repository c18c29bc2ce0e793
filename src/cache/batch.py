"""
Batch executors used by every tagged operation.

A single-node Redis connection gets a ``PipelineBatch``: commands are queued
on a redis-py pipeline and sent in one round trip inside MULTI/EXEC. A Redis
Cluster connection gets a ``SequentialBatch``: the same queued commands run one
by one, because a pipeline spanning several hash slots is not safe there.

Both expose the redis-py command surface for queueing and an ``execute()``
returning the ordered results, or ``None`` when the pipeline failed as a
whole. Sequential execution never fails as a whole; a command that raised
leaves its exception in the result list and the remaining commands still run.
"""

from typing import Any, Callable, List, Optional, Tuple

import redis
import structlog

logger = structlog.get_logger(__name__)


def succeeded(result: Any) -> bool:
    """Return True when a single command result reports success."""
    if result is None or result is False:
        return False
    return not isinstance(result, Exception)


def completed(results: Optional[List[Any]]) -> bool:
    """Return True when a batch ran and none of its commands raised."""
    if results is None:
        return False
    return not any(isinstance(result, Exception) for result in results)


class PipelineBatch:
    """Queue commands on a redis-py pipeline and run them in one round trip."""

    def __init__(self, client: redis.Redis, operation: str = "batch", transaction: bool = True):
        self._pipeline = client.pipeline(transaction=transaction)
        self._operation = operation
        self._size = 0

    def __getattr__(self, name: str) -> Callable[..., "PipelineBatch"]:
        command = getattr(self._pipeline, name)

        def enqueue(*args, **kwargs):
            command(*args, **kwargs)
            self._size += 1
            return self

        return enqueue

    def __len__(self) -> int:
        return self._size

    def execute(self) -> Optional[List[Any]]:
        """
        Send the queued commands.

        Returns:
            Ordered command results, or None if the pipeline failed
        """
        try:
            return self._pipeline.execute()
        except redis.RedisError as e:
            logger.warning(
                "Pipeline execution failed",
                operation=self._operation,
                commands=self._size,
                error=str(e),
                error_type=type(e).__name__
            )
            return None


class SequentialBatch:
    """Run queued commands one at a time against a cluster client."""

    def __init__(self, client: Any, operation: str = "batch"):
        self._client = client
        self._operation = operation
        self._commands: List[Tuple[str, tuple, dict]] = []

    def __getattr__(self, name: str) -> Callable[..., "SequentialBatch"]:
        # Fail at queue time for unknown commands, like a pipeline does
        getattr(self._client, name)

        def enqueue(*args, **kwargs):
            self._commands.append((name, args, kwargs))
            return self

        return enqueue

    def __len__(self) -> int:
        return len(self._commands)

    def execute(self) -> List[Any]:
        """
        Run the queued commands in order.

        Returns:
            Ordered results; a failed command contributes its exception
        """
        results: List[Any] = []
        commands, self._commands = self._commands, []

        for name, args, kwargs in commands:
            try:
                results.append(getattr(self._client, name)(*args, **kwargs))
            except redis.RedisError as e:
                logger.warning(
                    "Sequential command failed",
                    operation=self._operation,
                    command=name,
                    error=str(e),
                    error_type=type(e).__name__
                )
                results.append(e)

        return results


__all__ = ["PipelineBatch", "SequentialBatch", "completed", "succeeded"]

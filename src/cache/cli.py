"""
Console commands for the tagged cache.

    tagged-cache prune [--mode all|any] [--scan-count N]
    tagged-cache doctor

``prune`` runs the reconciliation sweep for the configured (or given) tag
mode and prints its counters. ``doctor`` checks the connection and runs a
short functional round trip under a throwaway key prefix, then removes
everything it wrote. Both exit with 1 on failure.
"""

import argparse
import json
import sys
from typing import Callable, List, Optional, Tuple

import redis
import structlog

from src.cache.client import RedisConnectionManager, create_store
from src.cache.exceptions import CacheError, PruneError
from src.cache.store import RedisTagStore, TagMode
from src.config.cache import ENVIRONMENTS, create_cache_config
from src.monitoring.logging import setup_structured_logging

logger = structlog.get_logger(__name__)

DOCTOR_PREFIX = '_doctor:test:'
DOCTOR_TAGS = ('doctor:alpha', 'doctor:beta')


def _print_stats(stats, as_json: bool):
    if as_json:
        print(json.dumps(stats, sort_keys=True))
        return
    width = max(len(name) for name in stats) if stats else 0
    for name, value in stats.items():
        print(f"  {name.ljust(width)}  {value}")


def run_prune(store: RedisTagStore, scan_count: int, as_json: bool = False) -> int:
    mode = store.tag_mode.value
    if not as_json:
        print(f"Pruning {mode}-mode tag structures (scan count {scan_count})...")

    try:
        stats = store.prune(scan_count)
    except PruneError as e:
        print(f"Prune failed: {e.message}", file=sys.stderr)
        return 1

    _print_stats(stats, as_json)
    return 0


class Doctor:
    """Functional self-check against a live backend."""

    def __init__(self, store: RedisTagStore):
        self.store = RedisTagStore(
            store.client,
            prefix=store.get_prefix() + DOCTOR_PREFIX,
            tag_mode=store.tag_mode,
            cluster=store.context.is_cluster()
        )
        self.passed = 0
        self.failures: List[str] = []

    def checks(self) -> List[Tuple[str, Callable[[], bool]]]:
        checks = [
            ("Backend responds to PING", self._check_ping),
            ("Plain put and get round trip", self._check_plain_round_trip),
        ]
        if self.store.tag_mode is TagMode.ANY:
            checks += [
                ("Tagged put is readable through the store", self._check_any_tagged_put),
                ("Flushing one tag removes the key", self._check_any_flush),
            ]
        else:
            checks += [
                ("Tagged put is readable with the same tags", self._check_all_tagged_put),
                ("Flushing one tag removes the key", self._check_all_flush),
            ]
        checks += [
            ("Tagged increment starts at one", self._check_increment),
            ("Prune completes", self._check_prune),
        ]
        return checks

    def _check_ping(self) -> bool:
        return bool(self.store.client.ping())

    def _check_plain_round_trip(self) -> bool:
        self.store.put('plain', {'ok': True}, 60)
        return self.store.get('plain') == {'ok': True}

    def _check_all_tagged_put(self) -> bool:
        cache = self.store.tags(*DOCTOR_TAGS)
        return cache.put('tagged', 'value', 60) and cache.get('tagged') == 'value'

    def _check_all_flush(self) -> bool:
        self.store.tags(DOCTOR_TAGS[0]).flush()
        return self.store.tags(*DOCTOR_TAGS).get('tagged') is None

    def _check_any_tagged_put(self) -> bool:
        return (
            self.store.tags(*DOCTOR_TAGS).put('tagged', 'value', 60)
            and self.store.get('tagged') == 'value'
        )

    def _check_any_flush(self) -> bool:
        self.store.tags(DOCTOR_TAGS[1]).flush()
        return self.store.get('tagged') is None

    def _check_increment(self) -> bool:
        return self.store.tags('doctor:counter').increment('counter') == 1

    def _check_prune(self) -> bool:
        return isinstance(self.store.prune(), dict)

    def cleanup(self):
        client = self.store.client
        for key in client.scan_iter(match=self.store.get_prefix() + '*', count=1000):
            client.delete(key)

    def run(self) -> int:
        context = self.store.context
        print(f"Tag mode: {self.store.tag_mode.value}")
        print(f"Cluster: {'yes' if context.is_cluster() else 'no'}")
        print(f"Key prefix: {context.prefix}")
        print("")
        print("Running checks...")

        try:
            for description, check in self.checks():
                try:
                    ok = check()
                except (CacheError, redis.RedisError) as e:
                    logger.warning("Doctor check raised", check=description, error=str(e))
                    ok = False

                if ok:
                    self.passed += 1
                    print(f"  ✓ {description}")
                else:
                    self.failures.append(description)
                    print(f"  ✗ {description}")
        finally:
            try:
                self.cleanup()
            except redis.RedisError as e:
                logger.warning("Doctor cleanup failed", error=str(e))

        print("")
        if self.failures:
            total = self.passed + len(self.failures)
            print(f"✗ {len(self.failures)} CHECK(S) FAILED (out of {total} total)")
            return 1

        print(f"✓ ALL CHECKS PASSED ({self.passed} checks)")
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='tagged-cache',
        description="Tagged cache maintenance commands",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  tagged-cache prune                      # Prune using CACHE_TAG_MODE
  tagged-cache prune --mode any           # Prune any-mode structures
  tagged-cache doctor                     # Connection and round trip check
        """
    )
    parser.add_argument(
        "--environment",
        choices=ENVIRONMENTS,
        default=None,
        help="Configuration environment (default: CACHE_ENV or FLASK_ENV)"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    prune = subparsers.add_parser("prune", help="Remove stale and orphaned tag references")
    prune.add_argument(
        "--mode",
        choices=[mode.value for mode in TagMode],
        default=None,
        help="Tag mode to prune (default: CACHE_TAG_MODE)"
    )
    prune.add_argument(
        "--scan-count",
        type=int,
        default=None,
        help="SCAN page size (default: CACHE_PRUNE_SCAN_COUNT)"
    )
    prune.add_argument(
        "--json",
        action="store_true",
        help="Print counters as one JSON object"
    )

    subparsers.add_parser("doctor", help="Check the backend and run a functional round trip")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point of the ``tagged-cache`` console script."""
    args = build_parser().parse_args(argv)

    try:
        config = create_cache_config(args.environment)
        setup_structured_logging(config.log_level, config.log_format)
    except CacheError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    manager = RedisConnectionManager(config)
    try:
        store = create_store(config, connection_manager=manager)

        if args.command == 'prune':
            if args.mode:
                store.set_tag_mode(args.mode)
            scan_count = args.scan_count or config.prune_scan_count
            return run_prune(store, scan_count, as_json=args.json)

        return Doctor(store).run()
    except CacheError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    finally:
        manager.close()


if __name__ == '__main__':
    sys.exit(main())

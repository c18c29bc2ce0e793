"""
Console command tests: prune and doctor against the in-memory backend.
"""

import json
import os
from unittest.mock import patch

import pytest

from src.cache.cli import DOCTOR_PREFIX, Doctor, build_parser, main, run_prune
from src.cache.exceptions import RedisConnectionError
from src.config.cache import CacheConfig


@pytest.fixture
def cli_config():
    with patch.dict(os.environ, {'CACHE_PRUNE_SCAN_COUNT': '200'}, clear=True):
        return CacheConfig('testing')


@pytest.fixture
def run_cli(cli_config):
    """Run ``main`` with configuration, logging and store creation patched."""
    def runner(argv, store):
        with patch('src.cache.cli.create_cache_config', return_value=cli_config), \
                patch('src.cache.cli.setup_structured_logging'), \
                patch('src.cache.cli.RedisConnectionManager'), \
                patch('src.cache.cli.create_store', return_value=store):
            return main(argv)
    return runner


class TestParser:

    def test_prune_arguments(self):
        args = build_parser().parse_args(['--environment', 'staging', 'prune', '--mode', 'any',
                                          '--scan-count', '10', '--json'])

        assert args.environment == 'staging'
        assert args.command == 'prune'
        assert args.mode == 'any'
        assert args.scan_count == 10
        assert args.json is True

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_unknown_mode_is_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(['prune', '--mode', 'both'])


class TestPrune:

    def test_prints_counters(self, all_store, clock, capsys):
        all_store.tags('a').put('k', 1, 10)
        clock.advance(60)

        assert run_prune(all_store, 100) == 0

        output = capsys.readouterr().out
        assert 'Pruning all-mode tag structures (scan count 100)' in output
        assert 'stale_entries_removed' in output

    def test_json_output(self, any_store, client, capsys):
        any_store.tags('a').put('k', 1, 60)
        client.delete('cache:k')

        assert run_prune(any_store, 100, as_json=True) == 0

        stats = json.loads(capsys.readouterr().out)
        assert stats['hashes_scanned'] == 1
        assert stats['orphans_removed'] == 1

    def test_failure_exits_with_one(self, all_store, client, capsys):
        client.fail_commands.add('scan')

        assert run_prune(all_store, 100) == 1
        assert 'Prune failed' in capsys.readouterr().err

    def test_main_uses_configured_scan_count(self, run_cli, all_store, client):
        all_store.tags('a').put('k', 1, 60)
        client.reset_calls()

        assert run_cli(['prune'], all_store) == 0

        scans = [kwargs for name, _args, kwargs in client.calls if name == 'scan']
        assert scans and all(kwargs['count'] == 200 for kwargs in scans)

    def test_main_mode_override(self, run_cli, all_store, capsys):
        assert run_cli(['prune', '--mode', 'any', '--json'], all_store) == 0

        assert 'hashes_scanned' in json.loads(capsys.readouterr().out)

    def test_main_reports_connection_errors(self, cli_config, capsys):
        with patch('src.cache.cli.create_cache_config', return_value=cli_config), \
                patch('src.cache.cli.setup_structured_logging'), \
                patch('src.cache.cli.RedisConnectionManager') as manager, \
                patch('src.cache.cli.create_store', side_effect=RedisConnectionError('Redis is down')):
            assert main(['prune']) == 1

        manager.return_value.close.assert_called_once_with()
        assert 'Error: Redis is down' in capsys.readouterr().err

    def test_main_closes_connections_after_command(self, cli_config, all_store):
        with patch('src.cache.cli.create_cache_config', return_value=cli_config), \
                patch('src.cache.cli.setup_structured_logging'), \
                patch('src.cache.cli.RedisConnectionManager') as manager, \
                patch('src.cache.cli.create_store', return_value=all_store) as create:
            assert main(['prune']) == 0

        create.assert_called_once_with(cli_config, connection_manager=manager.return_value)
        manager.return_value.close.assert_called_once_with()


class TestDoctor:

    @pytest.mark.parametrize('mode', ['all', 'any'])
    def test_all_checks_pass_and_cleanup(self, store_factory, client, capsys, mode):
        store = store_factory(tag_mode=mode)
        client.set('cache:unrelated', '"keep"')

        assert Doctor(store).run() == 0

        output = capsys.readouterr().out
        assert f'Tag mode: {mode}' in output
        assert '✓ ALL CHECKS PASSED (6 checks)' in output
        assert client.keys(f'cache:{DOCTOR_PREFIX}*') == []
        assert client.get('cache:unrelated') == '"keep"'

    def test_doctor_uses_own_prefix(self, all_store):
        doctor = Doctor(all_store)

        assert doctor.store.get_prefix() == 'cache:' + DOCTOR_PREFIX
        assert doctor.store.context.is_cluster() is all_store.context.is_cluster()

    def test_failed_check_exits_with_one(self, all_store, client, capsys):
        client.fail_commands.add('ping')

        assert Doctor(all_store).run() == 1

        output = capsys.readouterr().out
        assert '✗ Backend responds to PING' in output
        assert 'CHECK(S) FAILED' in output

    def test_main_runs_doctor(self, run_cli, any_store, capsys):
        assert run_cli(['doctor'], any_store) == 0
        assert 'ALL CHECKS PASSED' in capsys.readouterr().out

"""
Structured logging setup tests.
"""

import logging

import pytest
import structlog

from src.monitoring.logging import add_service_name, get_logger, setup_structured_logging


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    structlog.reset_defaults()
    root.handlers = handlers
    root.setLevel(level)


class TestSetupStructuredLogging:

    def test_json_renderer_by_default(self):
        setup_structured_logging('debug', 'json')

        processors = structlog.get_config()['processors']
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        assert add_service_name in processors
        assert logging.getLogger().level == logging.DEBUG

    def test_console_renderer(self):
        setup_structured_logging('warning', 'console')

        processors = structlog.get_config()['processors']
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
        assert logging.getLogger().level == logging.WARNING

    def test_root_handler_is_installed(self):
        setup_structured_logging('info', 'json')

        handlers = logging.getLogger().handlers
        assert len(handlers) == 1
        assert isinstance(handlers[0], logging.StreamHandler)


class TestProcessors:

    def test_service_name_is_added(self):
        assert add_service_name(None, 'info', {'event': 'x'}) == {'event': 'x', 'service': 'tagged-cache'}

    def test_existing_service_name_is_kept(self):
        event = add_service_name(None, 'info', {'event': 'x', 'service': 'worker'})
        assert event['service'] == 'worker'

    def test_get_logger(self):
        assert get_logger('tests') is not None

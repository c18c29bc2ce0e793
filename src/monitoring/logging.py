"""
Structured logging configuration using structlog.

Every module logs with ``structlog.get_logger(__name__)`` and keyword event
fields. ``setup_structured_logging`` routes those events through the standard
library ``logging`` machinery and renders them as JSON lines (default) or
human-readable console output.

Settings come from the arguments or, when omitted, from the environment:
``LOG_LEVEL`` (default INFO), ``LOG_FORMAT`` (``json`` or ``console``) and
``LOG_COLORS`` (console colours, default on).
"""

import logging
import logging.config
import os
from typing import Optional

import structlog


class LoggingConfig:
    """Environment defaults for logging."""

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
    LOG_FORMAT = os.getenv('LOG_FORMAT', 'json').lower()
    COLORED_CONSOLE_OUTPUT = os.getenv('LOG_COLORS', 'true').lower() == 'true'


def add_service_name(logger, method_name, event_dict):
    event_dict.setdefault('service', 'tagged-cache')
    return event_dict


def setup_structured_logging(
    level: Optional[str] = None,
    fmt: Optional[str] = None,
    stream: str = 'ext://sys.stderr'
) -> structlog.stdlib.BoundLogger:
    """
    Configure structlog and the root stdlib logger.

    Args:
        level: Log level name; defaults to ``LOG_LEVEL``
        fmt: ``json`` or ``console``; defaults to ``LOG_FORMAT``
        stream: Handler stream in ``logging.config`` notation

    Returns:
        Logger for this module, useful as a smoke test of the setup
    """
    level = (level or LoggingConfig.LOG_LEVEL).upper()
    fmt = (fmt or LoggingConfig.LOG_FORMAT).lower()

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        add_service_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if fmt == 'console':
        processors.append(structlog.dev.ConsoleRenderer(colors=LoggingConfig.COLORED_CONSOLE_OUTPUT))
    else:
        # Default to JSON for log aggregation
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.config.dictConfig({
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'plain': {
                'format': '%(message)s'
            }
        },
        'handlers': {
            'default': {
                'class': 'logging.StreamHandler',
                'formatter': 'plain',
                'stream': stream
            }
        },
        'loggers': {
            '': {
                'handlers': ['default'],
                'level': level,
                'propagate': False
            }
        }
    })

    logger = structlog.get_logger(__name__)
    logger.debug("Structured logging configured", level=level, format=fmt)
    return logger


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name or __name__)


__all__ = ['LoggingConfig', 'setup_structured_logging', 'get_logger', 'add_service_name']

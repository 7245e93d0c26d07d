"""
Logging configuration for s2k.

Configures structlog on top of the standard library logger: human-readable
console output for interactive use, JSON lines when running inside automation.
"""

import logging
import sys

import structlog


def configure_logging(level: str = "warning", json_output: bool = False) -> None:
    """
    Configure logging for the process. Called once by the CLI on startup.

    :param level: Log level name (debug, info, warning, error, critical).
    :param json_output: Render events as JSON instead of console lines.
    """
    log_level = getattr(logging, level.upper(), logging.WARNING)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setLevel(log_level)

    logging.basicConfig(
        level=log_level,
        handlers=[stream_handler],
        format="%(message)s",
        force=True,
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structlog logger instance.

    :param name: Logger name, usually ``__name__``.
    :return: A bound structlog logger.
    """
    return structlog.get_logger(name)

"""Structured logging setup."""

from __future__ import annotations

import logging
import sys

import structlog

from ensemble.config import get_logging_settings


def configure_logging(level: str | None = None, json_logs: bool | None = None) -> None:
    """Configure structlog for the current process.

    Console output uses rich tracebacks; JSON output suits log shippers.

    Args:
        level: Minimum log level name, defaults to LOG_LEVEL
        json_logs: Render JSON lines instead of the console renderer
    """
    settings = get_logging_settings()
    level_name = (level or settings.level).upper()
    use_json = settings.json_logs if json_logs is None else json_logs

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if use_json:
        processors.extend(
            [
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ]
        )
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                exception_formatter=structlog.dev.RichTracebackFormatter(),
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping().get(level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

"""
Logging utilities for the crawl engine.

Module code logs through the standard library; the worker entry point also
gets a structlog logger for job lifecycle events, rendered as JSON in
production and as console output in development.
"""

import logging
import sys
from typing import Any

import structlog

_FAILURE_SUFFIXES = ("_failed", "_error")
_ATTENTION_SUFFIXES = ("_cancelled", "_paused", "_warning")


def setup_engine_logger(
    name: str, level: str = "INFO", json_logs: bool = True, **context: Any
) -> structlog.BoundLogger:
    """
    Set up structured logging for the engine.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_logs: Whether to output JSON format logs
        **context: Values bound to every structured log line (environment, worker_id)

    Returns:
        Configured structlog logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
    ]
    if json_logs:
        renderers = [
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [
            structlog.processors.TimeStamper(fmt="%H:%M:%S", utc=False),
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
        ]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.clear_contextvars()
    if context:
        structlog.contextvars.bind_contextvars(**{key: value for key, value in context.items() if value is not None})

    return structlog.get_logger(name)


def log_job_event(logger: structlog.BoundLogger, event_type: str, job_id: str, **kwargs: Any) -> None:
    """
    Log a job lifecycle event at a level derived from its name.

    job_failed is an error, job_cancelled and job_paused are warnings,
    everything else is info.
    """
    event_data = {"job_id": job_id, **{key: value for key, value in kwargs.items() if value not in (None, "")}}

    if event_type.endswith(_FAILURE_SUFFIXES):
        logger.error(event_type, **event_data)
    elif event_type.endswith(_ATTENTION_SUFFIXES):
        logger.warning(event_type, **event_data)
    else:
        logger.info(event_type, **event_data)

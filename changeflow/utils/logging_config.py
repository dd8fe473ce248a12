"""
Logging configuration using structlog for structured, JSON-based logging.

Every module obtains its logger with ``structlog.get_logger(__name__)`` and
emits snake_case events with keyword context. Session-scoped fields such as
``session_id`` are bound through ``structlog.contextvars`` by the pipeline.
"""

from typing import Any

import structlog


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structured logging.

    JSON output renders exceptions as structured tracebacks; console output
    keeps structlog's pretty exception formatting.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Render JSON lines when true, human-readable console
            output otherwise

    Example:
        >>> configure_logging("DEBUG", json_output=False)
        >>> structlog.get_logger(__name__).info("phase_started", phase="analyze")
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level.upper()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

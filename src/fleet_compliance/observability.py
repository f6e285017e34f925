"""Structured logging for fleet-compliance-engine.

Every module obtains its logger through :func:`get_logger` and logs
key/value events::

    logger = get_logger(__name__)
    logger.info("Scan completed", scan_id=scan.id, violations=12)

:func:`configure_logging` is called once from the application lifespan and
routes structlog and the standard library through one renderer.
"""

import logging
import sys
from typing import Any

import structlog


def sanitize_log_value(value: str | None) -> str | None:
    """Strip CR/LF from externally supplied values before they are logged."""
    if value is None:
        return None
    return value.replace("\r", "").replace("\n", "")


def configure_logging(level: str = "info", json_output: bool = False) -> None:
    """Configure structlog with stdlib logging integration.

    Args:
        level: Log level name (debug, info, warning, error, critical).
        json_output: Render single-line JSON when True, coloured console output otherwise.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to the given module name."""
    return structlog.get_logger(name)

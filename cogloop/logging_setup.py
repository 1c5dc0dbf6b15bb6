"""structlog setup for cogloop entry points."""

from __future__ import annotations

import logging

import structlog

_logging_configured = False


def configure_logging(level: int = logging.WARNING, colors: bool = True) -> None:
    """Configure structlog and standard-library logging.

    Safe to call more than once; later calls are no-ops. Library code never
    calls this. Only entry points such as the CLI do.
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    logging.basicConfig(format="%(message)s", level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=colors),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )

"""Structured logging setup.

Modules obtain a logger with ``get_logger(__name__)`` at import time and log
event-style messages with keyword context::

    logger.info("Patch applied", patch_id=str(patch.id), model_id=str(model_id))

``configure_logging`` is called once by the application entry point; until then
structlog's defaults apply, which is what the unit tests run with.
"""

import logging

import structlog


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structlog processors and the filtering level.

    Args:
        level: Minimum log level name (DEBUG, INFO, WARNING, ERROR).
        json_logs: Render JSON lines instead of the human-readable console format.
    """
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.typing.FilteringBoundLogger:
    """Return a structlog logger bound to the given module name."""
    return structlog.get_logger(name)

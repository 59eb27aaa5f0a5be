"""Structured logging for nodetop using structlog."""

import logging
import os

import structlog
from structlog.types import FilteringBoundLogger


def get_log_level() -> int:
    """Get the log level from environment."""
    level = os.getenv("NODETOP_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level, logging.INFO)


def get_log_format() -> str:
    """Get log format from environment."""
    return os.getenv("LOG_FORMAT", "pretty").lower()


def get_log_colors() -> bool:
    """Get log colors setting from environment."""
    colors_env = os.getenv("LOG_COLORS", "true").lower()
    return colors_env in ("true", "1", "yes", "on")


def configure_logging(handler: logging.Handler | None = None, level: int | None = None) -> None:
    """Route stdlib and structlog output through a single handler.

    The renderer is pretty console output or JSON depending on LOG_FORMAT.
    Passing a handler replaces the default stderr stream handler, e.g. to keep
    log lines off a full-screen terminal UI.
    """
    if get_log_format() == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=get_log_colors())

    if handler is None:
        handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=renderer,
            foreign_pre_chain=[
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
            ],
        )
    )
    logging.root.handlers = [handler]
    logging.root.setLevel(level if level is not None else get_log_level())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Configure structlog on module import
configure_logging()


def get_logger(name: str) -> FilteringBoundLogger:
    """Get a structlog logger bound to a stdlib logger of the same name."""
    return structlog.get_logger(name)

"""Structured logging for the export pipeline (structlog over stdlib handlers)."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler

import structlog

# Library loggers that drown job events at INFO
_NOISY_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "httpx", "httpcore", "uvicorn.access")


def _handlers(log_level: int, log_dir: str, log_file_name: str, max_bytes: int, backup_count: int) -> list:
    formatter = logging.Formatter("%(message)s")
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    try:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                os.path.join(log_dir, log_file_name),
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        )
    except OSError:
        # Unwritable log dir: stdout only
        pass
    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
    return handlers


def setup_logging(
    debug: bool = False,
    log_dir: str = "logs",
    log_max_bytes: int = 10_000_000,
    log_backup_count: int = 5,
    log_file_name: str = "export_pipeline.log",
) -> None:
    """Configure structlog and the stdlib root logger.

    Events are JSON objects unless ``debug`` is set, in which case they are
    rendered for the console. Context bound with ``structlog.contextvars``
    (request id, job id) is merged into every event.
    """
    log_level = logging.DEBUG if debug else logging.INFO
    renderer = structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    for handler in _handlers(log_level, log_dir, log_file_name, log_max_bytes, log_backup_count):
        root_logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if debug else logging.WARNING)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a named structured logger."""
    return structlog.get_logger(name)

"""
Structured logging configuration using structlog.

Usage:
    from kbengine.logging_config import get_logger

    log = get_logger(__name__)
    log.info("source_ingested", source="/docs/a.pdf", chunks=12)
"""
import contextlib
import logging
import logging.handlers
import sys
from typing import Iterator, Optional

import structlog

# Third-party loggers that are chatty at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "sentence_transformers", "aiosqlite", "lance")


def configure_logging(
    log_level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
    use_stderr: bool = False,
) -> None:
    """
    Configure structlog and route stdlib logging through the same renderers.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: JSON lines if True, colored console output otherwise.
        log_file: Optional path; adds a daily-rotated JSON file handler.
        use_stderr: Log to stderr instead of stdout (required for MCP servers).
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
    ]

    if json_format:
        console_renderer = structlog.processors.JSONRenderer()
    else:
        console_renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(getattr(logging, log_level.upper()))

    console_handler = logging.StreamHandler(sys.stderr if use_stderr else sys.stdout)
    console_handler.setFormatter(_formatter(shared_processors, console_renderer))
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.handlers.TimedRotatingFileHandler(
            log_file,
            when="midnight",
            interval=1,
            backupCount=7
        )
        # Files are always JSON so they stay machine-parseable
        file_handler.setFormatter(_formatter(shared_processors, structlog.processors.JSONRenderer()))
        root_logger.addHandler(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root_logger.level))


def _formatter(shared_processors, renderer) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger instance (typically ``get_logger(__name__)``)."""
    return structlog.get_logger(name)


def bind_contextvars(**kwargs) -> None:
    """
    Bind key-value pairs to the context that will be included in all logs.

    Example:
        bind_contextvars(operation_id="rebuild-abc123")
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_contextvars() -> None:
    """Clear all context variables (call at end of request/operation)."""
    structlog.contextvars.clear_contextvars()


@contextlib.contextmanager
def operation_context(**kwargs) -> Iterator[None]:
    """Bind context for the duration of one operation, restoring the previous values after."""
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield

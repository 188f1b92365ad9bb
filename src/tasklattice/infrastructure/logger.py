"""Structured logging configuration using structlog."""

import logging
import sys
from collections.abc import Callable, MutableMapping
from pathlib import Path
from typing import Any, cast

import structlog

Processor = Callable[
    [Any, str, MutableMapping[str, Any]],
    MutableMapping[str, Any] | str | bytes | bytearray | tuple[Any, ...],
]

LOG_FILENAME = "tasklattice.log"

_HANDLER_MARKER = "_tasklattice_handler"


def _shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]


def _formatter(renderer: Processor) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_processors(),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )


def setup_logging(
    log_level: str = "INFO", log_dir: Path | None = None, colors: bool = True
) -> None:
    """Configure structured logging with structlog.

    Console output goes to stderr so stdout stays free for command output.
    When ``log_dir`` is given, a JSON log file is written there as well.
    Calling this again replaces the handlers installed by a previous call.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for log files (if None, only console logging)
        colors: Colorize console output
    """
    level = getattr(logging, log_level.upper())
    root = logging.getLogger()
    root.setLevel(level)

    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            root.removeHandler(handler)
            handler.close()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(_formatter(structlog.dev.ConsoleRenderer(colors=colors)))
    setattr(console_handler, _HANDLER_MARKER, True)
    root.addHandler(console_handler)

    if log_dir:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(str(log_dir / LOG_FILENAME))
        file_handler.setLevel(level)
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
        setattr(file_handler, _HANDLER_MARKER, True)
        root.addHandler(file_handler)

    structlog.configure(
        processors=_shared_processors()
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Structured logger
    """
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))

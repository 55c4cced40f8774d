"""Structured logging for devrun.

devrun's own diagnostics go to stderr through structlog, leaving stdout to the
prefixed output of the services it runs. A rotating log file can be added; it
always receives the full debug trail as JSON lines.

Usage:
    from devrun.logging import setup_logging, get_logger, bind_preset

    setup_logging(settings.log_level, settings.log_format, settings.log_file)
    bind_preset("default")

    logger = get_logger(__name__)
    logger.info("Starting managed process", command="npm run dev")
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, TextIO

import structlog

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUP_COUNT = 3

# Applied to structlog events and to records from plain stdlib loggers alike
SHARED_PROCESSORS = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="%H:%M:%S"),
]


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def _renderer(log_format: str, stream: TextIO):
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=stream.isatty())


def _with_formatter(handler: logging.Handler, level: int, renderer) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
            foreign_pre_chain=SHARED_PROCESSORS,
        )
    )
    return handler


def _file_handler(log_file: Path) -> RotatingFileHandler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(
        log_file,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )


def setup_logging(
    level: str = "INFO",
    log_format: str = "human",
    log_file: Optional[Path] = None,
    verbose: bool = False,
) -> None:
    """Route structlog through stdlib logging to stderr and an optional file.

    Args:
        level: Console level name (DEBUG, INFO, WARN, ERROR).
        log_format: "human" for the console renderer, "json" for JSON lines.
        log_file: Rotating debug log, JSON formatted.
        verbose: Force DEBUG on the console.
    """
    console_level = logging.DEBUG if verbose else _level(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(
        _with_formatter(logging.StreamHandler(sys.stderr), console_level, _renderer(log_format, sys.stderr))
    )
    root.setLevel(console_level)

    if log_file is not None:
        root.addHandler(
            _with_formatter(_file_handler(Path(log_file)), logging.DEBUG, structlog.processors.JSONRenderer())
        )
        root.setLevel(logging.DEBUG)

    structlog.configure(
        processors=SHARED_PROCESSORS + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.clear_contextvars()


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_preset(preset: str) -> None:
    """Tag every subsequent log line with the running preset."""
    structlog.contextvars.bind_contextvars(preset=preset)


def unbind_preset() -> None:
    structlog.contextvars.unbind_contextvars("preset")

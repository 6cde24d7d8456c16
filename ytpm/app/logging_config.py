from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

import structlog
from structlog.typing import EventDict, Processor

from ytpm.app.config import AppSettings
from ytpm.app.telemetry import TELEMETRY_LOGGER_NAME

ROOT_LOGGER_NAME = "ytpm"
LOG_FILE_NAME = "ytpm.log"
TELEMETRY_LOG_FILE_NAME = "ytpm-telemetry.log"

# Library loggers capped at ERROR; discovery warns about its file cache on every build().
_LIBRARY_LOG_LEVELS: dict[str, int] = {
    "googleapiclient.discovery": logging.ERROR,
    "googleapiclient.discovery_cache": logging.ERROR,
    "google.auth.transport": logging.ERROR,
}


@dataclass(frozen=True)
class LogFiles:
    application: Path
    telemetry: Path


def configure_application_logging(
    settings: AppSettings,
    *,
    console: TextIO | None = None,
) -> LogFiles:
    """Route `ytpm.*` loggers through structlog.

    Console output is human readable at the configured level; the
    application file gets every record as JSON; telemetry events go to
    their own JSON file and never reach the console.
    """
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    files = LogFiles(
        application=settings.log_dir / LOG_FILE_NAME,
        telemetry=settings.log_dir / TELEMETRY_LOG_FILE_NAME,
    )
    stream = console if console is not None else sys.stdout

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    _install_handlers(
        ROOT_LOGGER_NAME,
        logging.DEBUG,
        _stream_handler(stream, _console_level(settings.log_level)),
        _json_file_handler(files.application, logging.DEBUG),
    )
    _install_handlers(
        TELEMETRY_LOGGER_NAME,
        logging.INFO,
        _json_file_handler(files.telemetry, logging.INFO),
    )
    for name, level in _LIBRARY_LOG_LEVELS.items():
        logging.getLogger(name).setLevel(level)

    logging.getLogger(ROOT_LOGGER_NAME).info(
        "logging configured console_level=%s application_log=%s telemetry_log=%s",
        settings.log_level.upper(),
        files.application,
        files.telemetry,
    )
    return files


def _install_handlers(logger_name: str, level: int, *handlers: logging.Handler) -> None:
    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    for handler in handlers:
        logger.addHandler(handler)


def _stream_handler(stream: TextIO, level: int) -> logging.Handler:
    handler = logging.StreamHandler(stream=stream)
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_pre_chain(),
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.dev.ConsoleRenderer(colors=_is_tty(stream)),
            ],
        )
    )
    return handler


def _json_file_handler(path: Path, level: int) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_pre_chain(),
            processors=[
                _record_origin,
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(sort_keys=True),
            ],
        )
    )
    return handler


def _pre_chain() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
    ]


def _record_origin(_logger: object, _method_name: str, event_dict: EventDict) -> EventDict:
    record = event_dict.get("_record")
    if isinstance(record, logging.LogRecord):
        event_dict.setdefault("module", record.module)
        event_dict.setdefault("lineno", record.lineno)
        event_dict.setdefault("thread_name", record.threadName)
    return event_dict


def _console_level(raw_level: str) -> int:
    level = logging.getLevelName(raw_level.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _is_tty(stream: TextIO) -> bool:
    try:
        return stream.isatty()
    except (AttributeError, OSError, ValueError):
        return False

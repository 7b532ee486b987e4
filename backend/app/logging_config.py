from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog
from structlog.typing import EventDict, Processor

from backend.app.config import AppSettings

LOG_FILE_NAME = "media-resolver.log"
TELEMETRY_LOG_FILE_NAME = "media-resolver-telemetry.log"
ROOT_LOGGER_NAME = "media_resolver"
TELEMETRY_LOGGER_NAME = "media_resolver.telemetry"


def configure_application_logging(settings: AppSettings) -> Path:
    """
    Console plus JSON-lines file output for `media_resolver.*` loggers.

    Telemetry events get their own file and stay out of the main log. Calling this
    again replaces the handlers instead of stacking them.
    """
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = settings.log_dir / LOG_FILE_NAME
    telemetry_log_file = settings.log_dir / TELEMETRY_LOG_FILE_NAME

    _configure_structlog()

    logger = _detached_logger(ROOT_LOGGER_NAME, logging.DEBUG)
    logger.addHandler(_console_handler(_resolve_log_level(settings.log_level)))
    logger.addHandler(_json_file_handler(log_file, logging.DEBUG))

    telemetry_logger = _detached_logger(TELEMETRY_LOGGER_NAME, logging.INFO)
    telemetry_logger.addHandler(_json_file_handler(telemetry_log_file, logging.INFO))

    logger.info(
        "logging configured console_level=%s path=%s telemetry_path=%s",
        settings.log_level.upper(),
        log_file,
        telemetry_log_file,
    )
    return log_file


def _resolve_log_level(raw_level: str) -> int:
    resolved = getattr(logging, raw_level.strip().upper(), None)
    return resolved if isinstance(resolved, int) else logging.INFO


def _configure_structlog() -> None:
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


def _detached_logger(name: str, level: int) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    return logger


def _console_handler(level: int) -> logging.Handler:
    stream = sys.stdout
    handler = logging.StreamHandler(stream=stream)
    handler.setLevel(level)
    handler.setFormatter(
        _processor_formatter(
            structlog.dev.ConsoleRenderer(colors=_stream_supports_color(stream)),
        )
    )
    return handler


def _json_file_handler(path: Path, level: int) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(
        _processor_formatter(
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
            record_metadata=True,
        )
    )
    return handler


def _processor_formatter(
    *renderers: Processor,
    record_metadata: bool = False,
) -> structlog.stdlib.ProcessorFormatter:
    processors: list[Processor] = [_add_record_metadata] if record_metadata else []
    processors.append(structlog.stdlib.ProcessorFormatter.remove_processors_meta)
    processors.extend(renderers)
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        ],
        processors=processors,
    )


def _add_record_metadata(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    # Provider calls run on their own threads; the thread name says which attempt logged.
    record = event_dict.get("_record")
    if isinstance(record, logging.LogRecord):
        event_dict["pathname"] = record.pathname
        event_dict["lineno"] = record.lineno
        event_dict["func_name"] = record.funcName
        event_dict["thread_name"] = record.threadName
    return event_dict


def _stream_supports_color(stream: object) -> bool:
    isatty = getattr(stream, "isatty", None)
    if not callable(isatty):
        return False
    try:
        return bool(isatty())
    except Exception:
        return False

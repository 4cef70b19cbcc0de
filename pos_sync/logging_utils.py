"""
Structured JSON logging for terminals.

Terminals ship their logs to a collector that expects one JSON object per
line. Sync components add context (table, tenant, entry_id) through
``extra`` or a SyncLoggerAdapter; the formatter flattens it into the line.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import IO, Any

from .exceptions import SyncStorageError

# Attributes every LogRecord carries; anything else came from ``extra``
_STANDARD_ATTRS = frozenset(
    {
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "pathname", "process", "processName", "relativeCreated",
        "stack_info", "exc_info", "exc_text", "thread", "threadName",
        "taskName", "message",
    }
)

# Third-party loggers that log every HTTP request at INFO
NOISY_LOGGERS = ("azure.core.pipeline.policies.http_logging_policy", "azure.identity")

_HANDLER_MARK = "_pos_sync_handler"


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredJsonFormatter(logging.Formatter):
    """
    One JSON object per record.

    Fields:
    - timestamp: record creation time, ISO 8601 in UTC
    - level, logger, message
    - exception: formatted traceback, if any
    - error_code / error_details: for sync engine errors
    - any ``extra`` context (table, tenant, entry_id, ...)
    """

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)
            error = record.exc_info[1]
            if isinstance(error, SyncStorageError):
                log_obj["error_code"] = error.code.value
                log_obj["error_details"] = {k: _jsonable(v) for k, v in error.details.items()}

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                log_obj[key] = _jsonable(value)

        return json.dumps(log_obj, default=str)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str | None = None,
    stream: IO[str] | None = None,
) -> logging.Logger:
    """
    Install the JSON handler on a logger (the root logger by default).

    Calling it again replaces the handler it installed before instead of
    stacking a second one. Handlers installed by anyone else are left alone.

    Args:
        level: Logging level (default: INFO)
        logger_name: Specific logger to configure (default: root logger)
        stream: Where to write (default: stdout)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    for existing in [h for h in logger.handlers if getattr(h, _HANDLER_MARK, False)]:
        logger.removeHandler(existing)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())
    setattr(handler, _HANDLER_MARK, True)

    logger.addHandler(handler)
    logger.setLevel(level)

    if level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    return logger


class SyncLoggerAdapter(logging.LoggerAdapter):
    """
    Stamps fixed sync context (table, tenant) onto every record.

    Context given at the call site through ``extra`` wins over the bound
    context.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **kwargs.get("extra", {})}
        return msg, kwargs

    def bind(self, **context: Any) -> "SyncLoggerAdapter":
        """Return an adapter with additional bound context."""
        return SyncLoggerAdapter(self.logger, {**(self.extra or {}), **context})

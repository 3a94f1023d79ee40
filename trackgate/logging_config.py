"""Logging setup for trackgate.

Console output goes through rich's ``RichHandler``, or through
:class:`StructuredFormatter` as one JSON object per line when structured
logging is enabled.

Transports handle each tracker request inside :func:`request_context`.
Records logged while it is active carry the request's correlation id, the
transport name and the client address, whichever logger emits them.
"""

from __future__ import annotations

import contextlib
import json
import logging
import logging.config
import time
import uuid
from collections.abc import Iterator
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from trackgate.exceptions import TrackgateError

if TYPE_CHECKING:
    from trackgate.models import ObservabilityConfig

REQUEST_FIELDS = ("correlation_id", "transport", "client")

# attributes every LogRecord has; anything else came in through ``extra``
_RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "request_tag", *REQUEST_FIELDS}

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5


@dataclass(frozen=True)
class RequestLogContext:
    """Identity of the request being served."""

    correlation_id: str
    transport: str = ""
    client: str = ""


_current_request: ContextVar[RequestLogContext | None] = ContextVar(
    "trackgate_request", default=None
)


def new_correlation_id() -> str:
    """Short random id, unique enough to follow one request through the log."""
    return uuid.uuid4().hex[:12]


@contextlib.contextmanager
def request_context(
    transport: str,
    client: str = "",
    correlation_id: str | None = None,
) -> Iterator[RequestLogContext]:
    """Tag log records emitted inside the block with a request identity.

    The previous context is restored on exit, so contexts nest.
    """
    context = RequestLogContext(
        correlation_id=correlation_id or new_correlation_id(),
        transport=transport,
        client=client,
    )
    token = _current_request.set(context)
    try:
        yield context
    finally:
        _current_request.reset(token)


def current_request() -> RequestLogContext | None:
    """The request context active in this task, if any."""
    return _current_request.get()


class RequestContextFilter(logging.Filter):
    """Copy the active request context onto each record."""

    def __init__(self, correlation_ids: bool = True):
        """Initialize the filter.

        Args:
            correlation_ids: Include correlation ids (transport and client are
                always included)

        """
        super().__init__()
        self.correlation_ids = correlation_ids

    def filter(self, record: logging.LogRecord) -> bool:
        """Attach request fields and a console tag; never drops records."""
        context = _current_request.get()
        if context is None:
            for name in REQUEST_FIELDS:
                setattr(record, name, "")
            record.request_tag = ""
            return True

        record.correlation_id = context.correlation_id if self.correlation_ids else ""
        record.transport = context.transport
        record.client = context.client
        parts = [p for p in (record.correlation_id, context.transport, context.client) if p]
        record.request_tag = f"[{' '.join(parts)}] " if parts else ""
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        """Serialize the record, its request fields and any ``extra`` values."""
        entry: dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in REQUEST_FIELDS:
            value = getattr(record, name, "")
            if value:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES:
                entry[key] = value

        return json.dumps(entry, default=str)


def build_logging_config(config: ObservabilityConfig) -> dict[str, Any]:
    """``logging.config.dictConfig`` schema for the given settings."""
    level = config.log_level.value
    structured = config.structured_logging

    handlers: dict[str, Any] = {
        "console": (
            {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": "ext://sys.stdout",
            }
            if structured
            else {
                "()": "rich.logging.RichHandler",
                "formatter": "console",
                "show_path": False,
                "markup": False,
                "rich_tracebacks": True,
            }
        ),
    }
    if config.log_file:
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "structured" if structured else "plain",
            "filename": str(Path(config.log_file).expanduser()),
            "maxBytes": LOG_FILE_MAX_BYTES,
            "backupCount": LOG_FILE_BACKUPS,
            "encoding": "utf-8",
        }
    for handler in handlers.values():
        handler["level"] = level
        handler["filters"] = ["request"]

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {"format": "%(request_tag)s%(message)s"},
            "plain": {
                "format": "%(asctime)s %(levelname)-8s %(name)s %(request_tag)s%(message)s",
            },
            "structured": {"()": StructuredFormatter},
        },
        "filters": {
            "request": {
                "()": RequestContextFilter,
                "correlation_ids": config.log_correlation_id,
            },
        },
        "handlers": handlers,
        "loggers": {
            "trackgate": {"level": level, "handlers": list(handlers), "propagate": False},
            # per-request access lines duplicate the tracker's own logging
            "aiohttp.access": {"level": "WARNING"},
        },
        "root": {"level": "WARNING", "handlers": ["console"]},
    }


def setup_logging(config: ObservabilityConfig) -> None:
    """Configure the trackgate logger tree."""
    if config.log_file:
        Path(config.log_file).expanduser().parent.mkdir(parents=True, exist_ok=True)
    logging.config.dictConfig(build_logging_config(config))


@contextlib.contextmanager
def log_operation(logger: logging.Logger, operation: str, **fields: Any) -> Iterator[None]:
    """Log start, duration and outcome of a lifecycle operation."""
    started = time.perf_counter()
    logger.info("Starting %s", operation, extra=fields)
    try:
        yield
    except BaseException as e:
        logger.error(
            "Failed %s after %.3fs: %s",
            operation,
            time.perf_counter() - started,
            e,
            extra=fields,
        )
        raise
    logger.info("Completed %s in %.3fs", operation, time.perf_counter() - started, extra=fields)


def log_exception(logger: logging.Logger, exc: Exception, context: str = "") -> None:
    """Log an exception, including the details of trackgate errors."""
    details = exc.details if isinstance(exc, TrackgateError) else {}
    message = exc.message if isinstance(exc, TrackgateError) else str(exc)
    logger.error("%s: %s", context, message, extra={"details": details}, exc_info=exc)

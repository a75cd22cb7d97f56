"""
Structured logging for offsync.

Records are written as JSON lines tagged with the device session and the
operation in progress (``sync``, ``fetch:<key>``), so one drain pass can be
pulled out of a device log. Queue payloads end up in messages, so every
message is sanitized before it is written.
"""

import json
import logging
import re
import sys
import time
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from offsync.core.config import Settings

UNKNOWN = "unknown"
PACKAGE_LOGGERS = ("offsync", "offsync.resilience", "offsync.sync", "offsync.storage")
PLAIN_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_LINE_BREAKS = str.maketrans({"\r": "\\r", "\n": "\\n"})
# C0 controls and DEL, except tab; CR and LF are escaped first
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


@dataclass(frozen=True)
class LogScope:
    session_id: str = UNKNOWN
    operation_id: str = UNKNOWN
    started: float = 0.0

    def elapsed_ms(self) -> float | None:
        if not self.started:
            return None
        return round((time.monotonic() - self.started) * 1000, 2)


_scope: ContextVar[LogScope] = ContextVar("offsync_log_scope", default=LogScope())


def _sanitize_log_message(message: Any) -> str:
    """Escape CR/LF and drop other control characters so a value cannot forge a log line."""
    return _CONTROL_CHARS.sub("", str(message).translate(_LINE_BREAKS))


@dataclass
class LogContext:
    """One JSON log line."""
    message: str = ""
    level: str = "INFO"
    logger: str = "offsync"
    session_id: str = UNKNOWN
    operation_id: str = UNKNOWN
    duration_ms: float | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    extra: dict = field(default_factory=dict)

    def to_json(self) -> str:
        data = {
            "timestamp": self.timestamp,
            "level": self.level,
            "logger": self.logger,
            "message": self.message,
            "session_id": self.session_id,
            "operation_id": self.operation_id,
        }
        if self.duration_ms is not None:
            data["duration_ms"] = self.duration_ms
        data.update(self.extra)
        return json.dumps(data, default=str)


class StructuredFormatter(logging.Formatter):
    """Formats records as JSON lines carrying the current log scope."""

    def format(self, record: logging.LogRecord) -> str:
        scope = _scope.get()
        line = LogContext(
            message=_sanitize_log_message(record.getMessage()),
            level=record.levelname,
            logger=record.name,
            session_id=_sanitize_log_message(scope.session_id),
            operation_id=_sanitize_log_message(scope.operation_id),
            duration_ms=scope.elapsed_ms(),
            extra=dict(getattr(record, "extra_fields", None) or {}),
        )
        if record.exc_info:
            line.extra["exception"] = self.formatException(record.exc_info)
        return line.to_json()


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    log_file: str | None = None,
) -> None:
    """
    Replace the root handlers with a stderr handler and an optional file handler.

    Args:
        level: Level name, case-insensitive
        json_output: JSON lines on stderr, plain text otherwise
        log_file: Optional path; the file always gets JSON lines
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    root.setLevel(numeric_level)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(StructuredFormatter() if json_output else logging.Formatter(PLAIN_FORMAT))
    handlers: list[logging.Handler] = [console]
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(StructuredFormatter())
        handlers.append(file_handler)

    for handler in handlers:
        handler.setLevel(numeric_level)
        root.addHandler(handler)

    for name in PACKAGE_LOGGERS:
        logging.getLogger(name).setLevel(numeric_level)


def configure_logging_from_settings(settings: "Settings", log_file: str | None = None) -> None:
    """Apply ``log_level`` and ``log_json`` from settings."""
    configure_logging(settings.log_level, settings.log_json, log_file)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_context(session_id: str, operation_id: str) -> Token:
    """Tag records from the current task; returns a token for restoring the previous scope."""
    return _scope.set(LogScope(session_id, operation_id, time.monotonic()))


def clear_context(token: Token | None = None) -> None:
    if token is not None:
        _scope.reset(token)
    else:
        _scope.set(LogScope())


class OperationLogger:
    """
    Logs the start and outcome of an operation and scopes records inside it.

    Example:
        async with OperationLogger("sync", session_id=core.session_id) as op:
            report = await queue.drain()
            op.set_result(synced=report.synced)
    """

    logger = logging.getLogger("offsync.operations")

    def __init__(self, operation: str, session_id: str | None = None, **extra):
        self.operation = operation
        self.session_id = session_id or _scope.get().session_id
        self.extra = extra
        self.result: dict = {}
        self._token: Token | None = None
        self._started = 0.0

    def set_result(self, **fields) -> None:
        self.result.update(fields)

    def _fields(self, **more) -> dict:
        return {"operation": self.operation, **self.extra, **self.result, **more}

    async def __aenter__(self) -> "OperationLogger":
        self._token = set_context(self.session_id, self.operation)
        self._started = time.monotonic()
        self.logger.info(f"Starting {self.operation}", extra={"extra_fields": self._fields()})
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        duration_ms = round((time.monotonic() - self._started) * 1000, 2)
        try:
            if exc_type is None:
                self.logger.info(
                    f"Completed {self.operation} in {duration_ms:.2f}ms",
                    extra={"extra_fields": self._fields(duration_ms=duration_ms)},
                )
            else:
                self.logger.error(
                    f"Failed {self.operation}: {exc_val}",
                    extra={"extra_fields": self._fields(
                        duration_ms=duration_ms,
                        error=str(exc_val),
                        error_type=exc_type.__name__,
                    )},
                )
        finally:
            clear_context(self._token)
            self._token = None


__all__ = [
    "LogContext",
    "LogScope",
    "OperationLogger",
    "StructuredFormatter",
    "clear_context",
    "configure_logging",
    "configure_logging_from_settings",
    "get_logger",
    "set_context",
]

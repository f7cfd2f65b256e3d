"""
Logging for lai-privacy

A single package logger ("lai_privacy"), configured from the
LAI_PRIVACY_LOG_* environment variables on first use or explicitly via
configure_logging(). Every record carries the active log context (the
service operation and, inside the audit trail, the audited action) plus
any keyword fields given to the log call:

    logger.info("Pruned audit entries", removed=3)

Never pass plaintext, passwords or key material to these loggers.
"""

import contextvars
import json
import logging
import os
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

LOGGER_NAME = "lai_privacy"

LOG_LEVEL_ENV = "LAI_PRIVACY_LOG_LEVEL"
LOG_FORMAT_ENV = "LAI_PRIVACY_LOG_FORMAT"
LOG_FILE_ENV = "LAI_PRIVACY_LOG_FILE"


class LogFormat(Enum):
    """Output format for the stderr handler."""
    CONSOLE = "console"
    JSON = "json"
    PRETTY_JSON = "pretty"


@dataclass(frozen=True)
class LogContext:
    """
    Fields attached to every record logged inside a log_context() block.

    operation names the service call (encrypt_results, decrypt_query, ...),
    action the audit action being written (search, filter, ...).
    """
    operation: Optional[str] = None
    action: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = dict(self.extra)
        if self.operation:
            result["operation"] = self.operation
        if self.action:
            result["action"] = self.action
        return result

    def merge(self, operation: Optional[str] = None, action: Optional[str] = None, **extra) -> "LogContext":
        """Return a copy overridden by the given non-empty values."""
        return replace(
            self,
            operation=operation or self.operation,
            action=action or self.action,
            extra={**self.extra, **extra},
        )


_current_context: contextvars.ContextVar[LogContext] = contextvars.ContextVar(
    "lai_privacy_log_context", default=LogContext()
)


def get_current_log_context() -> LogContext:
    return _current_context.get()


@contextmanager
def log_context(**kwargs):
    """
    Add fields to every record logged inside the block.

    Usage:
        with log_context(operation="decrypt_results"):
            ...
    """
    token = _current_context.set(_current_context.get().merge(**kwargs))
    try:
        yield _current_context.get()
    finally:
        _current_context.reset(token)


def _record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    fields = get_current_log_context().to_dict()
    fields.update(getattr(record, "fields", {}))
    return fields


class JsonFormatter(logging.Formatter):
    """One JSON object per record, timestamped in UTC."""

    def __init__(self, pretty: bool = False):
        super().__init__()
        self.pretty = pretty

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry = {
            "timestamp": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_record_fields(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        if self.pretty:
            return json.dumps(entry, indent=2, default=str)
        return json.dumps(entry, separators=(",", ":"), default=str)


class ConsoleFormatter(logging.Formatter):
    """`HH:MM:SS LEVEL message key=value ...` for terminals."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = time.strftime("%H:%M:%S", time.localtime(record.created))
        line = f"{stamp} {record.levelname:<8} {record.getMessage()}"

        fields = _record_fields(record)
        if fields:
            line += " " + " ".join(f"{key}={value}" for key, value in fields.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level}")
    return resolved


class PrivacyLogger(logging.LoggerAdapter):
    """
    Adapter turning keyword arguments of the log methods into structured
    fields. Configures itself from the environment on the first call.
    """

    def __init__(self, name: str = LOGGER_NAME):
        super().__init__(logging.getLogger(name), {})
        self._configured = False

    def configure(
        self,
        level: Union[str, int] = logging.INFO,
        format: Union[str, LogFormat] = LogFormat.CONSOLE,
        log_file: Optional[Path] = None,
        propagate: bool = False,
    ) -> None:
        """
        Replace the handlers of the underlying logger.

        Args:
            level: Level name or number
            format: Format of the stderr handler (console, json, pretty)
            log_file: Optional file receiving JSON lines
            propagate: Whether records also reach the root logger
        """
        format = LogFormat(format.lower()) if isinstance(format, str) else format
        if format == LogFormat.CONSOLE:
            formatter = ConsoleFormatter()
        else:
            formatter = JsonFormatter(pretty=format == LogFormat.PRETTY_JSON)

        self.logger.setLevel(_resolve_level(level))
        self.logger.propagate = propagate
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        self.logger.addHandler(stream_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setFormatter(JsonFormatter())
            self.logger.addHandler(file_handler)

        self._configured = True

    def process(self, msg, kwargs):
        passthrough = {k: kwargs.pop(k) for k in ("exc_info", "stack_info", "stacklevel") if k in kwargs}
        if kwargs:
            passthrough["extra"] = {"fields": kwargs}
        return msg, passthrough

    def log(self, level, msg, *args, **kwargs):
        if not self._configured:
            log_file = os.environ.get(LOG_FILE_ENV)
            self.configure(
                level=os.environ.get(LOG_LEVEL_ENV, "INFO"),
                format=os.environ.get(LOG_FORMAT_ENV, "console"),
                log_file=Path(log_file) if log_file else None,
            )
        super().log(level, msg, *args, **kwargs)

    @contextmanager
    def timed(self, operation: str, level: int = logging.DEBUG):
        """Log start and completion of a block with its duration."""
        start = time.perf_counter()
        self.log(level, f"Starting: {operation}")
        try:
            yield
        finally:
            elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
            self.log(level, f"Completed: {operation}", duration_ms=elapsed_ms)


_logger: Optional[PrivacyLogger] = None


def get_logger() -> PrivacyLogger:
    """Return the shared package logger."""
    global _logger
    if _logger is None:
        _logger = PrivacyLogger()
    return _logger


def configure_logging(
    level: Union[str, int] = logging.INFO,
    format: Union[str, LogFormat] = LogFormat.CONSOLE,
    log_file: Optional[Path] = None,
) -> PrivacyLogger:
    """
    Configure the package logger explicitly.

    Example:
        configure_logging(level="DEBUG", format="json")
    """
    logger = get_logger()
    logger.configure(level=level, format=format, log_file=log_file)
    return logger


__all__ = [
    "LogFormat",
    "LogContext",
    "PrivacyLogger",
    "JsonFormatter",
    "ConsoleFormatter",
    "get_logger",
    "configure_logging",
    "log_context",
    "get_current_log_context",
]

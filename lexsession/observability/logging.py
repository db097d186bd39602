"""
Structured Logging: Session-Scoped Fields on Standard Loggers

Library modules log through `logging.getLogger(__name__)` with `extra=`
fields. This module adds two things on top of that:

- `session_scope(...)`: binds fields (session code, cache tier, ...) to the
  current task so every record emitted inside the block carries them,
  whichever module emits it
- `setup_logging(...)`: installs a handler that renders records either as
  one JSON object per line or as a readable line with trailing key=value
  pairs

Scope fields are attached to records by `ScopeFilter` at handler level,
so the text and JSON renderings see the same set of fields.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Iterator, Mapping, Optional, TextIO

from lexsession.core.config import ObservabilityConfig


class LogLevel(IntEnum):
    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    @classmethod
    def parse(cls, name: str) -> LogLevel:
        """Resolve a level name such as "info" or "WARNING"."""
        try:
            return cls[name.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown log level: {name!r}") from None


_scope: ContextVar[Mapping[str, Any]] = ContextVar("lexsession_log_scope", default={})

# Set on every record by the logging module itself
_BUILTIN_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}


def record_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Every non-builtin attribute on `record`: `extra=` plus scope fields."""
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _BUILTIN_ATTRS
    }


@contextmanager
def session_scope(**fields: Any) -> Iterator[Mapping[str, Any]]:
    """
    Attach `fields` to every record logged in this block.

    Nested scopes merge, inner values win. The scope follows the asyncio
    task, so concurrent requests do not see each other's fields.
    """
    merged = {**_scope.get(), **fields}
    token = _scope.set(merged)
    try:
        yield merged
    finally:
        _scope.reset(token)


def current_scope() -> Mapping[str, Any]:
    return dict(_scope.get())


class ScopeFilter(logging.Filter):
    """Copies the active scope onto records without overriding `extra=`."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _scope.get().items():
            if key not in record.__dict__:
                setattr(record, key, value)
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "@timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(record_fields(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class KeyValueFormatter(logging.Formatter):
    """`<time> | LEVEL | logger | message key=value ...`"""

    def __init__(self) -> None:
        super().__init__("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = record_fields(record)
        if not fields:
            return line
        head, sep, tail = line.partition("\n")
        pairs = " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        return f"{head} {pairs}{sep}{tail}"


class StructuredLogger:
    """
    Keyword-argument front end over a stdlib logger.

    Usage:
        log = StructuredLogger("lexsession.demo").bind(component="reaper")
        log.info("Sweep finished", removed=3)
    """

    __slots__ = ("_logger", "_bound")

    def __init__(self, name: str, bound: Optional[Mapping[str, Any]] = None) -> None:
        self._logger = logging.getLogger(name)
        self._bound = dict(bound or {})

    @property
    def name(self) -> str:
        return self._logger.name

    def bind(self, **fields: Any) -> StructuredLogger:
        """New logger with `fields` added to every record."""
        return StructuredLogger(self._logger.name, {**self._bound, **fields})

    def log(self, level: LogLevel, message: str, **fields: Any) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(level, message, extra={**self._bound, **fields})

    def debug(self, message: str, **fields: Any) -> None:
        self.log(LogLevel.DEBUG, message, **fields)

    def info(self, message: str, **fields: Any) -> None:
        self.log(LogLevel.INFO, message, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self.log(LogLevel.WARNING, message, **fields)

    def error(self, message: str, **fields: Any) -> None:
        self.log(LogLevel.ERROR, message, **fields)


def setup_logging(
    config: Optional[ObservabilityConfig] = None,
    stream: Optional[TextIO] = None,
) -> logging.Handler:
    """
    Configure the root logger from `config` and return the installed handler.

    Replaces any handlers already on the root logger.
    """
    config = config or ObservabilityConfig()
    level = LogLevel.parse(config.log_level)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level)
    handler.addFilter(ScopeFilter())
    handler.setFormatter(JsonFormatter() if config.log_json else KeyValueFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("asyncio", "redis"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return handler

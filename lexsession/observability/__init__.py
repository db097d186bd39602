"""
Observability module: structured logging.
"""

from lexsession.observability.logging import (
    JsonFormatter,
    KeyValueFormatter,
    LogLevel,
    ScopeFilter,
    StructuredLogger,
    current_scope,
    session_scope,
    setup_logging,
)

__all__ = [
    "JsonFormatter",
    "KeyValueFormatter",
    "LogLevel",
    "ScopeFilter",
    "StructuredLogger",
    "current_scope",
    "session_scope",
    "setup_logging",
]

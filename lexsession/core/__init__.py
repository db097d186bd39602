"""
Core module: Type definitions, error hierarchy, time and configuration.

This module provides the foundational abstractions shared by the session
registry and the cache tiers:
- Result/Either monads for zero-exception control flow
- Error hierarchy with stable error codes
- Injectable clocks and nanosecond timestamps
- Configuration management with validation
"""

from lexsession.core.types import (
    Result,
    Ok,
    Err,
    Timestamp,
)
from lexsession.core.clock import Clock, SystemClock, ManualClock, SYSTEM_CLOCK
from lexsession.core.errors import (
    ErrorCode,
    LexSessionError,
    SessionError,
    CacheError,
    ReliabilityError,
)
from lexsession.core.config import (
    SessionConfig,
    CacheConfig,
    PersistentCacheConfig,
    RedisConfig,
    TieredCacheConfig,
    ObservabilityConfig,
    LexSessionConfig,
)
from lexsession.core.tasks import PeriodicTask

__all__ = [
    "Result",
    "Ok",
    "Err",
    "Timestamp",
    "Clock",
    "SystemClock",
    "ManualClock",
    "SYSTEM_CLOCK",
    "ErrorCode",
    "LexSessionError",
    "SessionError",
    "CacheError",
    "ReliabilityError",
    "SessionConfig",
    "CacheConfig",
    "PersistentCacheConfig",
    "RedisConfig",
    "TieredCacheConfig",
    "ObservabilityConfig",
    "LexSessionConfig",
    "PeriodicTask",
]

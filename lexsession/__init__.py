"""
Classroom Session Registry and Tiered Cache

In-process state core for live classroom discussions:
- Session Registry: join-code addressed sessions with TTL, participant
  presence, polls and a background reaper
- Bounded Cache: capacity-limited LRU with TTL and similarity lookup
- Tiered Cache: fast Tier-1 over a durable Tier-2 (snapshot file or
  Redis) with promotion-on-miss and failure-tolerant secondary writes

All fallible operations return Result (Ok/Err) values; time is read
through an injectable Clock.

License: MIT
"""

__version__ = "1.0.0"

# =============================================================================
# PUBLIC API EXPORTS
# =============================================================================
from lexsession.core.types import Result, Ok, Err, Timestamp
from lexsession.core.clock import Clock, SystemClock, ManualClock
from lexsession.core.errors import (
    ErrorCode,
    LexSessionError,
    SessionError,
    CacheError,
    ReliabilityError,
)
from lexsession.core.config import LexSessionConfig

# Session exports
from lexsession.session import (
    CodeAllocator,
    JoinOptions,
    ParticipantInfo,
    Session,
    SessionOptions,
    SessionStatus,
    SessionRegistry,
    VoteData,
)

# Cache exports
from lexsession.cache import (
    BoundedCache,
    CacheBackend,
    CacheEntry,
    CacheStats,
    PersistentCache,
    RedisCacheBackend,
    TieredCacheOrchestrator,
)

__all__ = [
    # Version
    "__version__",
    # Result monad
    "Result",
    "Ok",
    "Err",
    # Time
    "Timestamp",
    "Clock",
    "SystemClock",
    "ManualClock",
    # Errors
    "ErrorCode",
    "LexSessionError",
    "SessionError",
    "CacheError",
    "ReliabilityError",
    # Config
    "LexSessionConfig",
    # Sessions
    "CodeAllocator",
    "JoinOptions",
    "ParticipantInfo",
    "Session",
    "SessionOptions",
    "SessionStatus",
    "SessionRegistry",
    "VoteData",
    # Cache
    "BoundedCache",
    "CacheBackend",
    "CacheEntry",
    "CacheStats",
    "PersistentCache",
    "RedisCacheBackend",
    "TieredCacheOrchestrator",
]

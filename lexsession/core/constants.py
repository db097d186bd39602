"""
System-Wide Constants for the Session/Cache Core

All magic numbers and configuration defaults centralized here.
Durations are in seconds unless the name says otherwise.
"""

from typing import Final

# =============================================================================
# TIME UNITS
# =============================================================================
MINUTE_S: Final[int] = 60
HOUR_S: Final[int] = 60 * MINUTE_S
DAY_S: Final[int] = 24 * HOUR_S

# =============================================================================
# SESSION REGISTRY
# =============================================================================
SESSION_CODE_LENGTH: Final[int] = 6
SESSION_CODE_MAX_LENGTH: Final[int] = 12
SESSION_CODE_MAX_ATTEMPTS: Final[int] = 100
SESSION_DEFAULT_TTL_S: Final[float] = 6 * HOUR_S
SESSION_MAX_SESSIONS: Final[int] = 1000
SESSION_CLEANUP_INTERVAL_S: Final[float] = 5 * MINUTE_S

# =============================================================================
# BOUNDED CACHE (TIER-1)
# =============================================================================
CACHE_MAX_ENTRIES: Final[int] = 100
CACHE_DEFAULT_TTL_S: Final[float] = HOUR_S
CACHE_CLEANUP_INTERVAL_S: Final[float] = 5 * MINUTE_S
SIMILARITY_MEMO_WINDOW_S: Final[float] = 60.0
SIMILARITY_DEFAULT_THRESHOLD: Final[float] = 0.85
SIMILARITY_MEMO_MAX_ENTRIES: Final[int] = 256
STATS_TOP_KEYS: Final[int] = 10
ACCESS_LATENCY_SAMPLES: Final[int] = 1000

# Per-entry bookkeeping overhead used by the memory estimate
ENTRY_OVERHEAD_BYTES: Final[int] = 100

# =============================================================================
# PERSISTENT CACHE (TIER-2)
# =============================================================================
PERSISTENT_MAX_ENTRIES: Final[int] = 1000
PERSISTENT_DEFAULT_TTL_S: Final[float] = DAY_S
PERSISTENT_FLUSH_INTERVAL_S: Final[float] = MINUTE_S

# =============================================================================
# TIERED ORCHESTRATOR
# =============================================================================
PROMOTION_TTL_RATIO: Final[float] = 0.5
TIER2_TIMEOUT_S: Final[float] = 0.5
WARMUP_CONCURRENCY: Final[int] = 8

# =============================================================================
# RELIABILITY
# =============================================================================
CIRCUIT_FAILURE_THRESHOLD: Final[int] = 5
CIRCUIT_SUCCESS_THRESHOLD: Final[int] = 2
CIRCUIT_RESET_TIMEOUT_S: Final[float] = 30.0

# =============================================================================
# REDIS
# =============================================================================
REDIS_KEY_PREFIX: Final[str] = "lexsession:cache:"
REDIS_SCAN_COUNT: Final[int] = 500

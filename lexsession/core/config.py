"""
Configuration Management for the Session/Cache Core

Provides validated configuration with sensible defaults.
Supports environment variable overrides (LEXSESSION_ prefix).

Design:
- Immutable after construction
- Fail-fast on invalid configuration
- Type-safe with dataclasses
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from lexsession.core.types import Result, Ok, Err, valid_duration
from lexsession.core import constants as C


_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


@dataclass(frozen=True)
class SessionConfig:
    """Session registry configuration."""

    max_sessions: int = C.SESSION_MAX_SESSIONS
    default_ttl_seconds: float = C.SESSION_DEFAULT_TTL_S
    cleanup_interval_seconds: float = C.SESSION_CLEANUP_INTERVAL_S
    code_length: int = C.SESSION_CODE_LENGTH
    max_code_attempts: int = C.SESSION_CODE_MAX_ATTEMPTS


@dataclass(frozen=True)
class CacheConfig:
    """Bounded (Tier-1) cache configuration."""

    max_entries: int = C.CACHE_MAX_ENTRIES
    default_ttl_seconds: float = C.CACHE_DEFAULT_TTL_S
    # 0 disables the background expiry sweep
    cleanup_interval_seconds: float = C.CACHE_CLEANUP_INTERVAL_S
    similarity_window_seconds: float = C.SIMILARITY_MEMO_WINDOW_S
    similarity_threshold: float = C.SIMILARITY_DEFAULT_THRESHOLD


@dataclass(frozen=True)
class PersistentCacheConfig:
    """File-backed (Tier-2) cache configuration."""

    path: Path = field(default_factory=lambda: Path("./data/cache.json.lz4"))
    max_entries: int = C.PERSISTENT_MAX_ENTRIES
    default_ttl_seconds: float = C.PERSISTENT_DEFAULT_TTL_S
    flush_interval_seconds: float = C.PERSISTENT_FLUSH_INTERVAL_S
    compress: bool = True


@dataclass(frozen=True)
class RedisConfig:
    """
    Redis/Valkey connection configuration for the Tier-2 backend.

    Attributes:
        host: Redis server hostname or IP address.
        port: Redis server port (1-65535).
        password: Optional authentication password.
        db: Logical database index (0-15).
        key_prefix: Namespace prepended to every cache key.
        max_connections: Connection pool size. Must be > 0.
        connect_timeout_ms: TCP connection timeout in milliseconds.
        socket_timeout_ms: Socket read/write timeout in milliseconds.
        ssl: Enable TLS encryption for connections.
    """

    host: str = "localhost"
    port: int = 6379
    password: Optional[str] = None
    db: int = 0
    key_prefix: str = C.REDIS_KEY_PREFIX
    max_connections: int = 50
    connect_timeout_ms: int = 2000
    socket_timeout_ms: int = 5000
    ssl: bool = False

    def __post_init__(self) -> None:
        if not (1 <= self.port <= 65535):
            raise ValueError(f"port must be in [1, 65535], got {self.port}")
        if not (0 <= self.db <= 15):
            raise ValueError(f"db must be in [0, 15], got {self.db}")
        if self.max_connections <= 0:
            raise ValueError(f"max_connections must be > 0, got {self.max_connections}")
        if self.connect_timeout_ms <= 0 or self.socket_timeout_ms <= 0:
            raise ValueError("timeouts must be > 0")

    @classmethod
    def from_env(cls, prefix: str = "LEXSESSION_REDIS") -> RedisConfig:
        """
        Construct configuration from environment variables.

        Environment Variables:
        - {prefix}_HOST, {prefix}_PORT, {prefix}_PASSWORD, {prefix}_DB
        - {prefix}_KEY_PREFIX, {prefix}_MAX_CONNECTIONS, {prefix}_SSL
        """
        def _get(key: str, default: str = "") -> str:
            return os.environ.get(f"{prefix}_{key}", default)

        def _get_int(key: str, default: int) -> int:
            val = _get(key)
            return int(val) if val else default

        return cls(
            host=_get("HOST", "localhost"),
            port=_get_int("PORT", 6379),
            password=_get("PASSWORD") or None,
            db=_get_int("DB", 0),
            key_prefix=_get("KEY_PREFIX", C.REDIS_KEY_PREFIX),
            max_connections=_get_int("MAX_CONNECTIONS", 50),
            connect_timeout_ms=_get_int("CONNECT_TIMEOUT_MS", 2000),
            socket_timeout_ms=_get_int("SOCKET_TIMEOUT_MS", 5000),
            ssl=_get("SSL").lower() in ("true", "1", "yes"),
        )

    def get_connection_kwargs(self) -> dict[str, Any]:
        """Generate kwargs for redis.asyncio.Redis()."""
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "db": self.db,
            "max_connections": self.max_connections,
            "socket_connect_timeout": self.connect_timeout_ms / 1000.0,
            "socket_timeout": self.socket_timeout_ms / 1000.0,
            "decode_responses": True,
            "ssl": self.ssl,
        }
        if self.password:
            kwargs["password"] = self.password
        return kwargs


@dataclass(frozen=True)
class TieredCacheConfig:
    """Two-tier orchestrator configuration."""

    default_ttl_seconds: float = C.CACHE_DEFAULT_TTL_S
    promotion_ttl_ratio: float = C.PROMOTION_TTL_RATIO
    tier2_timeout_seconds: float = C.TIER2_TIMEOUT_S
    # Tier-2 writes are awaited (bounded by the timeout) unless this is set
    tier2_fire_and_forget: bool = False
    warmup_concurrency: int = C.WARMUP_CONCURRENCY
    circuit_failure_threshold: int = C.CIRCUIT_FAILURE_THRESHOLD
    circuit_reset_seconds: float = C.CIRCUIT_RESET_TIMEOUT_S

    @property
    def promotion_ttl_seconds(self) -> float:
        return self.default_ttl_seconds * self.promotion_ttl_ratio


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration."""

    log_level: str = "INFO"
    log_json: bool = True


@dataclass(frozen=True)
class LexSessionConfig:
    """Root configuration."""

    session: SessionConfig = field(default_factory=SessionConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    persistent: PersistentCacheConfig = field(default_factory=PersistentCacheConfig)
    tiered: TieredCacheConfig = field(default_factory=TieredCacheConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> Result[LexSessionConfig, str]:
        """
        Load configuration from environment variables.

        Environment variables are prefixed with LEXSESSION_.
        Example: LEXSESSION_MAX_SESSIONS, LEXSESSION_CACHE_PATH
        """
        env = os.getenv
        try:
            session = SessionConfig(
                max_sessions=int(env("LEXSESSION_MAX_SESSIONS", str(C.SESSION_MAX_SESSIONS))),
                default_ttl_seconds=float(
                    env("LEXSESSION_SESSION_TTL_SECONDS", str(C.SESSION_DEFAULT_TTL_S))
                ),
                cleanup_interval_seconds=float(
                    env("LEXSESSION_SESSION_CLEANUP_SECONDS", str(C.SESSION_CLEANUP_INTERVAL_S))
                ),
                code_length=int(env("LEXSESSION_CODE_LENGTH", str(C.SESSION_CODE_LENGTH))),
            )

            cache = CacheConfig(
                max_entries=int(env("LEXSESSION_CACHE_MAX_ENTRIES", str(C.CACHE_MAX_ENTRIES))),
                default_ttl_seconds=float(
                    env("LEXSESSION_CACHE_TTL_SECONDS", str(C.CACHE_DEFAULT_TTL_S))
                ),
            )

            persistent = PersistentCacheConfig(
                path=Path(env("LEXSESSION_CACHE_PATH", "./data/cache.json.lz4")),
                max_entries=int(
                    env("LEXSESSION_PERSISTENT_MAX_ENTRIES", str(C.PERSISTENT_MAX_ENTRIES))
                ),
                compress=env("LEXSESSION_CACHE_COMPRESS", "true").lower() in ("true", "1", "yes"),
            )

            tiered = TieredCacheConfig(
                default_ttl_seconds=cache.default_ttl_seconds,
                tier2_timeout_seconds=float(
                    env("LEXSESSION_TIER2_TIMEOUT_SECONDS", str(C.TIER2_TIMEOUT_S))
                ),
            )

            observability = ObservabilityConfig(
                log_level=env("LEXSESSION_LOG_LEVEL", "INFO").upper(),
                log_json=env("LEXSESSION_LOG_JSON", "true").lower() in ("true", "1", "yes"),
            )

            return Ok(cls(
                session=session,
                cache=cache,
                persistent=persistent,
                tiered=tiered,
                observability=observability,
            ))
        except (ValueError, TypeError) as e:
            return Err(f"Configuration error: {e}")

    def validate(self) -> Result[None, str]:
        """Validate configuration invariants."""
        if self.session.max_sessions < 1:
            return Err("max_sessions must be >= 1")
        if not (1 <= self.session.code_length <= C.SESSION_CODE_MAX_LENGTH):
            return Err(f"code_length must be in [1, {C.SESSION_CODE_MAX_LENGTH}]")
        if not valid_duration(self.session.default_ttl_seconds):
            return Err("session default_ttl_seconds must be finite and > 0")
        if self.cache.max_entries < 1 or self.persistent.max_entries < 1:
            return Err("cache capacities must be >= 1")
        if not (0.0 < self.tiered.promotion_ttl_ratio <= 1.0):
            return Err("promotion_ttl_ratio must be in (0, 1]")
        if self.tiered.warmup_concurrency < 1:
            return Err("warmup_concurrency must be >= 1")
        if self.tiered.tier2_timeout_seconds <= 0:
            return Err("tier2_timeout_seconds must be > 0")
        if self.observability.log_level.upper() not in _LOG_LEVELS:
            return Err(f"unknown log_level: {self.observability.log_level!r}")
        return Ok(None)

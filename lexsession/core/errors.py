"""
Errors returned inside `Err` by the registry, the caches and the breaker.

Every error has a stable `ErrorCode`; callers branch on the code, never on
the message text. `cause` keeps the underlying exception (a RedisError,
an OSError from the snapshot file) but is left out of `to_dict()`.

Usage:
    result = await registry.get_by_code(code)
    match result:
        case Ok(session):
            render(session)
        case Err(error) if error.code is ErrorCode.SESSION_EXPIRED:
            prompt_for_new_code()
        case Err(error):
            respond_with(error.to_dict())
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from lexsession.core.types import Timestamp


class ErrorCode(Enum):
    # 1xxx session registry
    SESSION_NOT_FOUND = 1001
    SESSION_EXPIRED = 1002
    SESSION_FULL = 1003
    SESSION_CODE_EXHAUSTED = 1004

    # 2xxx caller input
    INVALID_INPUT = 2001

    # 3xxx cache tiers
    CACHE_UNAVAILABLE = 3001
    CACHE_TIMEOUT = 3002
    CACHE_SERIALIZATION = 3003

    # 6xxx circuit breaker
    RELIABILITY_CIRCUIT_OPEN = 6001
    RELIABILITY_CALL_FAILED = 6002

    # 9xxx internal
    INTERNAL_ERROR = 9001


@dataclass
class LexSessionError(Exception):
    """Base for every error carried in an `Err`. Also raisable."""

    code: ErrorCode
    message: str
    error_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: Timestamp = field(default_factory=Timestamp.now)
    cause: Optional[BaseException] = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code.name,
            "code": self.code.value,
            "message": self.message,
            "error_id": self.error_id,
            "at_ms": self.timestamp.millis,
            "context": dict(self.context),
        }

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message} (id={self.error_id[:8]})"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code.name}, {self.message!r})"


# =============================================================================
# SESSION ERRORS
# =============================================================================
@dataclass
class SessionError(LexSessionError):
    """
    Errors from the session registry and code allocator.

    Covers lookup failures, expiry, capacity limits, bad caller input
    and code-space exhaustion.
    """

    @classmethod
    def not_found(cls, code: str) -> SessionError:
        """No session is mapped to the code."""
        return cls(
            code=ErrorCode.SESSION_NOT_FOUND,
            message=f"No session for code {code}",
            context={"session_code": code},
        )

    @classmethod
    def expired(cls, code: str, expired_at: Timestamp) -> SessionError:
        """Session exists but is past its expiry."""
        return cls(
            code=ErrorCode.SESSION_EXPIRED,
            message=f"Session {code} has expired",
            context={"session_code": code, "expired_at_nanos": expired_at.nanos},
        )

    @classmethod
    def full(cls, resource: str, current: int, limit: int) -> SessionError:
        """Capacity limit reached (registry sessions or session seats)."""
        return cls(
            code=ErrorCode.SESSION_FULL,
            message=f"Capacity reached for {resource}: {current}/{limit}",
            context={"resource": resource, "current": current, "limit": limit},
        )

    @classmethod
    def invalid_input(
        cls,
        field: str,
        reason: str,
        value: Any = None,
    ) -> SessionError:
        """Caller supplied input the operation cannot accept."""
        return cls(
            code=ErrorCode.INVALID_INPUT,
            message=f"Invalid input for '{field}': {reason}",
            context={"field": field, "value": str(value)[:100], "reason": reason},
        )

    @classmethod
    def code_exhausted(cls, attempts: int, length: int) -> SessionError:
        """Allocator retry budget exceeded without finding a free code."""
        return cls(
            code=ErrorCode.SESSION_CODE_EXHAUSTED,
            message=f"No free {length}-digit code after {attempts} attempts",
            context={"attempts": attempts, "length": length},
        )

    @classmethod
    def internal(
        cls,
        operation: str,
        cause: Optional[BaseException] = None,
    ) -> SessionError:
        """Unexpected failure inside a registry operation."""
        return cls(
            code=ErrorCode.INTERNAL_ERROR,
            message=f"Internal error during {operation}: {cause}",
            cause=cause,
            context={"operation": operation},
        )


# =============================================================================
# CACHE ERRORS
# =============================================================================
@dataclass
class CacheError(LexSessionError):
    """
    Errors from cache backends.

    Tier-2 errors are non-fatal: the orchestrator logs them and
    degrades to Tier-1-only behavior.
    """

    @classmethod
    def unavailable(
        cls,
        backend: str,
        operation: str,
        cause: Optional[BaseException] = None,
    ) -> CacheError:
        """Backend could not serve the operation."""
        return cls(
            code=ErrorCode.CACHE_UNAVAILABLE,
            message=f"Cache backend '{backend}' unavailable during {operation}",
            cause=cause,
            context={"backend": backend, "operation": operation},
        )

    @classmethod
    def timeout(
        cls,
        backend: str,
        operation: str,
        timeout_ms: int,
    ) -> CacheError:
        """Backend did not answer within the allowed time."""
        return cls(
            code=ErrorCode.CACHE_TIMEOUT,
            message=f"Cache backend '{backend}' timed out after {timeout_ms}ms during {operation}",
            context={"backend": backend, "operation": operation, "timeout_ms": timeout_ms},
        )

    @classmethod
    def serialization(
        cls,
        key: str,
        cause: Optional[BaseException] = None,
    ) -> CacheError:
        """Value could not be encoded or decoded at a persistence boundary."""
        return cls(
            code=ErrorCode.CACHE_SERIALIZATION,
            message=f"Could not serialize cache value for key '{key}'",
            cause=cause,
            context={"key": key},
        )

    @classmethod
    def invalid_input(cls, field: str, reason: str, value: Any = None) -> CacheError:
        """Caller supplied an argument the cache cannot accept."""
        return cls(
            code=ErrorCode.INVALID_INPUT,
            message=f"Invalid input for '{field}': {reason}",
            context={"field": field, "value": str(value)[:100], "reason": reason},
        )

    @classmethod
    def invalid_pattern(cls, pattern: str, cause: Optional[BaseException] = None) -> CacheError:
        """Key pattern is not a valid regular expression."""
        return cls(
            code=ErrorCode.INVALID_INPUT,
            message=f"Invalid key pattern {pattern!r}",
            cause=cause,
            context={"pattern": pattern},
        )

    @classmethod
    def internal(
        cls,
        operation: str,
        cause: Optional[BaseException] = None,
    ) -> CacheError:
        """Unexpected failure inside a cache operation."""
        return cls(
            code=ErrorCode.INTERNAL_ERROR,
            message=f"Internal cache error during {operation}: {cause}",
            cause=cause,
            context={"operation": operation},
        )


# =============================================================================
# RELIABILITY ERRORS
# =============================================================================
@dataclass
class ReliabilityError(LexSessionError):
    """Errors from the circuit breaker guarding secondary backends."""

    @classmethod
    def circuit_open(
        cls,
        circuit_name: str,
        failure_count: int,
        retry_after_seconds: float,
    ) -> ReliabilityError:
        """Circuit breaker is open, failing fast."""
        return cls(
            code=ErrorCode.RELIABILITY_CIRCUIT_OPEN,
            message=f"Circuit '{circuit_name}' is OPEN after {failure_count} failures",
            context={
                "circuit_name": circuit_name,
                "failure_count": failure_count,
                "retry_after_seconds": retry_after_seconds,
            },
        )

    @classmethod
    def call_failed(
        cls,
        circuit_name: str,
        cause: BaseException,
    ) -> ReliabilityError:
        """Guarded call raised instead of returning a Result."""
        return cls(
            code=ErrorCode.RELIABILITY_CALL_FAILED,
            message=f"Call through circuit '{circuit_name}' raised {type(cause).__name__}: {cause}",
            cause=cause,
            context={"circuit_name": circuit_name},
        )

"""
Shared value types: Result (Ok | Err) and Timestamp.

Operations that can fail for expected reasons (unknown session code, full
registry, unreachable Tier-2) return a Result instead of raising. Callers
branch on `is_ok()` / `is_err()` or match on the variant:

    match await registry.get(code):
        case Ok(session): ...
        case Err(error): ...

Timestamps are integer nanoseconds since the epoch so that expiry
comparisons are exact and ordering is total.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Generic, NoReturn, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: Any) -> T:
        return self.value

    def expect(self, message: str) -> T:
        return self.value

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> NoReturn:
        """Unwrapping an Err is a bug in the caller."""
        raise RuntimeError(f"Called unwrap() on Err: {self.error}")

    def unwrap_or(self, default: T) -> T:
        return default

    def expect(self, message: str) -> NoReturn:
        raise RuntimeError(f"{message}: {self.error}")

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


Result = Union[Ok[T], Err[E]]


_NS_PER_S = 1_000_000_000
_NS_PER_MS = 1_000_000


@dataclass(frozen=True, slots=True, order=True)
class Timestamp:
    """
    Instant in integer nanoseconds since the Unix epoch.

    Persisted and wire formats use milliseconds (`millis`,
    `from_millis`); everything in memory stays in nanoseconds.
    """

    nanos: int

    def __post_init__(self) -> None:
        if self.nanos < 0:
            raise ValueError(f"Timestamp before the epoch: {self.nanos}ns")

    @classmethod
    def now(cls) -> Timestamp:
        return cls(time.time_ns())

    @classmethod
    def from_seconds(cls, seconds: float) -> Timestamp:
        return cls(int(seconds * _NS_PER_S))

    @classmethod
    def from_millis(cls, millis: int) -> Timestamp:
        return cls(int(millis) * _NS_PER_MS)

    @property
    def millis(self) -> int:
        return self.nanos // _NS_PER_MS

    def plus_seconds(self, seconds: float) -> Timestamp:
        """This instant moved by `seconds` (fractions kept to the nanosecond)."""
        return Timestamp(self.nanos + int(seconds * _NS_PER_S))

    def seconds_until(self, other: Timestamp) -> float:
        """Signed seconds from this instant to `other`."""
        return (other.nanos - self.nanos) / _NS_PER_S

    def __repr__(self) -> str:
        return f"Timestamp({self.nanos}ns)"


def valid_duration(seconds: float) -> bool:
    """True when `seconds` is a finite number that moves a Timestamp by at least 1ns."""
    if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
        return False
    try:
        nanos = float(seconds) * _NS_PER_S
    except OverflowError:
        return False
    return math.isfinite(nanos) and nanos >= 1

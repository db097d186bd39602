"""
Clock abstraction.

Every component reads time through a Clock so expiry can be driven
deterministically in tests (ManualClock) instead of sleeping.
"""

from __future__ import annotations

import threading
from typing import Optional, Protocol, runtime_checkable

from lexsession.core.types import Timestamp


@runtime_checkable
class Clock(Protocol):
    """Source of the current time."""

    def now(self) -> Timestamp:
        ...


class SystemClock:
    """Wall-clock time."""

    __slots__ = ()

    def now(self) -> Timestamp:
        return Timestamp.now()


class ManualClock:
    """
    Clock that only moves when told to.

    Usage:
        clock = ManualClock()
        registry = SessionRegistry(clock=clock)
        clock.advance(3600)
    """

    __slots__ = ("_now", "_lock")

    def __init__(self, start: Optional[Timestamp] = None) -> None:
        self._now = start or Timestamp.from_seconds(1_700_000_000)
        self._lock = threading.Lock()

    def now(self) -> Timestamp:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> Timestamp:
        """Move time forward and return the new instant."""
        if seconds < 0:
            raise ValueError(f"cannot move clock backwards ({seconds}s)")
        with self._lock:
            self._now = self._now.plus_seconds(seconds)
            return self._now

    def set(self, timestamp: Timestamp) -> None:
        with self._lock:
            self._now = timestamp


SYSTEM_CLOCK = SystemClock()

"""
Circuit Breaker: Fail Fast on a Flaky Secondary Cache Tier

States:
- CLOSED: calls flow through; consecutive failures are counted
- OPEN: calls are rejected without touching the backend until
  `reset_seconds` have passed since the circuit opened
- HALF_OPEN: a limited number of probe calls run; enough successes
  close the circuit, any failure re-opens it

The OPEN -> HALF_OPEN move happens lazily on the next call, so an idle
breaker needs no timer.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Optional

from lexsession.core import constants as C
from lexsession.core.clock import Clock, SYSTEM_CLOCK
from lexsession.core.errors import LexSessionError, ReliabilityError
from lexsession.core.types import Result, Ok, Err, Timestamp

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_TRANSITIONS: dict[CircuitState, frozenset[CircuitState]] = {
    CircuitState.CLOSED: frozenset({CircuitState.OPEN}),
    CircuitState.OPEN: frozenset({CircuitState.HALF_OPEN, CircuitState.CLOSED}),
    CircuitState.HALF_OPEN: frozenset({CircuitState.OPEN, CircuitState.CLOSED}),
}

StateListener = Callable[[str, CircuitState, CircuitState], None]


@dataclass(frozen=True)
class CircuitStats:
    state: CircuitState
    failures: int
    successes: int
    consecutive_failures: int
    opened_at: Optional[Timestamp]
    last_state_change: Timestamp
    total_requests: int
    rejected_requests: int

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.name
        data["opened_at"] = self.opened_at.millis if self.opened_at else None
        data["last_state_change"] = self.last_state_change.millis
        return data


class CircuitBreaker:
    """
    Guards calls to a secondary backend.

    The guarded callable may return a plain value, a Result, or an
    awaitable of either. An `Err` counts as a failure and is returned
    unchanged; a raised exception counts as a failure and comes back as
    `Err(ReliabilityError)`.

    Usage:
        breaker = CircuitBreaker("tier2", failure_threshold=5)
        result = await breaker.call(lambda: backend.get(key))
    """

    __slots__ = (
        "_name", "_failure_threshold", "_success_threshold", "_reset_seconds",
        "_max_probes", "_clock", "_listener", "_lock",
        "_state", "_opened_at", "_last_state_change", "_probes_in_flight",
        "_failures", "_successes", "_consecutive_failures",
        "_total_requests", "_rejected_requests",
    )

    def __init__(
        self,
        name: str,
        failure_threshold: int = C.CIRCUIT_FAILURE_THRESHOLD,
        success_threshold: int = C.CIRCUIT_SUCCESS_THRESHOLD,
        reset_seconds: float = C.CIRCUIT_RESET_TIMEOUT_S,
        half_open_max_probes: int = 1,
        clock: Optional[Clock] = None,
        on_state_change: Optional[StateListener] = None,
    ) -> None:
        if failure_threshold < 1 or success_threshold < 1:
            raise ValueError("thresholds must be >= 1")
        if half_open_max_probes < 1:
            raise ValueError("half_open_max_probes must be >= 1")
        if reset_seconds < 0:
            raise ValueError("reset_seconds must be >= 0")
        self._name = name
        self._failure_threshold = failure_threshold
        self._success_threshold = success_threshold
        self._reset_seconds = reset_seconds
        self._max_probes = half_open_max_probes
        self._clock = clock or SYSTEM_CLOCK
        self._listener = on_state_change
        self._lock = asyncio.Lock()

        self._state = CircuitState.CLOSED
        self._opened_at: Optional[Timestamp] = None
        self._last_state_change = self._clock.now()
        self._probes_in_flight = 0
        self._failures = 0
        self._successes = 0
        self._consecutive_failures = 0
        self._total_requests = 0
        self._rejected_requests = 0

    async def call(self, func: Callable[[], Any]) -> Result[Any, LexSessionError]:
        """Run `func` unless the circuit rejects it."""
        async with self._lock:
            self._total_requests += 1
            rejection = self._admit()
            if rejection is not None:
                self._rejected_requests += 1
                return Err(rejection)
            probing = self._state is CircuitState.HALF_OPEN
            if probing:
                self._probes_in_flight += 1

        try:
            outcome = func()
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except asyncio.CancelledError:
            if probing:
                async with self._lock:
                    self._probes_in_flight = max(0, self._probes_in_flight - 1)
            raise
        except Exception as e:
            await self._record(success=False, probing=probing)
            return Err(ReliabilityError.call_failed(self._name, e))

        if isinstance(outcome, Err):
            await self._record(success=False, probing=probing)
            return outcome

        await self._record(success=True, probing=probing)
        return outcome if isinstance(outcome, Ok) else Ok(outcome)

    def _admit(self) -> Optional[ReliabilityError]:
        """None if a call may proceed now, else the rejection error."""
        if self._state is CircuitState.OPEN:
            if self.retry_after_seconds() > 0:
                return ReliabilityError.circuit_open(
                    circuit_name=self._name,
                    failure_count=self._consecutive_failures,
                    retry_after_seconds=self.retry_after_seconds(),
                )
            self._move_to(CircuitState.HALF_OPEN)

        if self._state is CircuitState.HALF_OPEN and self._probes_in_flight >= self._max_probes:
            return ReliabilityError.circuit_open(
                circuit_name=self._name,
                failure_count=self._consecutive_failures,
                retry_after_seconds=0.0,
            )
        return None

    async def _record(self, success: bool, probing: bool) -> None:
        async with self._lock:
            if probing:
                self._probes_in_flight = max(0, self._probes_in_flight - 1)

            if success:
                self._successes += 1
                self._consecutive_failures = 0
                if (
                    self._state is CircuitState.HALF_OPEN
                    and self._successes >= self._success_threshold
                ):
                    self._move_to(CircuitState.CLOSED)
                return

            self._failures += 1
            self._consecutive_failures += 1
            if self._state is CircuitState.HALF_OPEN:
                self._move_to(CircuitState.OPEN)
            elif (
                self._state is CircuitState.CLOSED
                and self._consecutive_failures >= self._failure_threshold
            ):
                self._move_to(CircuitState.OPEN)

    def _move_to(self, target: CircuitState) -> None:
        previous = self._state
        if target is previous:
            return
        if target not in _TRANSITIONS[previous]:
            raise RuntimeError(f"illegal circuit transition {previous.name} -> {target.name}")

        self._state = target
        self._last_state_change = self._clock.now()
        if target is CircuitState.OPEN:
            self._opened_at = self._last_state_change
        elif target is CircuitState.HALF_OPEN:
            self._successes = 0
            self._probes_in_flight = 0
        else:
            self._opened_at = None
            self._failures = 0
            self._successes = 0
            self._consecutive_failures = 0

        log = logger.warning if target is CircuitState.OPEN else logger.info
        log(
            "Circuit %s: %s -> %s", self._name, previous.name, target.name,
            extra={"circuit": self._name, "consecutive_failures": self._consecutive_failures},
        )
        if self._listener is not None:
            self._listener(self._name, previous, target)

    def retry_after_seconds(self) -> float:
        """Seconds until an OPEN circuit admits a probe (0 when not OPEN)."""
        if self._state is not CircuitState.OPEN or self._opened_at is None:
            return 0.0
        elapsed = self._opened_at.seconds_until(self._clock.now())
        return max(0.0, self._reset_seconds - elapsed)

    def force_open(self) -> None:
        """Open the circuit now, restarting the reset window if already open."""
        if self._state is CircuitState.OPEN:
            self._opened_at = self._clock.now()
        else:
            self._move_to(CircuitState.OPEN)

    def force_close(self) -> None:
        self._move_to(CircuitState.CLOSED)

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state is CircuitState.CLOSED

    @property
    def stats(self) -> CircuitStats:
        return CircuitStats(
            state=self._state,
            failures=self._failures,
            successes=self._successes,
            consecutive_failures=self._consecutive_failures,
            opened_at=self._opened_at,
            last_state_change=self._last_state_change,
            total_requests=self._total_requests,
            rejected_requests=self._rejected_requests,
        )

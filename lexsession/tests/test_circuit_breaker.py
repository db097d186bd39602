"""
Unit Tests: Circuit Breaker

Tests:
    - CLOSED -> OPEN after consecutive failures
    - Fast rejection while OPEN
    - HALF_OPEN recovery and re-opening
    - Result / plain value / exception handling
    - Half-open probe limit, state listeners, stats export

Run: python -m pytest lexsession/tests/test_circuit_breaker.py -v
"""

import asyncio

import pytest

from lexsession.core.clock import ManualClock
from lexsession.core.errors import CacheError, ErrorCode
from lexsession.core.types import Ok, Err
from lexsession.reliability.circuit_breaker import CircuitBreaker, CircuitState


def failing():
    return Err(CacheError.unavailable("tier2", "get"))


class TestStateMachine:
    """Tests for state transitions."""

    def test_opens_after_threshold(self):
        async def scenario():
            breaker = CircuitBreaker("t", failure_threshold=3, clock=ManualClock())
            for _ in range(2):
                await breaker.call(failing)
            still_closed = breaker.state
            await breaker.call(failing)
            return still_closed, breaker.state

        before, after = asyncio.run(scenario())

        assert before is CircuitState.CLOSED
        assert after is CircuitState.OPEN

    def test_success_resets_consecutive_failures(self):
        async def scenario():
            breaker = CircuitBreaker("t", failure_threshold=2, clock=ManualClock())
            await breaker.call(failing)
            await breaker.call(lambda: 1)
            await breaker.call(failing)
            return breaker.state, breaker.stats

        state, stats = asyncio.run(scenario())

        assert state is CircuitState.CLOSED
        assert stats.consecutive_failures == 1
        assert stats.failures == 2

    def test_open_rejects_without_calling(self):
        calls = []

        async def scenario():
            breaker = CircuitBreaker("t", failure_threshold=1, clock=ManualClock())
            await breaker.call(failing)
            return await breaker.call(lambda: calls.append(1)), breaker.stats

        result, stats = asyncio.run(scenario())

        assert calls == []
        assert result.error.code is ErrorCode.RELIABILITY_CIRCUIT_OPEN
        assert result.error.context["retry_after_seconds"] == 30.0
        assert stats.rejected_requests == 1

    def test_half_open_recovers(self):
        async def scenario():
            clock = ManualClock()
            breaker = CircuitBreaker(
                "t", failure_threshold=1, success_threshold=2, reset_seconds=10, clock=clock,
            )
            await breaker.call(failing)
            clock.advance(10)
            await breaker.call(lambda: "ok")
            half_open = breaker.state
            await breaker.call(lambda: "ok")
            return half_open, breaker.state

        half_open, final = asyncio.run(scenario())

        assert half_open is CircuitState.HALF_OPEN
        assert final is CircuitState.CLOSED

    def test_half_open_failure_reopens(self):
        async def scenario():
            clock = ManualClock()
            breaker = CircuitBreaker("t", failure_threshold=1, reset_seconds=5, clock=clock)
            await breaker.call(failing)
            clock.advance(6)
            await breaker.call(failing)
            return breaker.state

        assert asyncio.run(scenario()) is CircuitState.OPEN

    def test_force_open_and_close(self):
        async def scenario():
            breaker = CircuitBreaker("t", clock=ManualClock())
            breaker.force_open()
            rejected = await breaker.call(lambda: 1)
            breaker.force_close()
            accepted = await breaker.call(lambda: 1)
            return rejected, accepted, breaker.is_closed

        rejected, accepted, closed = asyncio.run(scenario())

        assert rejected.is_err()
        assert accepted.unwrap() == 1
        assert closed is True

    def test_invalid_thresholds(self):
        with pytest.raises(ValueError):
            CircuitBreaker("t", failure_threshold=0)


class TestCallShapes:
    """The guarded callable may return values, Results or awaitables."""

    def test_plain_value_wrapped(self):
        async def scenario():
            return await CircuitBreaker("t", clock=ManualClock()).call(lambda: 42)

        assert asyncio.run(scenario()) == Ok(42)

    def test_async_result_passed_through(self):
        async def produce():
            return Ok("x")

        async def scenario():
            return await CircuitBreaker("t", clock=ManualClock()).call(produce)

        assert asyncio.run(scenario()).unwrap() == "x"

    def test_err_passed_through_unchanged(self):
        err = failing()

        async def scenario():
            return await CircuitBreaker("t", clock=ManualClock()).call(lambda: err)

        assert asyncio.run(scenario()) is err

    def test_exception_becomes_error_value(self):
        def boom():
            raise ConnectionError("refused")

        async def scenario():
            breaker = CircuitBreaker("t", clock=ManualClock())
            return await breaker.call(boom), breaker.stats.failures

        result, failures = asyncio.run(scenario())

        assert result.error.code is ErrorCode.RELIABILITY_CALL_FAILED
        assert isinstance(result.error.cause, ConnectionError)
        assert failures == 1


class TestProbesAndListeners:
    """Tests for half-open probe limits, listeners and stats export."""

    def test_half_open_admits_one_probe_at_a_time(self):
        async def scenario():
            clock = ManualClock()
            breaker = CircuitBreaker("t", failure_threshold=1, reset_seconds=5, clock=clock)
            await breaker.call(failing)
            clock.advance(5)
            release = asyncio.Event()

            async def slow_probe():
                await release.wait()
                return Ok("probe")

            probe = asyncio.create_task(breaker.call(slow_probe))
            await asyncio.sleep(0)
            second = await breaker.call(lambda: "second")
            release.set()
            return await probe, second, breaker.state

        probe, second, state = asyncio.run(scenario())

        assert probe.unwrap() == "probe"
        assert second.error.code is ErrorCode.RELIABILITY_CIRCUIT_OPEN
        assert second.error.context["retry_after_seconds"] == 0.0
        assert state is CircuitState.HALF_OPEN

    def test_cancelled_half_open_call_frees_its_slot(self):
        async def scenario():
            clock = ManualClock()
            breaker = CircuitBreaker(
                "t", failure_threshold=1, success_threshold=1, reset_seconds=5, clock=clock,
            )
            await breaker.call(failing)
            clock.advance(5)

            pending = asyncio.create_task(breaker.call(lambda: asyncio.sleep(10)))
            await asyncio.sleep(0)
            pending.cancel()
            cancelled = False
            try:
                await pending
            except asyncio.CancelledError:
                cancelled = True
            after = await breaker.call(lambda: "next")
            return cancelled, after, breaker.state

        cancelled, after, state = asyncio.run(scenario())

        assert cancelled is True
        assert after.unwrap() == "next"
        assert state is CircuitState.CLOSED

    def test_listener_sees_every_transition(self):
        seen = []

        async def scenario():
            clock = ManualClock()
            breaker = CircuitBreaker(
                "tier2", failure_threshold=1, success_threshold=1, reset_seconds=1,
                clock=clock, on_state_change=lambda name, old, new: seen.append((name, old, new)),
            )
            await breaker.call(failing)
            clock.advance(1)
            await breaker.call(lambda: 1)

        asyncio.run(scenario())

        assert seen == [
            ("tier2", CircuitState.CLOSED, CircuitState.OPEN),
            ("tier2", CircuitState.OPEN, CircuitState.HALF_OPEN),
            ("tier2", CircuitState.HALF_OPEN, CircuitState.CLOSED),
        ]

    def test_stats_to_dict(self):
        async def scenario():
            clock = ManualClock()
            breaker = CircuitBreaker("t", failure_threshold=1, clock=clock)
            await breaker.call(failing)
            return clock, breaker.stats.to_dict(), breaker.retry_after_seconds()

        clock, data, retry_after = asyncio.run(scenario())

        assert data["state"] == "OPEN"
        assert data["opened_at"] == clock.now().millis
        assert data["failures"] == 1
        assert retry_after == 30.0

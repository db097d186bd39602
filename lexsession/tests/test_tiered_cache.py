"""
Unit Tests: Tiered Cache Orchestrator

Tests:
    - Tier-1 hit, Tier-2 hit with promotion, full miss
    - Promotion TTL bounded by the Tier-2 remaining lifetime
    - Degradation when Tier-2 errors, raises or stalls
    - Circuit breaker opening on repeated Tier-2 failures
    - Warmup accounting and concurrency bound
    - Fire-and-forget writes drained on stop(), replaced or cancelled per key
    - stats() and report() with a failing Tier-2

Run: python -m pytest lexsession/tests/test_tiered_cache.py -v
"""

import asyncio

from lexsession.cache.bounded import BoundedCache
from lexsession.cache.persistent import PersistentCache
from lexsession.cache.tiered import TieredCacheOrchestrator, format_bytes
from lexsession.core.clock import ManualClock
from lexsession.core.config import CacheConfig, PersistentCacheConfig, TieredCacheConfig
from lexsession.core.errors import CacheError, ErrorCode
from lexsession.core.types import Err
from lexsession.reliability.circuit_breaker import CircuitState


class ControlledTier2(BoundedCache):
    """
    Tier-2 double whose failure mode can be switched per test.

    mode: "ok" | "error" | "raise" | "stall"
    stats_failure: None | "raise" | "stall"
    """

    def __init__(self, clock, mode="ok", delay=0.0):
        super().__init__(CacheConfig(max_entries=1000, cleanup_interval_seconds=0), clock=clock, name="tier2")
        self.mode = mode
        self.delay = delay
        self.stats_failure = None
        self.calls = 0

    async def _behave(self, operation):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.mode == "error":
            return Err(CacheError.unavailable(self.name, operation))
        if self.mode == "raise":
            raise ConnectionError("tier2 down")
        if self.mode == "stall":
            await asyncio.sleep(10)
        return None

    async def get(self, key):
        failure = await self._behave("get")
        return failure if failure is not None else await super().get(key)

    async def set(self, key, value, ttl_seconds=None, tags=None, metadata=None):
        failure = await self._behave("set")
        return failure if failure is not None else await super().set(key, value, ttl_seconds)

    async def delete(self, key):
        failure = await self._behave("delete")
        return failure if failure is not None else await super().delete(key)

    async def stats(self):
        if self.stats_failure == "raise":
            raise RuntimeError("stats endpoint gone")
        if self.stats_failure == "stall":
            await asyncio.sleep(10)
        return await super().stats()


def make_tiers(clock, mode="ok", **config):
    tier1 = BoundedCache(CacheConfig(max_entries=10, cleanup_interval_seconds=0), clock=clock)
    tier2 = ControlledTier2(clock, mode=mode)
    cache = TieredCacheOrchestrator(
        tier1, tier2, config=TieredCacheConfig(**config), clock=clock,
    )
    return tier1, tier2, cache


class TestReadPath:
    """Tests for the Tier-1 -> Tier-2 -> miss read path."""

    def test_tier2_hit_is_promoted(self):
        async def scenario():
            clock = ManualClock()
            tier1, tier2, cache = make_tiers(clock)
            await cache.set("k", {"v": 1})
            await tier1.delete("k")
            value = (await cache.get("k")).unwrap()
            in_tier1 = (await tier1.has("k")).unwrap()
            again = (await cache.get("k")).unwrap()
            return value, in_tier1, again, await cache.stats()

        value, in_tier1, again, stats = asyncio.run(scenario())

        assert value == {"v": 1}
        assert in_tier1 is True
        assert again == {"v": 1}
        assert stats.tier2_hits == 1
        assert stats.tier1_hits == 1
        assert stats.promotions == 1
        assert stats.total_requests == 2
        assert stats.overall_hit_rate == 1.0

    def test_promotion_ttl_capped_by_remaining(self):
        async def scenario():
            clock = ManualClock()
            tier1, tier2, cache = make_tiers(clock, default_ttl_seconds=1000)
            await tier2.set("short", "s", ttl_seconds=10)
            await tier2.set("long", "l", ttl_seconds=5000)
            clock.advance(4)
            await cache.get("short")
            await cache.get("long")
            now = clock.now()
            short = (await tier1.get("short")).unwrap().remaining_seconds(now)
            long = (await tier1.get("long")).unwrap().remaining_seconds(now)
            return short, long

        short, long = asyncio.run(scenario())

        assert short == 6.0
        assert long == 500.0

    def test_miss_in_both_tiers(self):
        async def scenario():
            _, _, cache = make_tiers(ManualClock())
            return await cache.get("nothing"), await cache.stats()

        result, stats = asyncio.run(scenario())

        assert result.is_ok()
        assert result.unwrap() is None
        assert stats.misses == 1

    def test_tier1_only_orchestrator(self):
        async def scenario():
            clock = ManualClock()
            cache = TieredCacheOrchestrator(
                BoundedCache(CacheConfig(cleanup_interval_seconds=0), clock=clock), clock=clock,
            )
            await cache.set("k", 1)
            return (await cache.get("k")).unwrap(), await cache.stats()

        value, stats = asyncio.run(scenario())

        assert value == 1
        assert stats.tier2 is None
        assert stats.circuit_state is None


class TestDegradation:
    """Tier-2 trouble never fails a Tier-1-servable call."""

    def test_tier2_errors_do_not_fail_reads_or_writes(self):
        async def scenario():
            clock = ManualClock()
            tier1, _, cache = make_tiers(clock, mode="error")
            written = await cache.set("k", "v")
            hit = await cache.get("k")
            miss = await cache.get("other")
            return written, hit, miss, await cache.stats()

        written, hit, miss, stats = asyncio.run(scenario())

        assert written.is_ok()
        assert hit.unwrap() == "v"
        assert miss.is_ok() and miss.unwrap() is None
        assert stats.tier2_errors == 2

    def test_tier2_exception_is_contained(self):
        async def scenario():
            _, _, cache = make_tiers(ManualClock(), mode="raise")
            return await cache.set("k", "v"), await cache.get("missing")

        written, miss = asyncio.run(scenario())

        assert written.is_ok()
        assert miss.unwrap() is None

    def test_raising_tier2_maps_to_internal_error(self):
        async def scenario():
            _, _, cache = make_tiers(ManualClock(), mode="raise")
            return await cache._tier2_call("get", lambda t: t.get("k"))

        result = asyncio.run(scenario())

        assert result.is_err()
        assert isinstance(result.error, CacheError)
        assert result.error.code is ErrorCode.INTERNAL_ERROR
        assert result.error.context == {"operation": "tier2.get"}
        assert isinstance(result.error.cause, ConnectionError)

    def test_open_circuit_maps_to_unavailable(self):
        async def scenario():
            _, _, cache = make_tiers(ManualClock())
            cache.breaker.force_open()
            return await cache._tier2_call("get", lambda t: t.get("k"))

        result = asyncio.run(scenario())

        assert result.error.code is ErrorCode.CACHE_UNAVAILABLE

    def test_stalled_tier2_times_out(self):
        async def scenario():
            loop = asyncio.get_running_loop()
            _, _, cache = make_tiers(ManualClock(), mode="stall", tier2_timeout_seconds=0.05)
            started = loop.time()
            result = await cache.get("k")
            return result, loop.time() - started

        result, elapsed = asyncio.run(scenario())

        assert result.unwrap() is None
        assert elapsed < 1.0

    def test_circuit_opens_and_skips_tier2(self):
        async def scenario():
            clock = ManualClock()
            _, tier2, cache = make_tiers(
                clock, mode="error", circuit_failure_threshold=2, circuit_reset_seconds=30,
            )
            await cache.get("a")
            await cache.get("b")
            state_after_failures = cache.breaker.state
            calls_before = tier2.calls
            await cache.get("c")
            skipped = tier2.calls == calls_before

            tier2.mode = "ok"
            clock.advance(31)
            await cache.get("d")
            await cache.get("e")
            return state_after_failures, skipped, cache.breaker.state

        opened, skipped, final = asyncio.run(scenario())

        assert opened is CircuitState.OPEN
        assert skipped is True
        assert final is CircuitState.CLOSED

    def test_delete_is_best_effort_on_tier2(self):
        async def scenario():
            clock = ManualClock()
            tier1, tier2, cache = make_tiers(clock)
            await cache.set("k", "v")
            tier2.mode = "error"
            removed = await cache.delete("k")
            return removed, (await tier1.has("k")).unwrap()

        removed, in_tier1 = asyncio.run(scenario())

        assert removed.unwrap() is True
        assert in_tier1 is False


class TestWrites:
    """Tests for tier1_only and fire-and-forget writes."""

    def test_tier1_only_skips_tier2(self):
        async def scenario():
            _, tier2, cache = make_tiers(ManualClock())
            await cache.set("k", "v", tier1_only=True)
            return tier2.calls, len(tier2)

        assert asyncio.run(scenario()) == (0, 0)

    def test_fire_and_forget_drained_on_stop(self):
        async def scenario():
            clock = ManualClock()
            tier1, tier2, cache = make_tiers(clock, tier2_fire_and_forget=True)
            tier2.delay = 0.05
            await cache.set("k", "v")
            before = len(tier2)
            pending = (await cache.stats()).pending_writes
            await cache.stop()
            return before, pending, len(tier2), (await cache.stats()).pending_writes

        before, pending, after, drained = asyncio.run(scenario())

        assert before == 0
        assert pending == 1
        assert after == 1
        assert drained == 0

    def test_delete_cancels_pending_write(self):
        async def scenario():
            clock = ManualClock()
            _, tier2, cache = make_tiers(clock, tier2_fire_and_forget=True)
            tier2.delay = 0.05
            await cache.set("k", "v")
            tier2.delay = 0.0
            await cache.delete("k")
            pending = (await cache.stats()).pending_writes
            await asyncio.sleep(0.1)
            value = (await cache.get("k")).unwrap()
            await cache.stop()
            return pending, value, len(tier2)

        pending, value, tier2_entries = asyncio.run(scenario())

        assert pending == 0
        assert value is None
        assert tier2_entries == 0

    def test_clear_cancels_pending_writes(self):
        async def scenario():
            clock = ManualClock()
            _, tier2, cache = make_tiers(clock, tier2_fire_and_forget=True)
            tier2.delay = 0.05
            await cache.set("a", 1)
            await cache.set("b", 2)
            tier2.delay = 0.0
            await cache.clear()
            await asyncio.sleep(0.1)
            await cache.stop()
            return len(tier2), (await cache.stats()).pending_writes

        assert asyncio.run(scenario()) == (0, 0)

    def test_newer_set_replaces_pending_write(self):
        async def scenario():
            clock = ManualClock()
            _, tier2, cache = make_tiers(clock, tier2_fire_and_forget=True)
            tier2.delay = 0.05
            await cache.set("k", "v1")
            await cache.set("k", "v2")
            pending = (await cache.stats()).pending_writes
            await cache.stop()
            entry = (await tier2.get("k")).unwrap()
            return pending, entry.value

        pending, stored = asyncio.run(scenario())

        assert pending == 1
        assert stored == "v2"


class TestWarmup:
    """Tests for warmup()."""

    def test_report_counts(self):
        async def scenario():
            _, _, cache = make_tiers(ManualClock())
            await cache.set("cached", "x")

            async def loader(key):
                if key == "none":
                    return None
                if key == "broken":
                    raise ValueError("cannot load")
                return f"value:{key}"

            report = await cache.warmup(["cached", "fresh", "fresh", "none", "broken"], loader)
            return report, (await cache.get("fresh")).unwrap()

        report, value = asyncio.run(scenario())

        assert report.loaded == 1
        assert report.skipped == 2
        assert report.failed == 1
        assert report.failed_keys == ("broken",)
        assert value == "value:fresh"

    def test_sync_loader(self):
        async def scenario():
            _, _, cache = make_tiers(ManualClock())
            return await cache.warmup(["a", "b"], lambda key: key.upper())

        assert asyncio.run(scenario()).loaded == 2

    def test_concurrency_bound(self):
        async def scenario():
            _, _, cache = make_tiers(ManualClock())
            running = 0
            peak = 0

            async def loader(key):
                nonlocal running, peak
                running += 1
                peak = max(peak, running)
                await asyncio.sleep(0.01)
                running -= 1
                return key

            report = await cache.warmup([f"k{i}" for i in range(12)], loader, concurrency=3)
            return report, peak

        report, peak = asyncio.run(scenario())

        assert report.loaded == 12
        assert peak <= 3


class TestReporting:
    """Tests for stats() and report()."""

    def test_format_bytes(self):
        assert format_bytes(0) == "0 B"
        assert format_bytes(512) == "512.00 B"
        assert format_bytes(2048) == "2.00 KB"

    def test_stats_survive_raising_tier2(self):
        async def scenario():
            _, tier2, cache = make_tiers(ManualClock())
            await cache.set("k", "v")
            tier2.stats_failure = "raise"
            return await cache.stats(), await cache.report()

        stats, text = asyncio.run(scenario())

        assert stats.tier2 is None
        assert stats.tier2_errors == 1
        assert stats.to_dict()["tier2"] is None
        assert stats.total_entries == 1
        assert "Tier-2 (tier2)" in text
        assert "unavailable" in text

    def test_stats_bounded_by_tier2_timeout(self):
        async def scenario():
            loop = asyncio.get_running_loop()
            _, tier2, cache = make_tiers(ManualClock(), tier2_timeout_seconds=0.05)
            tier2.stats_failure = "stall"
            started = loop.time()
            stats = await cache.stats()
            return stats, loop.time() - started

        stats, elapsed = asyncio.run(scenario())

        assert stats.tier2 is None
        assert stats.tier2_errors == 1
        assert elapsed < 1.0

    def test_report_with_persistent_tier2(self, tmp_path):
        async def scenario():
            clock = ManualClock()
            cache = TieredCacheOrchestrator(
                BoundedCache(CacheConfig(cleanup_interval_seconds=0), clock=clock),
                PersistentCache(PersistentCacheConfig(path=tmp_path / "c.lz4"), clock=clock),
                clock=clock,
            )
            await cache.start()
            await cache.set("analysis:1", {"score": 0.9})
            await cache.get("analysis:1")
            text = await cache.report()
            summary = (await cache.stats()).to_dict()["summary"]
            await cache.stop()
            return text, summary

        text, summary = asyncio.run(scenario())

        assert "Tiered cache performance report" in text
        assert "Tier-2 (persistent)" in text
        assert summary["tier1_hits"] == 1
        assert summary["circuit_state"] == "CLOSED"
        assert (tmp_path / "c.lz4").exists()

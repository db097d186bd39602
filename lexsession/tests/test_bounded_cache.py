"""
Unit Tests: Bounded LRU Cache

Tests:
    - Round trip, TTL expiry and replacement
    - Capacity enforcement and recency-based eviction
    - Pattern listing / invalidation
    - Similarity lookup and its memo
    - Eviction callbacks and statistics
    - Export / import of live entries

Run: python -m pytest lexsession/tests/test_bounded_cache.py -v
"""

import asyncio
import math

import pytest

from lexsession.cache.bounded import BoundedCache
from lexsession.cache.models import EvictionReason
from lexsession.cache.similarity import jaccard, similarity, tokenize
from lexsession.core import constants as C
from lexsession.core.clock import ManualClock
from lexsession.core.config import CacheConfig
from lexsession.core.errors import ErrorCode


def make_cache(clock, **overrides):
    overrides.setdefault("cleanup_interval_seconds", 0)
    return BoundedCache(CacheConfig(**overrides), clock=clock)


class TestBasicOperations:
    """Tests for get/set/delete/has."""

    def test_round_trip(self):
        async def scenario():
            cache = make_cache(ManualClock())
            await cache.set("k", {"answer": 42})
            return (await cache.get("k")).unwrap()

        entry = asyncio.run(scenario())

        assert entry.value == {"answer": 42}
        assert entry.access_count == 1

    def test_miss_is_ok_none(self):
        async def scenario():
            return await make_cache(ManualClock()).get("missing")

        result = asyncio.run(scenario())

        assert result.is_ok()
        assert result.unwrap() is None

    def test_short_ttl_expires(self):
        async def scenario():
            clock = ManualClock()
            cache = make_cache(clock)
            await cache.set("k", "v", ttl_seconds=0.001)
            clock.advance(0.002)
            entry = (await cache.get("k")).unwrap()
            return entry, len(cache), await cache.stats()

        entry, size, stats = asyncio.run(scenario())

        assert entry is None
        assert size == 0
        assert stats.expirations == 1
        assert stats.misses == 1

    def test_expiry_boundary_is_inclusive(self):
        async def scenario():
            clock = ManualClock()
            cache = make_cache(clock)
            await cache.set("k", "v", ttl_seconds=10)
            clock.advance(10)
            return (await cache.has("k")).unwrap()

        assert asyncio.run(scenario()) is False

    def test_invalid_ttl(self):
        async def scenario():
            return await make_cache(ManualClock()).set("k", "v", ttl_seconds=0)

        result = asyncio.run(scenario())

        assert result.error.code is ErrorCode.INVALID_INPUT

    @pytest.mark.parametrize("ttl", [-1, math.nan, math.inf, 1e-12])
    def test_unusable_ttl_is_rejected_everywhere(self, ttl):
        async def scenario():
            cache = make_cache(ManualClock())
            await cache.set("present", "v")
            return (
                await cache.set("k", "v", ttl_seconds=ttl),
                await cache.touch("present", ttl_seconds=ttl),
                await cache.set_many({"a": 1}, ttl_seconds=ttl),
                (await cache.keys()).unwrap(),
            )

        set_result, touch_result, many_result, keys = asyncio.run(scenario())

        for result in (set_result, touch_result, many_result):
            assert result.error.code is ErrorCode.INVALID_INPUT
            assert result.error.context["field"] == "ttl_seconds"
        assert keys == ["present"]

    def test_replace_keeps_creation_time(self):
        async def scenario():
            clock = ManualClock()
            cache = make_cache(clock)
            await cache.set("k", "v1")
            created = (await cache.get("k")).unwrap().created_at
            clock.advance(5)
            await cache.set("k", "v2")
            entry = (await cache.get("k")).unwrap()
            return created, entry, len(cache)

        created, entry, size = asyncio.run(scenario())

        assert entry.value == "v2"
        assert entry.created_at == created
        assert entry.access_count == 2
        assert size == 1

    def test_delete_and_has(self):
        async def scenario():
            cache = make_cache(ManualClock())
            await cache.set("k", "v")
            before = (await cache.has("k")).unwrap()
            deleted = (await cache.delete("k")).unwrap()
            again = (await cache.delete("k")).unwrap()
            after = (await cache.has("k")).unwrap()
            return before, deleted, again, after

        assert asyncio.run(scenario()) == (True, True, False, False)

    def test_touch_extends_ttl(self):
        async def scenario():
            clock = ManualClock()
            cache = make_cache(clock)
            await cache.set("k", "v", ttl_seconds=10)
            clock.advance(8)
            await cache.touch("k", ttl_seconds=10)
            clock.advance(8)
            return (await cache.get("k")).unwrap()

        assert asyncio.run(scenario()).value == "v"


class TestCapacity:
    """Tests for LRU eviction."""

    def test_oldest_evicted_first(self):
        async def scenario():
            cache = make_cache(ManualClock(), max_entries=3)
            for key in "ABCD":
                await cache.set(key, key.lower())
            return (await cache.keys()).unwrap(), await cache.stats()

        keys, stats = asyncio.run(scenario())

        assert keys == ["D", "C", "B"]
        assert stats.evictions == 1
        assert stats.entries == 3

    def test_recent_read_protects_entry(self):
        async def scenario():
            cache = make_cache(ManualClock(), max_entries=3)
            for key in "ABC":
                await cache.set(key, key)
            await cache.get("A")
            await cache.set("D", "D")
            return sorted((await cache.keys()).unwrap())

        assert asyncio.run(scenario()) == ["A", "C", "D"]

    def test_never_exceeds_capacity(self):
        async def scenario():
            cache = make_cache(ManualClock(), max_entries=5)
            await asyncio.gather(*(cache.set(f"k{i}", i) for i in range(50)))
            return len(cache), cache.capacity

        size, capacity = asyncio.run(scenario())

        assert size == 5
        assert capacity == 5

    def test_batch_helpers(self):
        async def scenario():
            cache = make_cache(ManualClock(), max_entries=2)
            await cache.set_many({"a": 1, "b": 2, "c": 3})
            return (await cache.get_many(["a", "b", "c"])).unwrap()

        found = asyncio.run(scenario())

        assert {k: e.value for k, e in found.items()} == {"b": 2, "c": 3}


class TestPatterns:
    """Tests for keys(pattern) and invalidate(pattern)."""

    def test_invalidate_by_prefix(self):
        async def scenario():
            cache = make_cache(ManualClock())
            for key in ("user:1", "user:2", "case:1"):
                await cache.set(key, key)
            removed = (await cache.invalidate(r"^user:")).unwrap()
            return removed, (await cache.keys()).unwrap()

        removed, keys = asyncio.run(scenario())

        assert removed == 2
        assert keys == ["case:1"]

    def test_keys_with_pattern(self):
        async def scenario():
            cache = make_cache(ManualClock())
            for key in ("user:1", "case:1", "user:2"):
                await cache.set(key, key)
            return (await cache.keys("user")).unwrap()

        assert asyncio.run(scenario()) == ["user:2", "user:1"]

    def test_bad_regex_is_an_error_value(self):
        async def scenario():
            cache = make_cache(ManualClock())
            return await cache.keys("("), await cache.invalidate("[")

        keys, invalidated = asyncio.run(scenario())

        assert keys.error.code is ErrorCode.INVALID_INPUT
        assert invalidated.error.code is ErrorCode.INVALID_INPUT

    def test_clear(self):
        async def scenario():
            cache = make_cache(ManualClock())
            calls = []
            cache.on_eviction(lambda key, reason: calls.append(key))
            await cache.set("a", 1)
            await cache.set("b", 2)
            cleared = (await cache.clear()).unwrap()
            await cache.set("c", 3)
            return cleared, calls, (await cache.keys()).unwrap()

        cleared, calls, keys = asyncio.run(scenario())

        assert cleared == 2
        assert calls == []
        assert keys == ["c"]


class TestSimilarity:
    """Tests for token Jaccard similarity and find_similar()."""

    def test_tokenize_and_jaccard(self):
        assert tokenize("Offer, acceptance & Offer!") == {"offer", "acceptance"}
        assert jaccard(set(), set()) == 1.0
        assert jaccard({"a"}, set()) == 0.0
        assert similarity("breach of contract", "contract breach") == 2 / 3

    def test_find_similar_ranked(self):
        async def scenario():
            cache = make_cache(ManualClock())
            await cache.set("contract offer acceptance", 1)
            await cache.set("offer acceptance", 2)
            await cache.set("tort negligence", 3)
            return (await cache.find_similar("acceptance offer contract", threshold=0.5)).unwrap()

        hits = asyncio.run(scenario())

        assert [h.entry.key for h in hits] == ["contract offer acceptance", "offer acceptance"]
        assert hits[0].similarity == 1.0

    def test_default_threshold(self):
        async def scenario():
            cache = make_cache(ManualClock())
            await cache.set("offer acceptance", 1)
            return (await cache.find_similar("contract offer acceptance")).unwrap()

        assert asyncio.run(scenario()) == []

    def test_invalid_threshold(self):
        async def scenario():
            return await make_cache(ManualClock()).find_similar("x", threshold=1.5)

        assert asyncio.run(scenario()).error.code is ErrorCode.INVALID_INPUT

    def test_memo_dropped_on_mutation(self):
        async def scenario():
            cache = make_cache(ManualClock())
            await cache.set("offer acceptance", 1)
            first = (await cache.find_similar("offer acceptance", threshold=0.5)).unwrap()
            await cache.set("acceptance offer", 2)
            second = (await cache.find_similar("offer acceptance", threshold=0.5)).unwrap()
            return first, second

        first, second = asyncio.run(scenario())

        assert len(first) == 1
        assert len(second) == 2

    def test_memo_skips_entries_expired_since(self):
        async def scenario():
            clock = ManualClock()
            cache = make_cache(clock)
            await cache.set("offer acceptance", 1, ttl_seconds=5)
            first = (await cache.find_similar("offer acceptance")).unwrap()
            clock.advance(6)
            second = (await cache.find_similar("offer acceptance")).unwrap()
            return first, second

        first, second = asyncio.run(scenario())

        assert len(first) == 1
        assert second == []

    def test_memo_drops_results_past_window(self):
        async def scenario():
            clock = ManualClock()
            cache = make_cache(clock, similarity_window_seconds=60)
            await cache.set("offer acceptance", 1)
            await cache.find_similar("offer")
            await cache.find_similar("acceptance")
            before = cache.similarity_memo_size
            clock.advance(61)
            await cache.find_similar("counter offer")
            return before, cache.similarity_memo_size

        before, after = asyncio.run(scenario())

        assert before == 2
        assert after == 1

    def test_memo_is_capped(self):
        async def scenario():
            cache = make_cache(ManualClock())
            await cache.set("offer acceptance", 1)
            for i in range(C.SIMILARITY_MEMO_MAX_ENTRIES + 50):
                await cache.find_similar(f"query {i}")
            return cache.similarity_memo_size

        assert asyncio.run(scenario()) == C.SIMILARITY_MEMO_MAX_ENTRIES


class TestExportImport:
    """Tests for export() and import_records()."""

    def test_round_trip_keeps_values_and_recency(self):
        async def scenario():
            clock = ManualClock()
            source = make_cache(clock)
            await source.set("a", {"n": 1})
            await source.set("b", [2])
            await source.set("gone", "x", ttl_seconds=5)
            await source.get("a")
            clock.advance(10)
            records = await source.export()

            target = make_cache(clock)
            await target.set("stale", "dropped on import")
            loaded = await target.import_records(records)
            return records, loaded, (await target.keys()).unwrap(), (await target.get("b")).unwrap()

        records, loaded, keys, entry = asyncio.run(scenario())

        assert list(records) == ["a", "b"]
        assert records["a"]["accessCount"] == 1
        assert loaded.unwrap() == 2
        assert keys == ["a", "b"]
        assert entry.value == [2]

    def test_import_skips_bad_records_and_trims_to_capacity(self):
        async def scenario():
            clock = ManualClock()
            cache = make_cache(clock, max_entries=2)
            evicted = []
            cache.on_eviction(lambda key, reason: evicted.append((key, reason)))
            now_ms = clock.now().millis
            good = {"value": 1, "createdAt": now_ms, "expiresAt": None}
            records = {
                "newest": good,
                "broken": {"value": 2},
                "not-a-record": "text",
                "expired": {"value": 3, "createdAt": now_ms, "expiresAt": now_ms - 1},
                "middle": good,
                "oldest": good,
            }
            loaded = await cache.import_records(records)
            return loaded, (await cache.keys()).unwrap(), evicted

        loaded, keys, evicted = asyncio.run(scenario())

        assert loaded.unwrap() == 2
        assert keys == ["newest", "middle"]
        assert evicted == [("oldest", EvictionReason.LRU)]

    def test_import_rejects_non_mapping(self):
        async def scenario():
            return await make_cache(ManualClock()).import_records(["a", "b"])

        assert asyncio.run(scenario()).error.code is ErrorCode.INVALID_INPUT


class TestCallbacksAndStats:
    """Tests for eviction callbacks, sweeping and stats()."""

    def test_callbacks_receive_reason(self):
        async def scenario():
            clock = ManualClock()
            cache = make_cache(clock, max_entries=2)
            seen = []
            cache.on_eviction(lambda key, reason: seen.append((key, reason)))
            await cache.set("a", 1, ttl_seconds=1)
            await cache.set("b", 2)
            await cache.set("c", 3)
            await cache.delete("b")
            await cache.set("d", 4, ttl_seconds=1)
            clock.advance(2)
            swept = await cache.cleanup_expired()
            return seen, swept

        seen, swept = asyncio.run(scenario())

        assert seen == [
            ("a", EvictionReason.LRU),
            ("b", EvictionReason.MANUAL),
            ("d", EvictionReason.EXPIRED),
        ]
        assert swept == 1

    def test_failing_callback_does_not_break_cache(self):
        async def scenario():
            cache = make_cache(ManualClock(), max_entries=1)

            def boom(key, reason):
                raise RuntimeError("callback failure")

            cache.on_eviction(boom)
            await cache.set("a", 1)
            result = await cache.set("b", 2)
            return result, (await cache.keys()).unwrap()

        result, keys = asyncio.run(scenario())

        assert result.is_ok()
        assert keys == ["b"]

    def test_stats(self):
        async def scenario():
            cache = make_cache(ManualClock())
            await cache.set("hot", "x")
            await cache.set("cold", "y")
            for _ in range(3):
                await cache.get("hot")
            await cache.get("nope")
            return await cache.stats()

        stats = asyncio.run(scenario())

        assert stats.hits == 3
        assert stats.misses == 1
        assert stats.hit_rate == 0.75
        assert stats.sets == 2
        assert stats.hottest_keys[0] == ("hot", 3)
        assert stats.most_recent_keys == ["hot", "cold"]
        assert stats.estimated_memory_bytes > 0
        assert stats.to_dict()["hit_rate"] == 0.75

    def test_background_sweep(self):
        async def scenario():
            clock = ManualClock()
            cache = BoundedCache(CacheConfig(cleanup_interval_seconds=0.01), clock=clock)
            cache.start()
            await cache.set("k", "v", ttl_seconds=1)
            clock.advance(2)
            for _ in range(100):
                if len(cache) == 0:
                    break
                await asyncio.sleep(0.01)
            await cache.stop()
            await cache.stop()
            return len(cache)

        assert asyncio.run(scenario()) == 0

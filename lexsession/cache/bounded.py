"""
Bounded Cache: Capacity-Limited LRU with TTL (Tier-1)

Provides O(1) get/set/evict via:
- key -> node index (dict)
- doubly linked recency list with a sentinel; sentinel.next is the most
  recently used node, sentinel.prev the least recently used

Guarantees:
- Live entries never exceed max_entries; set() evicts from the tail
  before inserting
- Expired entries are purged eagerly when get/has/touch reach them and
  swept periodically by a background task
- A single asyncio.Lock covers every map + list mutation; nothing under
  the lock awaits I/O

Also provides:
- Pattern (regex) key listing and invalidation
- Jaccard find_similar over keys, memoized per (query, threshold) in a
  bounded memo that drops results older than the window
- export() / import_records() in the persisted record layout
- Hit/miss, latency and memory-estimate statistics
- Eviction callbacks with reason (expired / lru / manual)
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import OrderedDict, deque
from typing import Any, Callable, Generic, Iterable, Iterator, Mapping, Optional, TypeVar

from lexsession.cache.models import (
    CacheEntry,
    CacheStats,
    EvictionReason,
    SimilarEntry,
    estimate_entry_bytes,
)
from lexsession.cache.similarity import jaccard, tokenize
from lexsession.core import constants as C
from lexsession.core.clock import Clock, SYSTEM_CLOCK
from lexsession.core.config import CacheConfig
from lexsession.core.errors import CacheError
from lexsession.core.tasks import PeriodicTask
from lexsession.core.types import Result, Ok, Err, Timestamp, valid_duration

logger = logging.getLogger(__name__)

V = TypeVar("V")

EvictionCallback = Callable[[str, EvictionReason], None]


class _Node(Generic[V]):
    """Recency list node."""

    __slots__ = ("entry", "prev", "next")

    def __init__(self, entry: Optional[CacheEntry[V]]) -> None:
        self.entry = entry
        self.prev: Optional[_Node[V]] = None
        self.next: Optional[_Node[V]] = None


class BoundedCache(Generic[V]):
    """
    In-process LRU cache with per-entry TTL.

    Usage:
        cache: BoundedCache[str] = BoundedCache(CacheConfig(max_entries=3))
        await cache.set("a", "alpha", ttl_seconds=60)
        result = await cache.get("a")
        entry = result.unwrap()   # CacheEntry or None on miss
    """

    __slots__ = (
        "_config", "_clock", "_name", "_map", "_head", "_lock",
        "_hits", "_misses", "_sets", "_evictions", "_expirations",
        "_latencies_ns", "_similar_memo", "_eviction_callbacks", "_sweeper",
    )

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        clock: Optional[Clock] = None,
        name: str = "tier1",
    ) -> None:
        self._config = config or CacheConfig()
        if self._config.max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {self._config.max_entries}")
        self._clock = clock or SYSTEM_CLOCK
        self._name = name

        self._map: dict[str, _Node[V]] = {}
        self._head: _Node[V] = _Node(None)
        self._head.prev = self._head
        self._head.next = self._head
        self._lock = asyncio.Lock()

        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._evictions = 0
        self._expirations = 0
        self._latencies_ns: deque[int] = deque(maxlen=C.ACCESS_LATENCY_SAMPLES)

        # (query, threshold) -> (computed_at, results), oldest first
        self._similar_memo: OrderedDict[tuple[str, float], tuple[Timestamp, list[SimilarEntry[V]]]] = OrderedDict()
        self._eviction_callbacks: list[EvictionCallback] = []
        self._sweeper: Optional[PeriodicTask] = None
        if self._config.cleanup_interval_seconds > 0:
            self._sweeper = PeriodicTask(
                f"{name}-expiry-sweep",
                self._config.cleanup_interval_seconds,
                self.cleanup_expired,
            )

    @property
    def name(self) -> str:
        return self._name

    @property
    def capacity(self) -> int:
        return self._config.max_entries

    # -------------------------------------------------------------------------
    # Recency list primitives (caller holds the lock)
    # -------------------------------------------------------------------------
    def _link_front(self, node: _Node[V]) -> None:
        first = self._head.next
        if first is None:
            raise RuntimeError("LRU list corrupted: sentinel has no successor")
        node.prev = self._head
        node.next = first
        first.prev = node
        self._head.next = node

    def _unlink(self, node: _Node[V]) -> None:
        prev, nxt = node.prev, node.next
        if prev is None or nxt is None:
            raise RuntimeError(f"LRU list corrupted: node {node.entry and node.entry.key!r} is detached")
        prev.next = nxt
        nxt.prev = prev
        node.prev = None
        node.next = None

    def _move_to_front(self, node: _Node[V]) -> None:
        if self._head.next is node:
            return
        self._unlink(node)
        self._link_front(node)

    def _iter_nodes(self) -> Iterator[_Node[V]]:
        """Most recently used first."""
        node = self._head.next
        while node is not None and node is not self._head:
            yield node
            node = node.next

    def _remove(
        self,
        node: _Node[V],
        reason: EvictionReason,
        evicted: list[tuple[str, EvictionReason]],
    ) -> None:
        entry = node.entry
        if entry is None:
            raise RuntimeError("LRU list corrupted: attempted to remove the sentinel")
        self._unlink(node)
        del self._map[entry.key]
        self._similar_memo.clear()
        if reason == EvictionReason.LRU:
            self._evictions += 1
        elif reason == EvictionReason.EXPIRED:
            self._expirations += 1
        evicted.append((entry.key, reason))

    def _dispatch(self, evicted: list[tuple[str, EvictionReason]]) -> None:
        """Invoke eviction callbacks outside the lock."""
        for key, reason in evicted:
            if reason == EvictionReason.LRU:
                logger.debug("Cache entry evicted", extra={"cache": self._name, "key": key})
            for callback in self._eviction_callbacks:
                try:
                    callback(key, reason)
                except Exception:
                    logger.exception(
                        "Eviction callback failed",
                        extra={"cache": self._name, "key": key, "reason": reason.value},
                    )

    def _ttl_to_expiry(self, now: Timestamp, ttl_seconds: Optional[float]) -> Timestamp:
        ttl = self._config.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        return now.plus_seconds(ttl)

    # -------------------------------------------------------------------------
    # Core operations
    # -------------------------------------------------------------------------
    def on_eviction(self, callback: EvictionCallback) -> None:
        """Register callback(key, reason) for every entry that leaves the cache."""
        self._eviction_callbacks.append(callback)

    async def get(self, key: str) -> Result[Optional[CacheEntry[V]], CacheError]:
        """
        Return the live entry and mark it most recently used.

        An expired entry is deleted and reported as a miss.
        """
        started = time.perf_counter_ns()
        evicted: list[tuple[str, EvictionReason]] = []
        async with self._lock:
            now = self._clock.now()
            node = self._map.get(key)
            entry: Optional[CacheEntry[V]] = None
            if node is not None and node.entry is not None:
                if node.entry.is_expired(now):
                    self._remove(node, EvictionReason.EXPIRED, evicted)
                else:
                    entry = node.entry
                    entry.record_access(now)
                    self._move_to_front(node)

            if entry is None:
                self._misses += 1
            else:
                self._hits += 1
            self._latencies_ns.append(time.perf_counter_ns() - started)

        self._dispatch(evicted)
        return Ok(entry)

    async def set(
        self,
        key: str,
        value: V,
        ttl_seconds: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Result[None, CacheError]:
        """
        Insert or replace `key`.

        Replacing keeps the entry's creation time and access count and
        moves it to the front. Inserting evicts from the tail first while
        the cache is full.
        """
        if ttl_seconds is not None and not valid_duration(ttl_seconds):
            return Err(CacheError.invalid_input("ttl_seconds", "must be finite and > 0", ttl_seconds))

        evicted: list[tuple[str, EvictionReason]] = []
        async with self._lock:
            self._set_locked(key, value, ttl_seconds, tags, metadata, evicted)
        self._dispatch(evicted)
        return Ok(None)

    def _set_locked(
        self,
        key: str,
        value: V,
        ttl_seconds: Optional[float],
        tags: Optional[Iterable[str]],
        metadata: Optional[Mapping[str, Any]],
        evicted: list[tuple[str, EvictionReason]],
    ) -> None:
        now = self._clock.now()
        expires_at = self._ttl_to_expiry(now, ttl_seconds)
        node = self._map.get(key)

        if node is not None and node.entry is not None:
            entry = node.entry
            entry.value = value
            entry.expires_at = expires_at
            entry.last_accessed = now
            if tags is not None:
                entry.tags = frozenset(tags)
            if metadata is not None:
                entry.metadata = dict(metadata)
            self._move_to_front(node)
        else:
            while len(self._map) >= self._config.max_entries:
                tail = self._head.prev
                if tail is None or tail is self._head:
                    raise RuntimeError("LRU list corrupted: map is non-empty but list is empty")
                self._remove(tail, EvictionReason.LRU, evicted)

            node = _Node(CacheEntry(
                key=key,
                value=value,
                created_at=now,
                last_accessed=now,
                expires_at=expires_at,
                tags=frozenset(tags or ()),
                metadata=dict(metadata or {}),
            ))
            self._map[key] = node
            self._link_front(node)

        self._sets += 1
        self._similar_memo.clear()

    async def has(self, key: str) -> Result[bool, CacheError]:
        """Existence check; purges the entry if it has expired."""
        evicted: list[tuple[str, EvictionReason]] = []
        async with self._lock:
            node = self._map.get(key)
            present = False
            if node is not None and node.entry is not None:
                if node.entry.is_expired(self._clock.now()):
                    self._remove(node, EvictionReason.EXPIRED, evicted)
                else:
                    present = True
        self._dispatch(evicted)
        return Ok(present)

    async def touch(
        self,
        key: str,
        ttl_seconds: Optional[float] = None,
    ) -> Result[bool, CacheError]:
        """
        Mark `key` most recently used without reading it.

        With `ttl_seconds`, the expiry is also reset to now + ttl.
        """
        if ttl_seconds is not None and not valid_duration(ttl_seconds):
            return Err(CacheError.invalid_input("ttl_seconds", "must be finite and > 0", ttl_seconds))

        evicted: list[tuple[str, EvictionReason]] = []
        async with self._lock:
            now = self._clock.now()
            node = self._map.get(key)
            touched = False
            if node is not None and node.entry is not None:
                if node.entry.is_expired(now):
                    self._remove(node, EvictionReason.EXPIRED, evicted)
                else:
                    node.entry.last_accessed = now
                    if ttl_seconds is not None:
                        node.entry.expires_at = now.plus_seconds(ttl_seconds)
                    self._move_to_front(node)
                    touched = True
        self._dispatch(evicted)
        return Ok(touched)

    async def delete(self, key: str) -> Result[bool, CacheError]:
        evicted: list[tuple[str, EvictionReason]] = []
        async with self._lock:
            node = self._map.get(key)
            if node is not None:
                self._remove(node, EvictionReason.MANUAL, evicted)
        self._dispatch(evicted)
        return Ok(bool(evicted))

    async def keys(self, pattern: Optional[str] = None) -> Result[list[str], CacheError]:
        """Unexpired keys, most recently used first, optionally regex-filtered."""
        regex: Optional[re.Pattern[str]] = None
        if pattern is not None:
            try:
                regex = re.compile(pattern)
            except re.error as e:
                return Err(CacheError.invalid_pattern(pattern, e))

        async with self._lock:
            now = self._clock.now()
            return Ok([
                node.entry.key
                for node in self._iter_nodes()
                if node.entry is not None
                and not node.entry.is_expired(now)
                and (regex is None or regex.search(node.entry.key))
            ])

    async def invalidate(self, pattern: str) -> Result[int, CacheError]:
        """Delete every key matching the regex. Returns the number removed."""
        try:
            regex = re.compile(pattern)
        except re.error as e:
            return Err(CacheError.invalid_pattern(pattern, e))

        evicted: list[tuple[str, EvictionReason]] = []
        async with self._lock:
            matched = [node for key, node in self._map.items() if regex.search(key)]
            for node in matched:
                self._remove(node, EvictionReason.MANUAL, evicted)

        if evicted:
            logger.info(
                "Cache keys invalidated",
                extra={"cache": self._name, "pattern": pattern, "count": len(evicted)},
            )
        self._dispatch(evicted)
        return Ok(len(evicted))

    async def clear(self) -> Result[int, CacheError]:
        """Drop every entry. Eviction callbacks are not invoked."""
        async with self._lock:
            count = len(self._map)
            for node in list(self._map.values()):
                node.prev = None
                node.next = None
            self._map.clear()
            self._head.prev = self._head
            self._head.next = self._head
            self._similar_memo.clear()
        return Ok(count)

    async def size(self) -> Result[int, CacheError]:
        return Ok(len(self._map))

    def __len__(self) -> int:
        return len(self._map)

    # -------------------------------------------------------------------------
    # Batch helpers
    # -------------------------------------------------------------------------
    async def get_many(self, keys: Iterable[str]) -> Result[dict[str, CacheEntry[V]], CacheError]:
        """Hits only; misses are omitted from the mapping."""
        found: dict[str, CacheEntry[V]] = {}
        for key in keys:
            result = await self.get(key)
            if result.is_err():
                return result
            entry = result.unwrap()
            if entry is not None:
                found[key] = entry
        return Ok(found)

    async def set_many(
        self,
        items: Mapping[str, V],
        ttl_seconds: Optional[float] = None,
    ) -> Result[None, CacheError]:
        if ttl_seconds is not None and not valid_duration(ttl_seconds):
            return Err(CacheError.invalid_input("ttl_seconds", "must be finite and > 0", ttl_seconds))
        evicted: list[tuple[str, EvictionReason]] = []
        async with self._lock:
            for key, value in items.items():
                self._set_locked(key, value, ttl_seconds, None, None, evicted)
        self._dispatch(evicted)
        return Ok(None)

    # -------------------------------------------------------------------------
    # Export / import
    # -------------------------------------------------------------------------
    async def export(self) -> dict[str, dict[str, Any]]:
        """Live entries in the persisted record layout, most recently used first."""
        async with self._lock:
            now = self._clock.now()
            return {
                node.entry.key: node.entry.to_record()
                for node in self._iter_nodes()
                if node.entry is not None and not node.entry.is_expired(now)
            }

    async def import_records(
        self,
        records: Mapping[str, Mapping[str, Any]],
    ) -> Result[int, CacheError]:
        """
        Replace the contents with `records` as produced by export().

        Expired and malformed records are skipped. Record order is taken
        as most recently used first; past capacity the least recent are
        evicted. Returns the number of entries loaded.
        """
        if not isinstance(records, Mapping):
            return Err(CacheError.invalid_input("records", "must be a mapping", type(records).__name__))

        evicted: list[tuple[str, EvictionReason]] = []
        skipped = 0
        async with self._lock:
            now = self._clock.now()
            for node in self._map.values():
                node.prev = None
                node.next = None
            self._map.clear()
            self._head.prev = self._head
            self._head.next = self._head
            self._similar_memo.clear()

            for key, record in reversed(list(records.items())):
                try:
                    entry = CacheEntry.from_record(key, record)
                except (KeyError, TypeError, ValueError, AttributeError):
                    skipped += 1
                    continue
                if entry.is_expired(now):
                    continue
                if len(self._map) >= self._config.max_entries:
                    tail = self._head.prev
                    if tail is None or tail is self._head:
                        raise RuntimeError("LRU list corrupted: map is non-empty but list is empty")
                    self._remove(tail, EvictionReason.LRU, evicted)
                node = _Node(entry)
                self._map[key] = node
                self._link_front(node)
            loaded = len(self._map)

        if skipped:
            logger.warning(
                "Skipped malformed cache records on import",
                extra={"cache": self._name, "skipped": skipped},
            )
        logger.info("Cache entries imported", extra={"cache": self._name, "count": loaded})
        self._dispatch(evicted)
        return Ok(loaded)

    # -------------------------------------------------------------------------
    # Similarity lookup
    # -------------------------------------------------------------------------
    async def find_similar(
        self,
        query: str,
        threshold: Optional[float] = None,
    ) -> Result[list[SimilarEntry[V]], CacheError]:
        """
        Entries whose key's word tokens overlap `query` with Jaccard
        similarity >= threshold, best match first.

        Results are memoized per (query, threshold) for a short window;
        any mutation of the cache drops the memo.
        """
        limit = self._config.similarity_threshold if threshold is None else threshold
        if not (0.0 <= limit <= 1.0):
            return Err(CacheError.invalid_input("threshold", "must be in [0, 1]", limit))

        memo_key = (query, limit)
        async with self._lock:
            now = self._clock.now()
            cached = self._similar_memo.get(memo_key)
            if cached is not None:
                computed_at, results = cached
                if computed_at.seconds_until(now) < self._config.similarity_window_seconds:
                    return Ok([r for r in results if not r.entry.is_expired(now)])

            query_tokens = tokenize(query)
            results = []
            for node in self._iter_nodes():
                entry = node.entry
                if entry is None or entry.is_expired(now):
                    continue
                score = jaccard(query_tokens, tokenize(entry.key))
                if score >= limit:
                    results.append(SimilarEntry(entry=entry, similarity=score))
            results.sort(key=lambda r: r.similarity, reverse=True)
            self._remember_similar(memo_key, now, results)
            return Ok(list(results))

    def _remember_similar(
        self,
        memo_key: tuple[str, float],
        now: Timestamp,
        results: list[SimilarEntry[V]],
    ) -> None:
        """Store a memo entry, dropping stale ones and the oldest past the cap."""
        memo = self._similar_memo
        memo[memo_key] = (now, results)
        memo.move_to_end(memo_key)
        window = self._config.similarity_window_seconds
        while memo:
            oldest_at, _ = next(iter(memo.values()))
            if len(memo) <= C.SIMILARITY_MEMO_MAX_ENTRIES and oldest_at.seconds_until(now) < window:
                break
            memo.popitem(last=False)

    @property
    def similarity_memo_size(self) -> int:
        return len(self._similar_memo)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------
    async def cleanup_expired(self) -> int:
        """Remove every expired entry. Returns count removed."""
        evicted: list[tuple[str, EvictionReason]] = []
        async with self._lock:
            now = self._clock.now()
            expired = [
                node for node in self._map.values()
                if node.entry is not None and node.entry.is_expired(now)
            ]
            for node in expired:
                self._remove(node, EvictionReason.EXPIRED, evicted)
        if evicted:
            logger.debug(
                "Expired cache entries swept",
                extra={"cache": self._name, "count": len(evicted)},
            )
        self._dispatch(evicted)
        return len(evicted)

    def start(self) -> None:
        """Start the periodic expiry sweep (no-op if disabled)."""
        if self._sweeper is not None:
            self._sweeper.start()

    async def stop(self) -> None:
        """Stop the expiry sweep. Entries are kept. Idempotent."""
        if self._sweeper is not None:
            await self._sweeper.stop()

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------
    async def stats(self) -> CacheStats:
        async with self._lock:
            entries = [n.entry for n in self._iter_nodes() if n.entry is not None]
            hottest = sorted(entries, key=lambda e: e.access_count, reverse=True)
            samples = self._latencies_ns
            return CacheStats(
                entries=len(entries),
                max_entries=self._config.max_entries,
                hits=self._hits,
                misses=self._misses,
                sets=self._sets,
                evictions=self._evictions,
                expirations=self._expirations,
                avg_access_latency_ms=(sum(samples) / len(samples) / 1e6) if samples else 0.0,
                estimated_memory_bytes=sum(estimate_entry_bytes(e) for e in entries),
                hottest_keys=[(e.key, e.access_count) for e in hottest[:C.STATS_TOP_KEYS]],
                most_recent_keys=[e.key for e in entries[:C.STATS_TOP_KEYS]],
            )

"""
Persistent Cache: Snapshot-Backed Tier-2

A larger in-memory map that survives restarts:
- Loaded fully from a snapshot file at start()
- Flushed periodically (only when dirty) and on stop()
- Snapshot layout is a flat JSON object:
      key -> {value, expiresAt, accessCount, createdAt, lastAccessed}
  with timestamps in epoch milliseconds, optionally lz4-frame compressed
- Writes go to a temp file and are renamed into place (os.replace)

Durability is best effort: a missing, truncated or corrupt snapshot is
logged and the cache starts empty. Values must be JSON-serializable;
set() rejects anything else with CACHE_SERIALIZATION.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

import lz4.frame

from lexsession.cache.models import CacheEntry, CacheStats, estimate_entry_bytes
from lexsession.core import constants as C
from lexsession.core.clock import Clock, SYSTEM_CLOCK
from lexsession.core.config import PersistentCacheConfig
from lexsession.core.errors import CacheError
from lexsession.core.tasks import PeriodicTask
from lexsession.core.types import Result, Ok, Err, valid_duration

logger = logging.getLogger(__name__)

# First four bytes of every lz4 frame
LZ4_FRAME_MAGIC = b"\x04\x22\x4d\x18"


def encode_snapshot(records: Mapping[str, Mapping[str, Any]], compress: bool) -> bytes:
    """Serialize persisted records to snapshot bytes."""
    raw = json.dumps(records, separators=(",", ":")).encode("utf-8")
    return lz4.frame.compress(raw) if compress else raw


def decode_snapshot(data: bytes) -> dict[str, Any]:
    """
    Parse snapshot bytes, compressed or not.

    Raises:
        RuntimeError: corrupt lz4 frame
        ValueError: invalid JSON or a top level that is not an object
    """
    if data.startswith(LZ4_FRAME_MAGIC):
        data = lz4.frame.decompress(data)
    parsed = json.loads(data.decode("utf-8"))
    if not isinstance(parsed, dict):
        raise ValueError(f"snapshot top level must be an object, got {type(parsed).__name__}")
    return parsed


class PersistentCache:
    """
    Durable Tier-2 cache backed by a snapshot file.

    Usage:
        cache = PersistentCache(PersistentCacheConfig(path=Path("cache.json.lz4")))
        await cache.start()          # loads the snapshot
        await cache.set("k", {"answer": 42})
        await cache.stop()           # final flush
    """

    __slots__ = (
        "_config", "_clock", "_name", "_entries", "_lock", "_flush_lock", "_dirty",
        "_flusher", "_hits", "_misses", "_sets", "_evictions",
        "_expirations", "_started",
    )

    def __init__(
        self,
        config: Optional[PersistentCacheConfig] = None,
        clock: Optional[Clock] = None,
        name: str = "persistent",
    ) -> None:
        self._config = config or PersistentCacheConfig()
        if self._config.max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {self._config.max_entries}")
        self._clock = clock or SYSTEM_CLOCK
        self._name = name
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._lock = asyncio.Lock()
        # Held across snapshot + file write; one writer of path.tmp at a time
        self._flush_lock = asyncio.Lock()
        self._dirty = False
        self._flusher = PeriodicTask(
            f"{name}-flush",
            self._config.flush_interval_seconds,
            self._flush_if_dirty,
        )
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._evictions = 0
        self._expirations = 0
        self._started = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def path(self) -> Path:
        return self._config.path

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    async def start(self) -> None:
        """Load the snapshot and start the periodic flusher. Idempotent."""
        if self._started:
            return
        await self.load()
        self._flusher.start()
        self._started = True

    async def stop(self) -> None:
        """Stop the flusher and write any pending changes. Idempotent."""
        await self._flusher.stop()
        if self._started:
            await self._flush_if_dirty()
        self._started = False

    async def load(self) -> int:
        """
        Replace in-memory state with the snapshot on disk.

        Returns the number of live entries loaded. Never fails: an
        unreadable snapshot is logged and leaves the cache empty.
        """
        path = self._config.path
        loop = asyncio.get_running_loop()
        try:
            data = await loop.run_in_executor(None, path.read_bytes)
        except FileNotFoundError:
            logger.info("No cache snapshot found, starting empty", extra={"path": str(path)})
            return 0
        except OSError as e:
            logger.error(
                "Cache snapshot unreadable, starting empty",
                extra={"path": str(path), "error": str(e)},
            )
            return 0

        try:
            raw = decode_snapshot(data)
        except (RuntimeError, ValueError) as e:
            logger.error(
                "Cache snapshot corrupt, starting empty",
                extra={"path": str(path), "error": str(e)},
            )
            return 0

        now = self._clock.now()
        loaded: dict[str, CacheEntry[Any]] = {}
        skipped = 0
        for key, record in raw.items():
            try:
                entry = CacheEntry.from_record(key, record)
            except (KeyError, TypeError, ValueError, AttributeError):
                skipped += 1
                continue
            if entry.is_expired(now):
                continue
            loaded[key] = entry

        # Keep the most recently used entries if the snapshot exceeds capacity
        if len(loaded) > self._config.max_entries:
            ordered = sorted(loaded.values(), key=lambda e: e.last_accessed, reverse=True)
            loaded = {e.key: e for e in ordered[:self._config.max_entries]}

        async with self._lock:
            self._entries = loaded
            self._dirty = False

        if skipped:
            logger.warning(
                "Skipped malformed cache records",
                extra={"path": str(path), "skipped": skipped},
            )
        logger.info(
            "Cache snapshot loaded",
            extra={"path": str(path), "entries": len(loaded)},
        )
        return len(loaded)

    async def flush(self) -> Result[int, CacheError]:
        """
        Write the current state to disk atomically. Returns entries written.

        Concurrent flushes run one after another, each writing a snapshot
        taken after the previous write finished.
        """
        async with self._flush_lock:
            async with self._lock:
                now = self._clock.now()
                records = {
                    key: entry.to_record()
                    for key, entry in self._entries.items()
                    if not entry.is_expired(now)
                }
                self._dirty = False

            loop = asyncio.get_running_loop()
            try:
                payload = encode_snapshot(records, self._config.compress)
                await loop.run_in_executor(None, self._write_atomic, payload)
            except (OSError, TypeError, ValueError) as e:
                self._dirty = True
                logger.error(
                    "Cache snapshot flush failed",
                    extra={"path": str(self._config.path), "error": str(e)},
                )
                return Err(CacheError.unavailable(self._name, "flush", e))

        logger.debug(
            "Cache snapshot flushed",
            extra={"path": str(self._config.path), "entries": len(records)},
        )
        return Ok(len(records))

    async def _flush_if_dirty(self) -> None:
        if self._dirty:
            await self.flush()

    def _write_atomic(self, payload: bytes) -> None:
        path = self._config.path
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            with open(tmp_path, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    # -------------------------------------------------------------------------
    # Cache operations
    # -------------------------------------------------------------------------
    async def get(self, key: str) -> Result[Optional[CacheEntry[Any]], CacheError]:
        async with self._lock:
            now = self._clock.now()
            entry = self._entries.get(key)
            if entry is not None and entry.is_expired(now):
                del self._entries[key]
                self._expirations += 1
                self._dirty = True
                entry = None
            if entry is None:
                self._misses += 1
                return Ok(None)
            entry.record_access(now)
            self._hits += 1
            self._dirty = True
            return Ok(entry)

    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Result[None, CacheError]:
        """
        Insert or replace. When full, the entry accessed longest ago is
        evicted first.
        """
        if ttl_seconds is not None and not valid_duration(ttl_seconds):
            return Err(CacheError.invalid_input("ttl_seconds", "must be finite and > 0", ttl_seconds))
        try:
            json.dumps(value)
        except (TypeError, ValueError) as e:
            return Err(CacheError.serialization(key, e))

        ttl = self._config.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        async with self._lock:
            now = self._clock.now()
            existing = self._entries.get(key)
            if existing is not None:
                existing.value = value
                existing.expires_at = now.plus_seconds(ttl)
                existing.last_accessed = now
                if tags is not None:
                    existing.tags = frozenset(tags)
                if metadata is not None:
                    existing.metadata = dict(metadata)
            else:
                while len(self._entries) >= self._config.max_entries:
                    oldest = min(self._entries.values(), key=lambda e: e.last_accessed)
                    del self._entries[oldest.key]
                    self._evictions += 1
                self._entries[key] = CacheEntry(
                    key=key,
                    value=value,
                    created_at=now,
                    last_accessed=now,
                    expires_at=now.plus_seconds(ttl),
                    tags=frozenset(tags or ()),
                    metadata=dict(metadata or {}),
                )
            self._sets += 1
            self._dirty = True
        return Ok(None)

    async def delete(self, key: str) -> Result[bool, CacheError]:
        async with self._lock:
            removed = self._entries.pop(key, None) is not None
            if removed:
                self._dirty = True
            return Ok(removed)

    async def has(self, key: str) -> Result[bool, CacheError]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return Ok(False)
            if entry.is_expired(self._clock.now()):
                del self._entries[key]
                self._expirations += 1
                self._dirty = True
                return Ok(False)
            return Ok(True)

    async def keys(self, pattern: Optional[str] = None) -> Result[list[str], CacheError]:
        regex: Optional[re.Pattern[str]] = None
        if pattern is not None:
            try:
                regex = re.compile(pattern)
            except re.error as e:
                return Err(CacheError.invalid_pattern(pattern, e))
        async with self._lock:
            now = self._clock.now()
            return Ok([
                key for key, entry in self._entries.items()
                if not entry.is_expired(now) and (regex is None or regex.search(key))
            ])

    async def invalidate(self, pattern: str) -> Result[int, CacheError]:
        try:
            regex = re.compile(pattern)
        except re.error as e:
            return Err(CacheError.invalid_pattern(pattern, e))
        async with self._lock:
            matched = [key for key in self._entries if regex.search(key)]
            for key in matched:
                del self._entries[key]
            if matched:
                self._dirty = True
        if matched:
            logger.info(
                "Cache keys invalidated",
                extra={"cache": self._name, "pattern": pattern, "count": len(matched)},
            )
        return Ok(len(matched))

    async def clear(self) -> Result[int, CacheError]:
        async with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._dirty = True
        return Ok(count)

    async def size(self) -> Result[int, CacheError]:
        return Ok(len(self._entries))

    async def cleanup_expired(self) -> int:
        async with self._lock:
            now = self._clock.now()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self._expirations += len(expired)
            if expired:
                self._dirty = True
        return len(expired)

    async def stats(self) -> CacheStats:
        async with self._lock:
            entries = list(self._entries.values())
            hottest = sorted(entries, key=lambda e: e.access_count, reverse=True)
            recent = sorted(entries, key=lambda e: e.last_accessed, reverse=True)
            return CacheStats(
                entries=len(entries),
                max_entries=self._config.max_entries,
                hits=self._hits,
                misses=self._misses,
                sets=self._sets,
                evictions=self._evictions,
                expirations=self._expirations,
                estimated_memory_bytes=sum(estimate_entry_bytes(e) for e in entries),
                hottest_keys=[(e.key, e.access_count) for e in hottest[:C.STATS_TOP_KEYS]],
                most_recent_keys=[e.key for e in recent[:C.STATS_TOP_KEYS]],
            )

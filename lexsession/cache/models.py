"""
Cache Data Model

Shared by every cache tier:
- CacheEntry: one key/value with access metadata and optional expiry
- CacheStats: point-in-time counters for one cache instance
- EvictionReason: why an entry left the cache
- SimilarEntry: a find_similar() hit with its score

Persisted layout (Tier-2 snapshots), timestamps in epoch milliseconds:
    key -> {value, expiresAt, accessCount, createdAt, lastAccessed}
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Mapping, Optional, TypeVar

from lexsession.core import constants as C
from lexsession.core.types import Timestamp

V = TypeVar("V")


class EvictionReason(Enum):
    """Why an entry was removed."""
    EXPIRED = "expired"
    LRU = "lru"
    MANUAL = "manual"


@dataclass(slots=True)
class CacheEntry(Generic[V]):
    """
    Cached value plus access bookkeeping.

    `expires_at` of None means the entry never expires on its own.
    """

    key: str
    value: V
    created_at: Timestamp
    last_accessed: Timestamp
    access_count: int = 0
    expires_at: Optional[Timestamp] = None
    tags: frozenset[str] = frozenset()
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: Timestamp) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def remaining_seconds(self, now: Timestamp) -> Optional[float]:
        """Seconds of life left, or None for entries without expiry."""
        if self.expires_at is None:
            return None
        return max(0.0, now.seconds_until(self.expires_at))

    def record_access(self, now: Timestamp) -> None:
        self.access_count += 1
        self.last_accessed = now

    def to_record(self) -> dict[str, Any]:
        """Serialize to the persisted layout."""
        return {
            "value": self.value,
            "expiresAt": self.expires_at.millis if self.expires_at is not None else None,
            "accessCount": self.access_count,
            "createdAt": self.created_at.millis,
            "lastAccessed": self.last_accessed.millis,
        }

    @classmethod
    def from_record(cls, key: str, record: Mapping[str, Any]) -> CacheEntry[Any]:
        """
        Deserialize from the persisted layout.

        Raises:
            KeyError, TypeError, ValueError: on a malformed record
        """
        expires = record.get("expiresAt")
        created = Timestamp.from_millis(int(record["createdAt"]))
        return cls(
            key=key,
            value=record["value"],
            created_at=created,
            last_accessed=Timestamp.from_millis(int(record.get("lastAccessed", created.millis))),
            access_count=int(record.get("accessCount", 0)),
            expires_at=Timestamp.from_millis(int(expires)) if expires is not None else None,
        )


def estimate_entry_bytes(entry: CacheEntry[Any]) -> int:
    """Rough in-memory footprint: UTF-16 key and JSON value plus fixed overhead."""
    try:
        encoded = json.dumps(entry.value, default=str)
    except (TypeError, ValueError):
        encoded = repr(entry.value)
    return len(entry.key) * 2 + len(encoded) * 2 + C.ENTRY_OVERHEAD_BYTES


@dataclass(frozen=True, slots=True)
class SimilarEntry(Generic[V]):
    """find_similar() hit."""
    entry: CacheEntry[V]
    similarity: float


@dataclass
class CacheStats:
    """Cache performance statistics."""
    entries: int = 0
    max_entries: int = 0
    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0
    expirations: int = 0
    avg_access_latency_ms: float = 0.0
    estimated_memory_bytes: int = 0
    # (key, access_count), most accessed first
    hottest_keys: list[tuple[str, int]] = field(default_factory=list)
    most_recent_keys: list[str] = field(default_factory=list)

    @property
    def hit_rate(self) -> float:
        """Cache hit rate."""
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": self.entries,
            "max_entries": self.max_entries,
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "hit_rate": round(self.hit_rate, 4),
            "avg_access_latency_ms": round(self.avg_access_latency_ms, 4),
            "estimated_memory_bytes": self.estimated_memory_bytes,
            "hottest_keys": [{"key": k, "count": c} for k, c in self.hottest_keys],
            "most_recent_keys": list(self.most_recent_keys),
        }

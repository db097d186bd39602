"""
Cache Backend Protocol

Structural interface (PEP 544) shared by every cache tier so the tiered
orchestrator can compose any two of them:
- BoundedCache: in-process LRU (Tier-1)
- PersistentCache: snapshot-backed map (Tier-2)
- RedisCacheBackend: redis.asyncio (Tier-2)

All methods are async and return Result for zero-exception control flow.
A miss is Ok(None), never an Err.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Any, Iterable, Mapping, Optional, Protocol, TypeVar, runtime_checkable

from lexsession.cache.models import CacheEntry, CacheStats
from lexsession.core.errors import CacheError
from lexsession.core.types import Result

V = TypeVar("V")


@runtime_checkable
class CacheBackend(Protocol[V]):
    """
    Async key/value cache with TTL.

    Example:
        class MyCache(CacheBackend[dict]):
            async def get(self, key: str) -> Result[Optional[CacheEntry[dict]], CacheError]:
                ...
    """

    @property
    def name(self) -> str:
        """Backend identifier for logs and stats."""
        ...

    @abstractmethod
    async def get(self, key: str) -> Result[Optional[CacheEntry[V]], CacheError]:
        """
        Retrieve a live entry, refreshing its access metadata.

        Returns:
            Ok(entry): hit
            Ok(None): miss or expired
            Err(CacheError): backend failure
        """
        ...

    @abstractmethod
    async def set(
        self,
        key: str,
        value: V,
        ttl_seconds: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Result[None, CacheError]:
        """Insert or replace. `ttl_seconds=None` uses the backend default."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> Result[bool, CacheError]:
        """Remove one key. Ok(False) if it was absent."""
        ...

    @abstractmethod
    async def has(self, key: str) -> Result[bool, CacheError]:
        """Existence check that does not count as an access."""
        ...

    @abstractmethod
    async def keys(self, pattern: Optional[str] = None) -> Result[list[str], CacheError]:
        """Live keys, optionally filtered by a regular expression."""
        ...

    @abstractmethod
    async def invalidate(self, pattern: str) -> Result[int, CacheError]:
        """Delete every key matching the regular expression. Returns the count."""
        ...

    @abstractmethod
    async def clear(self) -> Result[int, CacheError]:
        """Remove everything. Returns the number of entries dropped."""
        ...

    @abstractmethod
    async def size(self) -> Result[int, CacheError]:
        """Number of stored entries."""
        ...

    @abstractmethod
    async def stats(self) -> CacheStats:
        """Point-in-time statistics."""
        ...

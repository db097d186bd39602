"""
Cache module: bounded LRU, durable Tier-2 backends and the tiered orchestrator.

Components:
- BoundedCache: in-process LRU with TTL, pattern invalidation, similarity lookup
- PersistentCache: snapshot-file Tier-2 (JSON, optional lz4)
- RedisCacheBackend: redis.asyncio Tier-2
- TieredCacheOrchestrator: promotion-on-miss over any two CacheBackends
"""

from lexsession.cache.models import (
    CacheEntry,
    CacheStats,
    EvictionReason,
    SimilarEntry,
)
from lexsession.cache.protocols import CacheBackend
from lexsession.cache.similarity import similarity
from lexsession.cache.bounded import BoundedCache
from lexsession.cache.persistent import PersistentCache
from lexsession.cache.redis_backend import RedisCacheBackend
from lexsession.cache.tiered import (
    TieredCacheOrchestrator,
    TieredCacheStats,
    WarmupReport,
)

__all__ = [
    "CacheEntry",
    "CacheStats",
    "EvictionReason",
    "SimilarEntry",
    "CacheBackend",
    "similarity",
    "BoundedCache",
    "PersistentCache",
    "RedisCacheBackend",
    "TieredCacheOrchestrator",
    "TieredCacheStats",
    "WarmupReport",
]

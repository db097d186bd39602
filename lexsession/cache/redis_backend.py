"""
Redis Cache Backend: Networked Tier-2
=====================================

Tier-2 cache on redis.asyncio (Redis or Valkey).

Data Model:
    Key: {key_prefix}{cache_key}
    Hash fields:
        - value: JSON-encoded payload
        - createdAt / lastAccessed / expiresAt: epoch milliseconds
        - accessCount: INT
    TTL: PEXPIRE on the hash, so the server drops expired entries itself.

Every redis or socket failure is returned as Err(CacheError.unavailable);
the tiered orchestrator treats those as misses and keeps serving Tier-1.
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Iterable, Mapping, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from lexsession.cache.models import CacheEntry, CacheStats
from lexsession.core import constants as C
from lexsession.core.clock import Clock, SYSTEM_CLOCK
from lexsession.core.config import RedisConfig
from lexsession.core.errors import CacheError
from lexsession.core.types import Result, Ok, Err, valid_duration

logger = logging.getLogger(__name__)

# Redis hash field names (match the persisted snapshot layout)
F_VALUE = "value"
F_CREATED = "createdAt"
F_ACCESSED = "lastAccessed"
F_EXPIRES = "expiresAt"
F_COUNT = "accessCount"

# Keys deleted per DEL round trip during invalidate/clear
DELETE_BATCH: int = 500


class RedisCacheBackend:
    """
    Tier-2 cache stored as one Redis hash per entry.

    Usage:
        backend = RedisCacheBackend(RedisConfig.from_env())
        result = await backend.connect()
        if result.is_err():
            ...  # run Tier-1 only
        await backend.set("analysis:42", {"score": 0.9}, ttl_seconds=3600)
        await backend.close()

    A pre-built client (for example a test double) may be passed as
    `client`; connect() then only pings it.
    """

    __slots__ = (
        "_config", "_clock", "_name", "_client", "_owns_client",
        "_default_ttl", "_hits", "_misses", "_sets", "_errors",
        "_latency_ns_total", "_latency_samples",
    )

    def __init__(
        self,
        config: Optional[RedisConfig] = None,
        client: Optional[Any] = None,
        clock: Optional[Clock] = None,
        default_ttl_seconds: float = C.PERSISTENT_DEFAULT_TTL_S,
        name: str = "redis",
    ) -> None:
        self._config = config or RedisConfig()
        self._clock = clock or SYSTEM_CLOCK
        self._name = name
        self._client = client
        self._owns_client = client is None
        self._default_ttl = default_ttl_seconds
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._errors = 0
        self._latency_ns_total = 0
        self._latency_samples = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    def _k(self, key: str) -> str:
        return f"{self._config.key_prefix}{key}"

    def _fail(self, operation: str, exc: BaseException) -> Err[CacheError]:
        self._errors += 1
        logger.warning(
            "Redis operation failed",
            extra={"backend": self._name, "operation": operation, "error": str(exc)},
        )
        return Err(CacheError.unavailable(self._name, operation, exc))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    async def connect(self) -> Result[None, CacheError]:
        """Create the connection pool (unless injected) and ping the server."""
        try:
            if self._client is None:
                self._client = aioredis.Redis(**self._config.get_connection_kwargs())
                self._owns_client = True
            await self._client.ping()
        except (RedisError, OSError) as e:
            if self._owns_client and self._client is not None:
                client, self._client = self._client, None
                await client.aclose()
            return self._fail("connect", e)
        logger.info(
            "Connected to Redis",
            extra={"host": self._config.host, "port": self._config.port, "db": self._config.db},
        )
        return Ok(None)

    async def close(self) -> None:
        """Close the pool if this backend created it. Safe to call multiple times."""
        client, self._client = self._client, None
        if client is not None and self._owns_client:
            await client.aclose()

    async def start(self) -> None:
        """Lifecycle hook: connect, leaving the backend unavailable on failure."""
        if self._client is None or not self._owns_client:
            await self.connect()

    async def stop(self) -> None:
        await self.close()

    def _require_client(self, operation: str) -> Result[Any, CacheError]:
        if self._client is None:
            return Err(CacheError.unavailable(self._name, operation))
        return Ok(self._client)

    async def _scan(self, client: Any) -> list[str]:
        found: list[str] = []
        async for raw in client.scan_iter(match=f"{self._config.key_prefix}*", count=C.REDIS_SCAN_COUNT):
            found.append(raw.decode("utf-8") if isinstance(raw, bytes) else raw)
        return found

    # -------------------------------------------------------------------------
    # Cache operations
    # -------------------------------------------------------------------------
    async def get(self, key: str) -> Result[Optional[CacheEntry[Any]], CacheError]:
        """
        HGETALL the entry and bump its access metadata.

        Complexity: O(1), two round trips on a hit.
        """
        req = self._require_client("get")
        if req.is_err():
            return req
        client = req.unwrap()

        start_ns = time.perf_counter_ns()
        redis_key = self._k(key)
        try:
            data: dict[str, str] = await client.hgetall(redis_key)
            if not data:
                self._misses += 1
                return Ok(None)

            now = self._clock.now()
            async with client.pipeline(transaction=True) as pipe:
                pipe.hincrby(redis_key, F_COUNT, 1)
                pipe.hset(redis_key, F_ACCESSED, str(now.millis))
                await pipe.execute()
        except (RedisError, OSError) as e:
            return self._fail("get", e)
        finally:
            self._latency_ns_total += time.perf_counter_ns() - start_ns
            self._latency_samples += 1

        try:
            entry = CacheEntry.from_record(key, {
                "value": json.loads(data[F_VALUE]),
                "createdAt": data[F_CREATED],
                "lastAccessed": data.get(F_ACCESSED, data[F_CREATED]),
                "accessCount": data.get(F_COUNT, 0),
                "expiresAt": data.get(F_EXPIRES) or None,
            })
        except (KeyError, TypeError, ValueError) as e:
            self._errors += 1
            return Err(CacheError.serialization(key, e))

        if entry.is_expired(now):
            self._misses += 1
            return Ok(None)
        entry.record_access(now)
        self._hits += 1
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
        Write the hash and its PEXPIRE in one transaction.

        Tags and metadata are not stored remotely.
        """
        if ttl_seconds is not None and not valid_duration(ttl_seconds):
            return Err(CacheError.invalid_input("ttl_seconds", "must be finite and > 0", ttl_seconds))
        try:
            encoded = json.dumps(value, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            return Err(CacheError.serialization(key, e))

        req = self._require_client("set")
        if req.is_err():
            return req
        client = req.unwrap()

        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        now = self._clock.now()
        expires_at = now.plus_seconds(ttl)
        redis_key = self._k(key)
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.hset(redis_key, mapping={
                    F_VALUE: encoded,
                    F_ACCESSED: str(now.millis),
                    F_EXPIRES: str(expires_at.millis),
                })
                pipe.hsetnx(redis_key, F_CREATED, str(now.millis))
                pipe.hsetnx(redis_key, F_COUNT, "0")
                pipe.pexpire(redis_key, max(1, int(ttl * 1000)))
                await pipe.execute()
        except (RedisError, OSError) as e:
            return self._fail("set", e)

        self._sets += 1
        return Ok(None)

    async def delete(self, key: str) -> Result[bool, CacheError]:
        req = self._require_client("delete")
        if req.is_err():
            return req
        try:
            removed = await req.unwrap().delete(self._k(key))
        except (RedisError, OSError) as e:
            return self._fail("delete", e)
        return Ok(removed > 0)

    async def has(self, key: str) -> Result[bool, CacheError]:
        req = self._require_client("has")
        if req.is_err():
            return req
        try:
            count = await req.unwrap().exists(self._k(key))
        except (RedisError, OSError) as e:
            return self._fail("has", e)
        return Ok(count > 0)

    async def keys(self, pattern: Optional[str] = None) -> Result[list[str], CacheError]:
        """SCAN the prefix namespace; the regex is applied client-side."""
        regex: Optional[re.Pattern[str]] = None
        if pattern is not None:
            try:
                regex = re.compile(pattern)
            except re.error as e:
                return Err(CacheError.invalid_pattern(pattern, e))

        req = self._require_client("keys")
        if req.is_err():
            return req
        try:
            raw_keys = await self._scan(req.unwrap())
        except (RedisError, OSError) as e:
            return self._fail("keys", e)

        prefix_len = len(self._config.key_prefix)
        keys = [k[prefix_len:] for k in raw_keys]
        if regex is not None:
            keys = [k for k in keys if regex.search(k)]
        return Ok(keys)

    async def _delete_many(self, operation: str, keys: list[str]) -> Result[int, CacheError]:
        req = self._require_client(operation)
        if req.is_err():
            return req
        client = req.unwrap()
        removed = 0
        try:
            for i in range(0, len(keys), DELETE_BATCH):
                batch = [self._k(k) for k in keys[i:i + DELETE_BATCH]]
                removed += await client.delete(*batch)
        except (RedisError, OSError) as e:
            return self._fail(operation, e)
        return Ok(removed)

    async def invalidate(self, pattern: str) -> Result[int, CacheError]:
        listed = await self.keys(pattern)
        if listed.is_err():
            return listed
        result = await self._delete_many("invalidate", listed.unwrap())
        if result.is_ok() and result.unwrap():
            logger.info(
                "Cache keys invalidated",
                extra={"cache": self._name, "pattern": pattern, "count": result.unwrap()},
            )
        return result

    async def clear(self) -> Result[int, CacheError]:
        """Delete every key under the prefix (other namespaces are untouched)."""
        listed = await self.keys()
        if listed.is_err():
            return listed
        return await self._delete_many("clear", listed.unwrap())

    async def size(self) -> Result[int, CacheError]:
        req = self._require_client("size")
        if req.is_err():
            return req
        try:
            return Ok(len(await self._scan(req.unwrap())))
        except (RedisError, OSError) as e:
            return self._fail("size", e)

    async def stats(self) -> CacheStats:
        """Local counters plus a SCAN-based entry count (0 if unreachable)."""
        size = await self.size()
        samples = self._latency_samples
        return CacheStats(
            entries=size.unwrap_or(0),
            hits=self._hits,
            misses=self._misses,
            sets=self._sets,
            avg_access_latency_ms=(self._latency_ns_total / samples / 1e6) if samples else 0.0,
        )

    @property
    def error_count(self) -> int:
        return self._errors

"""
Tiered Cache Orchestrator: Tier-1 + Tier-2 Behind One API

Read path:
    Tier-1 hit -> return
    Tier-1 miss -> Tier-2 hit -> promote into Tier-1 -> return
    miss in both -> Ok(None)

Write path:
    Tier-1 always; Tier-2 unless tier1_only. Tier-2 writes are either
    awaited (bounded by a timeout) or fire-and-forget tasks drained on
    stop(). A key has at most one pending write: a newer set() replaces
    it, delete() and clear() cancel it before touching Tier-2.

Degradation:
    Every Tier-2 call is bounded by asyncio.wait_for and passes through a
    circuit breaker. Tier-2 errors, timeouts and open-circuit rejections
    are logged and counted, and the call behaves as a Tier-2 miss, so a
    slow or dead Tier-2 never blocks Tier-1 callers.

Promotion TTL:
    min(default_ttl * promotion_ttl_ratio, Tier-2 entry's remaining TTL)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Iterable, Optional, TypeVar

from lexsession.cache.models import CacheStats
from lexsession.cache.protocols import CacheBackend
from lexsession.core.clock import Clock, SYSTEM_CLOCK
from lexsession.core.config import TieredCacheConfig
from lexsession.core.errors import CacheError, ErrorCode, LexSessionError
from lexsession.core.types import Result, Ok, Err
from lexsession.reliability.circuit_breaker import CircuitBreaker, CircuitState

logger = logging.getLogger(__name__)

V = TypeVar("V")


@dataclass(frozen=True, slots=True)
class WarmupReport:
    """Outcome of a warmup() run."""
    loaded: int
    skipped: int
    failed: int
    failed_keys: tuple[str, ...] = ()


@dataclass
class TieredCacheStats:
    """Both tiers' stats plus orchestrator-level counters."""
    tier1: CacheStats
    tier2: Optional[CacheStats]
    total_requests: int = 0
    tier1_hits: int = 0
    tier2_hits: int = 0
    misses: int = 0
    promotions: int = 0
    tier2_errors: int = 0
    circuit_state: Optional[CircuitState] = None
    pending_writes: int = 0

    @property
    def overall_hit_rate(self) -> float:
        """(tier1_hits + tier2_hits) / total_requests."""
        if self.total_requests == 0:
            return 0.0
        return (self.tier1_hits + self.tier2_hits) / self.total_requests

    @property
    def total_entries(self) -> int:
        return self.tier1.entries + (self.tier2.entries if self.tier2 else 0)

    @property
    def estimated_memory_bytes(self) -> int:
        return self.tier1.estimated_memory_bytes + (
            self.tier2.estimated_memory_bytes if self.tier2 else 0
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier1": self.tier1.to_dict(),
            "tier2": self.tier2.to_dict() if self.tier2 else None,
            "summary": {
                "total_requests": self.total_requests,
                "tier1_hits": self.tier1_hits,
                "tier2_hits": self.tier2_hits,
                "misses": self.misses,
                "overall_hit_rate": round(self.overall_hit_rate, 4),
                "promotions": self.promotions,
                "tier2_errors": self.tier2_errors,
                "circuit_state": self.circuit_state.name if self.circuit_state else None,
                "total_entries": self.total_entries,
                "estimated_memory_bytes": self.estimated_memory_bytes,
            },
        }


def format_bytes(num_bytes: int) -> str:
    """Human-readable byte size (1024-based)."""
    if num_bytes <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    i = min(int(math.log(num_bytes, 1024)), len(units) - 1)
    return f"{num_bytes / 1024 ** i:.2f} {units[i]}"


class TieredCacheOrchestrator(Generic[V]):
    """
    Two-tier cache with promotion-on-miss and failure-tolerant Tier-2.

    Usage:
        cache = TieredCacheOrchestrator(
            tier1=BoundedCache(CacheConfig(max_entries=100)),
            tier2=PersistentCache(PersistentCacheConfig(path=path)),
        )
        await cache.start()
        await cache.set("analysis:42", {"score": 0.9})
        value = (await cache.get("analysis:42")).unwrap()
        await cache.stop()
    """

    __slots__ = (
        "_tier1", "_tier2", "_config", "_clock", "_breaker",
        "_total_requests", "_tier1_hits", "_tier2_hits", "_misses",
        "_promotions", "_tier2_errors", "_pending",
    )

    def __init__(
        self,
        tier1: CacheBackend[V],
        tier2: Optional[CacheBackend[V]] = None,
        config: Optional[TieredCacheConfig] = None,
        clock: Optional[Clock] = None,
        breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self._tier1 = tier1
        self._tier2 = tier2
        self._config = config or TieredCacheConfig()
        self._clock = clock or SYSTEM_CLOCK
        self._breaker = breaker or CircuitBreaker(
            f"{tier2.name if tier2 is not None else 'tier2'}-circuit",
            failure_threshold=self._config.circuit_failure_threshold,
            reset_seconds=self._config.circuit_reset_seconds,
            clock=self._clock,
        )
        self._total_requests = 0
        self._tier1_hits = 0
        self._tier2_hits = 0
        self._misses = 0
        self._promotions = 0
        self._tier2_errors = 0
        self._pending: dict[str, asyncio.Task[bool]] = {}

    @property
    def tier1(self) -> CacheBackend[V]:
        return self._tier1

    @property
    def tier2(self) -> Optional[CacheBackend[V]]:
        return self._tier2

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    # -------------------------------------------------------------------------
    # Tier-2 guard
    # -------------------------------------------------------------------------
    async def _tier2_call(
        self,
        operation: str,
        call: Callable[[CacheBackend[V]], Awaitable[Any]],
    ) -> Result[Any, CacheError]:
        """
        Run a Tier-2 call under the timeout and the circuit breaker.

        A call that raises comes back as CacheError.internal, an
        open-circuit rejection as CacheError.unavailable.
        """
        tier2 = self._tier2
        if tier2 is None:
            return Err(CacheError.unavailable("tier2", operation))
        timeout = self._config.tier2_timeout_seconds

        async def guarded() -> Result[Any, CacheError]:
            try:
                return await asyncio.wait_for(call(tier2), timeout=timeout)
            except asyncio.TimeoutError:
                return Err(CacheError.timeout(tier2.name, operation, int(timeout * 1000)))

        result = await self._breaker.call(guarded)
        if result.is_ok():
            return result

        error: LexSessionError = result.error
        if error.code is ErrorCode.RELIABILITY_CALL_FAILED:
            error = CacheError.internal(f"{tier2.name}.{operation}", error.cause)
        elif not isinstance(error, CacheError):
            error = CacheError.unavailable(tier2.name, operation, error)
        self._tier2_errors += 1
        logger.warning(
            "Tier-2 operation failed, continuing with Tier-1",
            extra={
                "backend": tier2.name,
                "operation": operation,
                "error_code": error.code.name,
                "error": error.message,
            },
        )
        return Err(error)

    # -------------------------------------------------------------------------
    # Read / write
    # -------------------------------------------------------------------------
    async def get(self, key: str) -> Result[Optional[V], CacheError]:
        """Value for `key` from the fastest tier that has it, or Ok(None)."""
        self._total_requests += 1

        first = await self._tier1.get(key)
        if first.is_err():
            return first
        entry = first.unwrap()
        if entry is not None:
            self._tier1_hits += 1
            return Ok(entry.value)

        if self._tier2 is None:
            self._misses += 1
            return Ok(None)

        second = await self._tier2_call("get", lambda t: t.get(key))
        entry = second.unwrap_or(None)
        if entry is None:
            self._misses += 1
            return Ok(None)

        self._tier2_hits += 1
        await self._promote(key, entry.value, entry.remaining_seconds(self._clock.now()))
        return Ok(entry.value)

    async def _promote(self, key: str, value: V, remaining: Optional[float]) -> None:
        ttl = self._config.promotion_ttl_seconds
        if remaining is not None:
            ttl = min(ttl, remaining)
        if ttl <= 0:
            return
        result = await self._tier1.set(key, value, ttl_seconds=ttl)
        if result.is_ok():
            self._promotions += 1
            logger.debug("Promoted Tier-2 hit into Tier-1", extra={"key": key, "ttl_seconds": ttl})

    async def set(
        self,
        key: str,
        value: V,
        ttl_seconds: Optional[float] = None,
        tier1_only: bool = False,
    ) -> Result[None, CacheError]:
        """
        Write Tier-1, then Tier-2 unless `tier1_only`.

        Only a Tier-1 failure fails the call.
        """
        ttl = self._config.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        first = await self._tier1.set(key, value, ttl_seconds=ttl)
        if first.is_err():
            return first

        if tier1_only or self._tier2 is None:
            return Ok(None)

        if self._config.tier2_fire_and_forget:
            # At most one pending write per key; the newest value wins.
            previous = self._pending.get(key)
            if previous is not None:
                previous.cancel()
            task = asyncio.create_task(self._write_tier2(key, value, ttl, after=previous))
            self._pending[key] = task
            task.add_done_callback(lambda done, k=key: self._forget(k, done))
        else:
            await self._write_tier2(key, value, ttl)
        return Ok(None)

    async def _write_tier2(
        self,
        key: str,
        value: V,
        ttl: float,
        after: Optional[asyncio.Task[bool]] = None,
    ) -> bool:
        if after is not None:
            await asyncio.gather(after, return_exceptions=True)
        result = await self._tier2_call("set", lambda t: t.set(key, value, ttl_seconds=ttl))
        return result.is_ok()

    def _forget(self, key: str, task: asyncio.Task[bool]) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]

    async def _cancel_pending(self, keys: Iterable[str]) -> None:
        """Cancel queued Tier-2 writes and wait until they have unwound."""
        tasks = [t for t in (self._pending.pop(k, None) for k in list(keys)) if t is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def delete(self, key: str) -> Result[bool, CacheError]:
        """Remove from both tiers. Tier-2 failures are logged, not returned."""
        await self._cancel_pending([key])
        first = await self._tier1.delete(key)
        if first.is_err():
            return first
        removed = first.unwrap()
        if self._tier2 is not None:
            second = await self._tier2_call("delete", lambda t: t.delete(key))
            removed = removed or bool(second.unwrap_or(False))
        return Ok(removed)

    async def clear(self) -> Result[int, CacheError]:
        """Empty both tiers. Returns the number of Tier-1 entries dropped."""
        await self._cancel_pending(self._pending)
        first = await self._tier1.clear()
        if first.is_err():
            return first
        if self._tier2 is not None:
            await self._tier2_call("clear", lambda t: t.clear())
        return first

    async def _contains(self, key: str) -> bool:
        first = await self._tier1.has(key)
        if first.unwrap_or(False):
            return True
        if self._tier2 is None:
            return False
        second = await self._tier2_call("has", lambda t: t.has(key))
        return bool(second.unwrap_or(False))

    # -------------------------------------------------------------------------
    # Warmup
    # -------------------------------------------------------------------------
    async def warmup(
        self,
        keys: Iterable[str],
        loader: Callable[[str], Awaitable[Optional[V]] | Optional[V]],
        concurrency: Optional[int] = None,
    ) -> WarmupReport:
        """
        Load and store every key not already cached.

        At most `concurrency` loaders run at once. A loader that raises is
        logged and counted; a loader returning None is skipped.
        """
        limit = concurrency or self._config.warmup_concurrency
        if limit < 1:
            raise ValueError(f"concurrency must be >= 1, got {limit}")
        semaphore = asyncio.Semaphore(limit)
        unique_keys = list(dict.fromkeys(keys))

        async def warm(key: str) -> tuple[str, str]:
            async with semaphore:
                if await self._contains(key):
                    return key, "skipped"
                try:
                    value = loader(key)
                    if inspect.isawaitable(value):
                        value = await value
                except Exception:
                    logger.exception("Cache warmup loader failed", extra={"key": key})
                    return key, "failed"
                if value is None:
                    return key, "skipped"
                result = await self.set(key, value)
                if result.is_err():
                    logger.error(
                        "Cache warmup write failed",
                        extra={"key": key, "error": result.error.message},
                    )
                    return key, "failed"
                return key, "loaded"

        outcomes = await asyncio.gather(*(warm(k) for k in unique_keys))
        failed_keys = tuple(k for k, status in outcomes if status == "failed")
        report = WarmupReport(
            loaded=sum(1 for _, s in outcomes if s == "loaded"),
            skipped=sum(1 for _, s in outcomes if s == "skipped"),
            failed=len(failed_keys),
            failed_keys=failed_keys,
        )
        logger.info(
            "Cache warmup complete",
            extra={"loaded": report.loaded, "skipped": report.skipped, "failed": report.failed},
        )
        return report

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------
    async def stats(self) -> TieredCacheStats:
        """Snapshot of both tiers. `tier2` is None when Tier-2 cannot report."""
        tier1_stats = await self._tier1.stats()
        tier2_stats = None
        if self._tier2 is not None:
            second = await self._tier2_call("stats", lambda t: t.stats())
            tier2_stats = second.unwrap_or(None)
        return TieredCacheStats(
            tier1=tier1_stats,
            tier2=tier2_stats,
            total_requests=self._total_requests,
            tier1_hits=self._tier1_hits,
            tier2_hits=self._tier2_hits,
            misses=self._misses,
            promotions=self._promotions,
            tier2_errors=self._tier2_errors,
            circuit_state=self._breaker.state if self._tier2 is not None else None,
            pending_writes=len(self._pending),
        )

    async def report(self) -> str:
        """Human-readable performance summary."""
        s = await self.stats()
        rule = "-" * 50
        lines = [
            "Tiered cache performance report",
            rule,
            "Summary",
            f"  Requests:          {s.total_requests}",
            f"  Hits (T1 / T2):    {s.tier1_hits} / {s.tier2_hits}",
            f"  Overall hit rate:  {s.overall_hit_rate * 100:.1f}%",
            f"  Promotions:        {s.promotions}",
            f"  Memory estimate:   {format_bytes(s.estimated_memory_bytes)}",
            f"  Entries:           {s.total_entries}",
            "",
            f"Tier-1 ({self._tier1.name})",
            f"  Entries:           {s.tier1.entries}",
            f"  Hit rate:          {s.tier1.hit_rate * 100:.1f}%",
            f"  Avg access:        {s.tier1.avg_access_latency_ms:.3f}ms",
            f"  Evictions:         {s.tier1.evictions}",
        ]
        if self._tier2 is not None:
            lines += ["", f"Tier-2 ({self._tier2.name})"]
            if s.tier2 is None:
                lines.append("  Status:            unavailable")
            else:
                lines += [
                    f"  Entries:           {s.tier2.entries}",
                    f"  Hit rate:          {s.tier2.hit_rate * 100:.1f}%",
                ]
            lines += [
                f"  Errors:            {s.tier2_errors}",
                f"  Circuit:           {s.circuit_state.name if s.circuit_state else 'n/a'}",
            ]
        lines.append(rule)
        return "\n".join(lines)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    @staticmethod
    async def _invoke(backend: Any, method: str) -> None:
        fn = getattr(backend, method, None)
        if fn is None:
            return
        outcome = fn()
        if inspect.isawaitable(outcome):
            await outcome

    async def start(self) -> None:
        """Start both tiers' background work (sweeps, snapshot load)."""
        await self._invoke(self._tier1, "start")
        if self._tier2 is not None:
            await self._invoke(self._tier2, "start")

    async def stop(self) -> None:
        """Drain pending Tier-2 writes, then stop both tiers. Idempotent."""
        if self._pending:
            await asyncio.gather(*list(self._pending.values()), return_exceptions=True)
        await self._invoke(self._tier1, "stop")
        if self._tier2 is not None:
            await self._invoke(self._tier2, "stop")

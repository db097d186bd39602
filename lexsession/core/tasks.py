"""
Periodic background work.

A PeriodicTask runs an async callback every `interval_seconds` until
stopped. The loop waits on a stop Event rather than sleeping, so `stop()`
returns promptly instead of waiting out the interval.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Background asyncio loop driving a maintenance callback.

    Usage:
        reaper = PeriodicTask("session-reaper", 300, registry.cleanup_expired)
        reaper.start()
        ...
        await reaper.stop()
    """

    __slots__ = ("_name", "_interval", "_callback", "_task", "_stop_event", "_runs")

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[object]],
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0, got {interval_seconds}")
        self._name = name
        self._interval = interval_seconds
        self._callback = callback
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._runs = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def runs(self) -> int:
        """Number of completed callback invocations."""
        return self._runs

    def start(self) -> None:
        """Start the loop. Calling start on a running task does nothing."""
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(self._stop_event), name=self._name)
        logger.debug("Periodic task started", extra={"task": self._name})

    async def stop(self) -> None:
        """Signal the loop to exit and wait for it. Idempotent."""
        if self._task is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        task = self._task
        self._task = None
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Periodic task stopped", extra={"task": self._name})

    async def _loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self._callback()
                self._runs += 1
            except Exception:
                logger.exception(
                    "Periodic task callback failed",
                    extra={"task": self._name},
                )

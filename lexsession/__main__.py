#!/usr/bin/env python3
"""
Classroom Session Registry and Tiered Cache

Entry point demonstrating system initialization and basic operations.

Usage:
    python -m lexsession

    # Or with custom config
    LEXSESSION_MAX_SESSIONS=50 LEXSESSION_LOG_JSON=false python -m lexsession
"""

from __future__ import annotations

import asyncio
import sys
import tempfile
from dataclasses import replace
from pathlib import Path

from lexsession.cache.bounded import BoundedCache
from lexsession.cache.persistent import PersistentCache
from lexsession.cache.tiered import TieredCacheOrchestrator
from lexsession.core.config import LexSessionConfig
from lexsession.observability.logging import StructuredLogger, session_scope, setup_logging
from lexsession.session.models import JoinOptions, SessionOptions, SessionStatus
from lexsession.session.registry import SessionRegistry


async def demo_local_mode(data_dir: Path) -> None:
    """Run a short classroom + cache walkthrough against local storage only."""
    print("\n" + "=" * 60)
    print("Classroom Session Core - Local Demo")
    print("=" * 60 + "\n")

    config_result = LexSessionConfig.from_env()
    if config_result.is_err():
        print(f"Configuration error: {config_result.error}")
        sys.exit(1)
    config = config_result.unwrap()

    validation = config.validate()
    if validation.is_err():
        print(f"Validation error: {validation.error}")
        sys.exit(1)

    setup_logging(config.observability)
    print("* Configuration loaded and validated")
    log = StructuredLogger("lexsession.demo")

    # --- Sessions -----------------------------------------------------------
    registry = SessionRegistry(config.session)
    registry.start()

    created = await registry.create(SessionOptions(owner_id="instructor-1", name="Contracts 101"))
    if created.is_err():
        print(f"Create failed: {created.error}")
        sys.exit(1)
    session = created.unwrap()
    print(f"1. Created session {session.code} (status={session.status.value})")

    with session_scope(session_code=session.code):
        for i in range(5):
            await registry.join(session.code, f"student-{i}", JoinOptions(display_name=f"Student {i}"))
        log.info("Participants joined", count=5, status=session.status.value)
    print(
        f"2. Joined 5 participants: total={session.statistics.total_participants} "
        f"active={session.statistics.active_participants} status={session.status.value}"
    )

    await registry.set_question(session.code, "Is an offer revocable before acceptance?")
    await registry.update_status(session.code, SessionStatus.ENDED)
    print(f"3. Ended session: online={session.online_count} status={session.status.value}")

    stats = await registry.stats()
    print(f"4. Registry stats: {stats.to_dict()}")

    # --- Cache --------------------------------------------------------------
    persistent_config = replace(config.persistent, path=data_dir / "cache.json.lz4")
    cache: TieredCacheOrchestrator[dict] = TieredCacheOrchestrator(
        tier1=BoundedCache(config.cache),
        tier2=PersistentCache(persistent_config),
        config=config.tiered,
    )
    await cache.start()

    await cache.set("analysis:contract-1", {"issue": "offer", "score": 0.92})
    await cache.tier1.delete("analysis:contract-1")
    promoted = await cache.get("analysis:contract-1")
    print(f"\n5. Tier-2 hit promoted into Tier-1: {promoted.unwrap()}")

    async def load(key: str) -> dict:
        return {"key": key, "warmed": True}

    report = await cache.warmup([f"analysis:case-{i}" for i in range(3)], load)
    print(f"6. Warmup: loaded={report.loaded} skipped={report.skipped} failed={report.failed}")

    print("\n" + await cache.report())

    await cache.stop()
    await registry.stop()

    print("\n* Demo complete")
    print("=" * 60 + "\n")


async def main() -> None:
    """Main entry point."""
    with tempfile.TemporaryDirectory(prefix="lexsession-") as tmp:
        try:
            await demo_local_mode(Path(tmp))
        except KeyboardInterrupt:
            print("\nInterrupted")


def run() -> None:
    """Synchronous entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()

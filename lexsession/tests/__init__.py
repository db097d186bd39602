"""
Tests Module: Unit and Integration Tests

Test Coverage:
    - Join-code allocation and the session registry lifecycle
    - Bounded LRU cache (TTL, capacity, recency, similarity)
    - Persistent and Redis Tier-2 backends
    - Tiered orchestrator (promotion, degradation, warmup)
    - Circuit breaker, configuration, periodic tasks, logging
    - Result types, timestamps and the error taxonomy

Async code is driven with asyncio.run(); time is controlled with
ManualClock rather than sleeping.
"""

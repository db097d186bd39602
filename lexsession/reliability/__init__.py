"""
Reliability module: circuit breaking for the secondary cache tier.
"""

from lexsession.reliability.circuit_breaker import CircuitBreaker, CircuitState, CircuitStats

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "CircuitStats",
]

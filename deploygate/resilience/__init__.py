"""
Resilience Module - Fault tolerance patterns for external services
"""

from deploygate.resilience.circuit_breaker import CircuitBreaker, CircuitState

__all__ = [
    "CircuitBreaker",
    "CircuitState",
]

"""
Risk package.

Failure escalation for bots.
"""

from gridworker.risk.circuit_breaker import CircuitBreaker, CircuitBreakerConfig

__all__ = ["CircuitBreaker", "CircuitBreakerConfig"]

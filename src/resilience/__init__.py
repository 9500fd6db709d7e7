"""Retry and circuit breaking for outbound calls."""

from .breaker import CircuitBreaker, CircuitState
from .retry import RetryHandler

__all__ = ["CircuitBreaker", "CircuitState", "RetryHandler"]

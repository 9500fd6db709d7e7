"""Process-lifetime owner of per-integration resilience state."""

import asyncio
import random
import time
from typing import Any, Optional

import structlog

from core.config import EngineConfig
from resilience.breaker import CircuitBreaker
from resilience.retry import RetryHandler
from safety.abuse import AbuseDetector
from safety.ratelimit import RateLimiter

logger = structlog.get_logger()


class IntegrationRegistry:
    """
    Holds the circuit breakers, token buckets and abuse detector shared by
    every run of one engine.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        clock=time.monotonic,
        sleep=asyncio.sleep,
        rng=random.random,
    ):
        self.config = config or EngineConfig()
        self._clock = clock
        self.rate_limiter = RateLimiter(self.config.rate_limit, clock=clock, sleep=sleep)
        self.abuse_detector = AbuseDetector(self.config.abuse, clock=clock)
        self.retry_handler = RetryHandler(self.config.retry, sleep=sleep, rng=rng)
        self._breakers: dict[str, CircuitBreaker] = {}

    def breaker_for(self, integration: str) -> CircuitBreaker:
        """Breaker for an integration, created on first use."""
        key = integration.lower()
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(key, self.config.circuit_breaker, clock=self._clock)
            self._breakers[key] = breaker
            logger.debug("circuit_breaker_created", integration=key)
        return breaker

    async def reset_breaker(self, integration: str) -> bool:
        breaker = self._breakers.get(integration.lower())
        if breaker is None:
            return False
        await breaker.reset()
        return True

    def snapshot(self) -> dict[str, Any]:
        return {
            "circuit_breakers": {name: b.snapshot() for name, b in self._breakers.items()},
            "rate_limits": self.rate_limiter.get_stats(),
            "abuse": self.abuse_detector.get_stats(),
        }

"""Per-integration token bucket admission control."""

import asyncio
import time
from typing import Awaitable, Callable, Optional
from dataclasses import dataclass

import structlog

from core.config import BucketLimit, RateLimitConfig
from core.errors import RateLimitError

logger = structlog.get_logger()


Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


class TokenBucket:
    """
    Continuous-refill token bucket.

    Holds at most ``capacity`` tokens and refills at
    ``capacity / window_seconds`` tokens per second. Tokens are fractional.
    """

    def __init__(self, capacity: int, window_seconds: float, clock: Clock = time.monotonic):
        self.capacity = capacity
        self.window_seconds = window_seconds
        self.refill_rate = capacity / window_seconds
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    @property
    def tokens(self) -> float:
        self._refill()
        return self._tokens

    def try_consume(self, tokens: float = 1.0) -> bool:
        """Take tokens if available."""
        self._refill()
        if self._tokens >= tokens:
            self._tokens -= tokens
            return True
        return False

    def time_until_available(self, tokens: float = 1.0) -> float:
        """Seconds until the requested tokens would be available."""
        self._refill()
        deficit = tokens - self._tokens
        if deficit <= 0:
            return 0.0
        return deficit / self.refill_rate


@dataclass
class BucketStats:
    """Admission counters for one integration."""
    allowed: int = 0
    denied: int = 0
    waited_seconds: float = 0.0


class RateLimiter:
    """
    Token buckets keyed by integration name.

    Buckets are created on first use from the configured platform limit, or
    the default limit for unconfigured integrations. Every integration gets
    its own bucket.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._sleep = sleep
        self._buckets: dict[str, TokenBucket] = {}
        self._stats: dict[str, BucketStats] = {}

    def limit_for(self, integration: str) -> BucketLimit:
        """Configured limit for an integration."""
        return self.config.platform_limits.get(integration.lower(), self.config.default_limit)

    def get_bucket(self, integration: str) -> TokenBucket:
        key = integration.lower()
        bucket = self._buckets.get(key)
        if bucket is None:
            limit = self.limit_for(key)
            bucket = TokenBucket(limit.capacity, limit.window_seconds, clock=self._clock)
            self._buckets[key] = bucket
            self._stats[key] = BucketStats()
        return bucket

    def check_rate_limit(self, integration: str) -> bool:
        """Consume one token for the integration, or deny."""
        bucket = self.get_bucket(integration)
        stats = self._stats[integration.lower()]
        if bucket.try_consume():
            stats.allowed += 1
            return True

        stats.denied += 1
        logger.debug(
            "rate_limit_denied",
            integration=integration,
            retry_after=round(bucket.time_until_available(), 3),
        )
        return False

    async def wait_for_rate_limit(self, integration: str) -> float:
        """
        Wait until a token is available and consume it.

        Returns the seconds spent waiting. Raises RateLimitError when the wait
        would exceed ``max_wait_seconds``.
        """
        bucket = self.get_bucket(integration)
        stats = self._stats[integration.lower()]
        max_wait = self.config.max_wait_seconds
        waited = 0.0

        while not bucket.try_consume():
            delay = bucket.time_until_available()
            if max_wait is not None and waited + delay > max_wait:
                stats.denied += 1
                raise RateLimitError(
                    f"Rate limit for {integration} not available within {max_wait}s",
                    retry_after=delay,
                    context={"integration": integration},
                )

            logger.info(
                "rate_limit_wait",
                integration=integration,
                delay_seconds=round(delay, 3),
            )
            await self._sleep(delay)
            waited += delay

        stats.allowed += 1
        stats.waited_seconds += waited
        return waited

    def get_stats(self) -> dict:
        """Get per-integration bucket statistics."""
        return {
            name: {
                "capacity": self._buckets[name].capacity,
                "window_seconds": self._buckets[name].window_seconds,
                "tokens": round(self._buckets[name].tokens, 3),
                "allowed": stats.allowed,
                "denied": stats.denied,
                "waited_seconds": round(stats.waited_seconds, 3),
            }
            for name, stats in self._stats.items()
        }

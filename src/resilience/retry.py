"""Bounded exponential-backoff retry."""

import asyncio
import random
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from core.config import RetryConfig
from core.errors import EngineError, RetryExhaustedError

from .breaker import CircuitBreaker

logger = structlog.get_logger()

T = TypeVar("T")


class RetryHandler:
    """
    Runs an operation up to ``max_attempts`` times.

    Errors marked non-retryable (including CircuitOpenError) propagate
    unchanged on the first occurrence. When a breaker is given, every
    attempt goes through it.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.config = config or RetryConfig()
        self._sleep = sleep
        self._rng = rng

    def calculate_delay(self, attempt: int) -> float:
        """Delay after failed attempt ``attempt`` (1-based)."""
        delay = self.config.base_delay_seconds * (self.config.backoff_multiplier ** (attempt - 1))
        delay = min(delay, self.config.max_delay_seconds)

        if self.config.jitter:
            # Scale into [0.5, 1.0] of the computed delay
            delay *= 0.5 + 0.5 * self._rng()

        return delay

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str,
        breaker: Optional[CircuitBreaker] = None,
    ) -> T:
        max_attempts = self.config.max_attempts
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            try:
                if breaker is not None:
                    return await breaker.call(operation)
                return await operation()

            except EngineError as e:
                if not e.retryable:
                    raise
                last_error = e

            except Exception as e:
                last_error = e

            logger.warning(
                "operation_attempt_failed",
                operation=name,
                attempt=attempt,
                max_attempts=max_attempts,
                error=str(last_error),
            )

            if attempt < max_attempts:
                delay = self.calculate_delay(attempt)
                logger.info("retry_scheduled", operation=name, attempt=attempt, delay_seconds=round(delay, 3))
                await self._sleep(delay)

        raise RetryExhaustedError(name, max_attempts, last_error) from last_error

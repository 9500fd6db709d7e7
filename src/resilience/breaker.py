"""Three-state circuit breaker for integration calls."""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar
from enum import Enum

import structlog

from core.config import CircuitBreakerConfig
from core.errors import CircuitOpenError

logger = structlog.get_logger()

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """
    Circuit breaker for one integration.

    Opens after ``failure_threshold`` consecutive failures and rejects calls
    with CircuitOpenError until ``reset_timeout_seconds`` has passed. Then a
    single trial call is let through: success closes the circuit, failure
    reopens it.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        config = config or CircuitBreakerConfig()
        self.failure_threshold = config.failure_threshold
        self.reset_timeout = config.reset_timeout_seconds
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._trial_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run operation through the breaker."""
        await self._acquire()
        try:
            result = await operation()
        except asyncio.CancelledError:
            async with self._lock:
                self._trial_in_flight = False
            raise
        except Exception:
            await self.record_failure()
            raise

        await self.record_success()
        return result

    async def _acquire(self) -> None:
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return

            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - (self._last_failure_time or 0.0)
                if elapsed < self.reset_timeout:
                    raise CircuitOpenError(self.name, retry_after=self.reset_timeout - elapsed)
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
                logger.info("circuit_breaker_half_open", integration=self.name, reason="timeout_expired")

            # HALF_OPEN - one trial call at a time
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, retry_after=0.0)
            self._trial_in_flight = True

    async def record_success(self) -> None:
        """Record a successful call."""
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info("circuit_breaker_closed", integration=self.name, reason="recovery_confirmed")
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._trial_in_flight = False

    async def record_failure(self) -> None:
        """Record a failed call."""
        async with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                # Failed during recovery test, reopen
                self._state = CircuitState.OPEN
                self._trial_in_flight = False
                logger.warning("circuit_breaker_reopened", integration=self.name, reason="recovery_failed")

            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                logger.warning(
                    "circuit_breaker_opened",
                    integration=self.name,
                    failure_count=self._failure_count,
                    threshold=self.failure_threshold,
                )

    async def reset(self) -> None:
        """Manually reset the circuit breaker."""
        async with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None
            self._trial_in_flight = False
            logger.info("circuit_breaker_reset", integration=self.name, reason="manual")

    def snapshot(self) -> dict[str, Any]:
        """Current breaker state for status reporting."""
        return {
            "state": self._state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "last_failure_time": self._last_failure_time,
        }

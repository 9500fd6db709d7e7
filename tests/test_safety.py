"""Tests for rate limiting and abuse detection."""

import pytest
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from core.config import AbuseConfig, BucketLimit, RateLimitConfig
from core.errors import RateLimitError
from safety.ratelimit import RateLimiter, TokenBucket
from safety.abuse import AbuseDetector, AbuseSeverity


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Records sleeps and advances the fake clock instead of waiting."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)


class TestTokenBucket:
    """Test continuous-refill token bucket."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    def test_capacity_then_deny(self, clock):
        """N calls within the window succeed, the N+1th is denied."""
        bucket = TokenBucket(5, 10, clock=clock)

        for _ in range(5):
            assert bucket.try_consume()
        assert not bucket.try_consume()

    def test_refill_after_window(self, clock):
        """A full window restores full capacity."""
        bucket = TokenBucket(5, 10, clock=clock)
        for _ in range(5):
            bucket.try_consume()

        clock.advance(10)
        assert bucket.tokens == pytest.approx(5)

    def test_partial_refill(self, clock):
        """Tokens refill continuously and never exceed capacity."""
        bucket = TokenBucket(10, 10, clock=clock)
        for _ in range(10):
            bucket.try_consume()

        clock.advance(2.5)
        assert bucket.tokens == pytest.approx(2.5)

        clock.advance(100)
        assert bucket.tokens == pytest.approx(10)

    def test_time_until_available(self, clock):
        bucket = TokenBucket(2, 10, clock=clock)
        bucket.try_consume()
        bucket.try_consume()

        assert bucket.time_until_available() == pytest.approx(5)
        clock.advance(5)
        assert bucket.time_until_available() == 0.0


class TestRateLimiter:
    """Test per-integration admission control."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def config(self):
        return RateLimitConfig(
            default_limit=BucketLimit(capacity=2, window_seconds=10),
            platform_limits={"slack": BucketLimit(capacity=3, window_seconds=60)},
        )

    def test_platform_and_default_limits(self, config, clock):
        limiter = RateLimiter(config, clock=clock)

        assert limiter.limit_for("Slack").capacity == 3
        assert limiter.limit_for("unknown").capacity == 2

    def test_buckets_are_per_integration(self, config, clock):
        """Unconfigured integrations each get their own bucket."""
        limiter = RateLimiter(config, clock=clock)

        assert limiter.check_rate_limit("alpha")
        assert limiter.check_rate_limit("alpha")
        assert not limiter.check_rate_limit("alpha")
        assert limiter.check_rate_limit("beta")

    def test_names_are_case_insensitive(self, config, clock):
        limiter = RateLimiter(config, clock=clock)
        assert limiter.get_bucket("Slack") is limiter.get_bucket("slack")

    @pytest.mark.asyncio
    async def test_wait_for_rate_limit(self, config, clock):
        """An exhausted bucket waits for the refill instead of failing."""
        sleep = FakeSleep(clock)
        limiter = RateLimiter(config, clock=clock, sleep=sleep)

        assert await limiter.wait_for_rate_limit("alpha") == 0.0
        assert await limiter.wait_for_rate_limit("alpha") == 0.0

        waited = await limiter.wait_for_rate_limit("alpha")
        assert waited == pytest.approx(5)
        assert sleep.calls == [pytest.approx(5)]

        stats = limiter.get_stats()["alpha"]
        assert stats["allowed"] == 3
        assert stats["waited_seconds"] == pytest.approx(5)

    @pytest.mark.asyncio
    async def test_max_wait_exceeded(self, clock):
        """A wait longer than max_wait_seconds raises RateLimitError."""
        config = RateLimitConfig(
            default_limit=BucketLimit(capacity=1, window_seconds=60),
            max_wait_seconds=5,
        )
        sleep = FakeSleep(clock)
        limiter = RateLimiter(config, clock=clock, sleep=sleep)

        await limiter.wait_for_rate_limit("alpha")
        with pytest.raises(RateLimitError) as exc_info:
            await limiter.wait_for_rate_limit("alpha")

        assert exc_info.value.retryable
        assert exc_info.value.context["retry_after"] == pytest.approx(60)
        assert sleep.calls == []


class TestAbuseDetector:
    """Test sliding-window abuse classification."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def detector(self, clock):
        config = AbuseConfig(
            window_seconds=60,
            low_threshold=2,
            medium_threshold=4,
            high_threshold=6,
            critical_threshold=8,
        )
        return AbuseDetector(config, clock=clock)

    def test_classification(self, detector):
        """Thresholds are exclusive: only counts above them escalate."""
        assert detector.classify(2) is AbuseSeverity.NONE
        assert detector.classify(3) is AbuseSeverity.LOW
        assert detector.classify(5) is AbuseSeverity.MEDIUM
        assert detector.classify(7) is AbuseSeverity.HIGH
        assert detector.classify(9) is AbuseSeverity.CRITICAL

    def test_escalates_with_volume(self, detector):
        reports = [detector.record("user-1", "slack.send_message") for _ in range(9)]

        assert reports[0].severity is AbuseSeverity.NONE
        assert reports[-1].count == 9
        assert reports[-1].severity is AbuseSeverity.CRITICAL

    def test_window_slides(self, detector, clock):
        """Old events fall out of the window."""
        for _ in range(5):
            detector.record("user-1", "slack.send_message")
        assert detector.current_count("user-1", "slack.send_message") == 5

        clock.advance(61)
        report = detector.record("user-1", "slack.send_message")
        assert report.count == 1
        assert report.severity is AbuseSeverity.NONE

    def test_tracked_per_user_and_action(self, detector):
        for _ in range(3):
            detector.record("user-1", "slack.send_message")
        detector.record("user-2", "slack.send_message")
        detector.record("user-1", "gmail.send_email")

        stats = detector.get_stats()
        assert stats["user-1:slack.send_message"] == {"count": 3, "severity": "low"}
        assert stats["user-2:slack.send_message"]["count"] == 1
        assert stats["user-1:gmail.send_email"]["severity"] == "none"

    def test_severity_ordering(self):
        assert AbuseSeverity.LOW < AbuseSeverity.HIGH
        assert max(AbuseSeverity.MEDIUM, AbuseSeverity.CRITICAL) is AbuseSeverity.CRITICAL


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

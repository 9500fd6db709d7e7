"""Sliding-window abuse pattern detection."""

import time
from collections import deque
from typing import Optional
from dataclasses import dataclass
from enum import Enum

import structlog

from core.config import AbuseConfig

logger = structlog.get_logger()


class AbuseSeverity(Enum):
    """Abuse classification, ordered."""
    NONE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    def __lt__(self, other):
        if not isinstance(other, AbuseSeverity):
            return NotImplemented
        return self.value < other.value


@dataclass
class AbuseReport:
    """Result of recording one action."""
    user_id: str
    action: str
    count: int
    severity: AbuseSeverity


class AbuseDetector:
    """
    Counts actions per (user, action) within a sliding window.

    Classification is advisory: it is logged and returned, never enforced.
    """

    def __init__(self, config: Optional[AbuseConfig] = None, clock=time.monotonic):
        self.config = config or AbuseConfig()
        self._clock = clock
        self._events: dict[tuple[str, str], deque[float]] = {}

    def classify(self, count: int) -> AbuseSeverity:
        """Map an action count to a severity."""
        if count > self.config.critical_threshold:
            return AbuseSeverity.CRITICAL
        if count > self.config.high_threshold:
            return AbuseSeverity.HIGH
        if count > self.config.medium_threshold:
            return AbuseSeverity.MEDIUM
        if count > self.config.low_threshold:
            return AbuseSeverity.LOW
        return AbuseSeverity.NONE

    def record(self, user_id: str, action: str) -> AbuseReport:
        """Record an action and classify the current window."""
        key = (user_id, action)
        now = self._clock()
        events = self._events.setdefault(key, deque())
        events.append(now)
        self._prune(events, now)

        count = len(events)
        severity = self.classify(count)
        if severity is not AbuseSeverity.NONE:
            log = logger.error if severity in (AbuseSeverity.HIGH, AbuseSeverity.CRITICAL) else logger.warning
            log(
                "abuse_pattern_detected",
                user_id=user_id,
                action=action,
                count=count,
                window_seconds=self.config.window_seconds,
                severity=severity.name.lower(),
            )

        return AbuseReport(user_id=user_id, action=action, count=count, severity=severity)

    def current_count(self, user_id: str, action: str) -> int:
        events = self._events.get((user_id, action))
        if not events:
            return 0
        self._prune(events, self._clock())
        return len(events)

    def _prune(self, events: deque, now: float) -> None:
        cutoff = now - self.config.window_seconds
        while events and events[0] <= cutoff:
            events.popleft()

    def get_stats(self) -> dict:
        """Active (user, action) pairs with their current severity."""
        now = self._clock()
        stats = {}
        for (user_id, action), events in self._events.items():
            self._prune(events, now)
            if events:
                stats[f"{user_id}:{action}"] = {
                    "count": len(events),
                    "severity": self.classify(len(events)).name.lower(),
                }
        return stats

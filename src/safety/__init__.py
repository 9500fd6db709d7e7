"""Safety module - rate limiting and abuse detection."""

from .ratelimit import TokenBucket, RateLimiter
from .abuse import AbuseDetector, AbuseSeverity

__all__ = ["TokenBucket", "RateLimiter", "AbuseDetector", "AbuseSeverity"]

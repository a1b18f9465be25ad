"""Admission checks: duplicate tracking and durable rate limiting."""

from .dedup import DeduplicationTracker
from .limiter import RateLimiter, RateLimitPolicy

__all__ = ["DeduplicationTracker", "RateLimitPolicy", "RateLimiter"]

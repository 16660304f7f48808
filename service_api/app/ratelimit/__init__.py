"""
Rate limiting package for the API service.

Fixed-window counters per ``(identity, tier)`` with stricter endpoint
overrides and a one-minute burst limiter.
"""

from .fixed_window import FixedWindowRateLimiter, RateLimitResult
from .tiers import ENDPOINT_LIMITS, TIERS, RateLimitRule, endpoint_rule, resolve_tier

__all__ = [
    "ENDPOINT_LIMITS",
    "FixedWindowRateLimiter",
    "RateLimitResult",
    "RateLimitRule",
    "TIERS",
    "endpoint_rule",
    "resolve_tier",
]

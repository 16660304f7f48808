"""
Rate-limit tiers and endpoint overrides.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

FIFTEEN_MINUTES = 15 * 60
ONE_HOUR = 60 * 60
BURST_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitRule:
    """``requests`` allowed per ``window_seconds``."""

    requests: int
    window_seconds: int
    burst: int = 0

    @property
    def window_minutes(self) -> int:
        return self.window_seconds // 60

    @property
    def window_ms(self) -> int:
        return self.window_seconds * 1000


TIERS: Dict[str, RateLimitRule] = {
    "free": RateLimitRule(requests=100, window_seconds=FIFTEEN_MINUTES, burst=10),
    "standard": RateLimitRule(requests=1000, window_seconds=FIFTEEN_MINUTES, burst=50),
    "premium": RateLimitRule(requests=5000, window_seconds=FIFTEEN_MINUTES, burst=100),
    "enterprise": RateLimitRule(requests=10000, window_seconds=FIFTEEN_MINUTES, burst=200),
}

TIER_LEVELS: Dict[str, int] = {"free": 0, "standard": 1, "premium": 2, "enterprise": 3}

DEFAULT_TIER = "standard"
ANONYMOUS_TIER = "free"

# Stricter limits for sensitive endpoints; these win over the tier limit
ENDPOINT_LIMITS: Dict[str, RateLimitRule] = {
    "/api/auth/login": RateLimitRule(requests=5, window_seconds=FIFTEEN_MINUTES),
    "/api/auth/register": RateLimitRule(requests=3, window_seconds=ONE_HOUR),
    "/api/auth/reset-password": RateLimitRule(requests=3, window_seconds=ONE_HOUR),
    "/api/admin/permissions": RateLimitRule(requests=100, window_seconds=FIFTEEN_MINUTES),
    "/api/admin/users": RateLimitRule(requests=200, window_seconds=FIFTEEN_MINUTES),
    "/api/event": RateLimitRule(requests=500, window_seconds=FIFTEEN_MINUTES),
    "/api/budget": RateLimitRule(requests=300, window_seconds=FIFTEEN_MINUTES),
    "/api/profile": RateLimitRule(requests=200, window_seconds=FIFTEEN_MINUTES),
}

ELEVATED_ROLES = ("admin", "super_admin")


def endpoint_rule(path: str) -> Tuple[Optional[str], Optional[RateLimitRule]]:
    """Most specific endpoint override for ``path``: exact, then longest prefix."""
    if path in ENDPOINT_LIMITS:
        return path, ENDPOINT_LIMITS[path]

    best: Optional[str] = None
    for prefix in ENDPOINT_LIMITS:
        if path.startswith(prefix + "/") and (best is None or len(prefix) > len(best)):
            best = prefix
    if best is None:
        return None, None
    return best, ENDPOINT_LIMITS[best]


def resolve_tier(
    api_key_tier: Optional[str] = None,
    is_user: bool = False,
    role: Optional[str] = None,
    organization: Optional[Dict[str, Any]] = None,
) -> str:
    """Tier of a caller: API key setting, then subscription or role, else free."""
    if api_key_tier is not None:
        return api_key_tier if api_key_tier in TIERS else DEFAULT_TIER

    if is_user:
        subscription = (organization or {}).get("subscription_status")
        if subscription in ("enterprise", "premium", "standard"):
            return subscription
        if role in ELEVATED_ROLES:
            return "premium"
        return DEFAULT_TIER

    return ANONYMOUS_TIER

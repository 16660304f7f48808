"""
Fixed-window rate limiter for the API service.
"""

import json
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from shared.errors import RateLimitError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.tasks import TaskSupervisor
from ..storage.base import KeyValueStore
from .tiers import BURST_WINDOW_SECONDS, TIERS, DEFAULT_TIER, RateLimitRule, endpoint_rule

KEY_PREFIX = "rl"
VIOLATIONS_KEY = "rate_limit_violations"


def _iso(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class RateLimitResult:
    """Outcome of one counter check."""

    allowed: bool
    identity_type: str
    identity: str
    tier: str
    limit: int
    count: int
    window_seconds: int
    reset_in_seconds: int
    reset_at: float
    endpoint: Optional[str] = None
    error: Optional[str] = None

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    @property
    def retry_after(self) -> int:
        return self.reset_in_seconds

    @property
    def reset_time(self) -> str:
        return _iso(self.reset_at)

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_in_seconds),
        }

    def to_error(self) -> RateLimitError:
        window_minutes = max(1, self.window_seconds // 60)
        return RateLimitError(
            message=(
                f"Too many requests from this {self.identity_type.replace('_', ' ')}. "
                f"Limit: {self.limit} requests per {window_minutes} minutes."
            ),
            details={
                "tier": self.tier,
                "limit": self.limit,
                "window_minutes": window_minutes,
                "retry_after": self.retry_after,
            },
            meta={
                "rate_limit": {
                    "tier": self.tier,
                    "limit": self.limit,
                    "window_ms": self.window_seconds * 1000,
                    "reset_time": self.reset_time,
                }
            },
            headers={**self.headers(), "Retry-After": str(self.retry_after)},
        )


class FixedWindowRateLimiter:
    """Counts requests per ``(identity, tier)`` in a shared store."""

    def __init__(
        self,
        store: KeyValueStore,
        tasks: TaskSupervisor,
        violation_log_size: int = 1000,
        skip_paths: Sequence[str] = (),
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.tasks = tasks
        self.violation_log_size = violation_log_size
        self.skip_paths = set(skip_paths)
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger("api.rate_limiter")

    def _make_key(self, identity_type: str, identity: str, tier: str, scope: Optional[str] = None) -> str:
        """Generate rate limit key."""
        key = f"{KEY_PREFIX}:{identity_type}:{identity}:{tier}"
        return f"{key}:{scope}" if scope else key

    def is_skipped(self, path: str) -> bool:
        return path in self.skip_paths

    def rule_for(self, tier: str, path: str, burst: bool = False):
        """Rule and key scope for a request: endpoint override, burst, or tier."""
        tier_rule = TIERS.get(tier, TIERS[DEFAULT_TIER])
        if burst:
            return RateLimitRule(requests=tier_rule.burst, window_seconds=BURST_WINDOW_SECONDS), None, "burst"

        endpoint, override = endpoint_rule(path)
        if override is not None:
            return override, endpoint, endpoint
        return tier_rule, None, None

    async def check(
        self,
        identity_type: str,
        identity: str,
        tier: str,
        path: str,
        method: str = "GET",
        burst: bool = False,
        client: Optional[Dict[str, Any]] = None,
    ) -> RateLimitResult:
        """Count one request and decide whether it is within the limit."""
        rule, endpoint, scope = self.rule_for(tier, path, burst)
        key = self._make_key(identity_type, identity, tier, scope)
        now = self.clock()

        try:
            count, remaining = await self.store.increment(key, rule.window_seconds)
        except Exception as e:
            self.logger.error("Rate limit check error", error=str(e), key=key)
            return RateLimitResult(
                allowed=True,
                identity_type=identity_type,
                identity=identity,
                tier=tier,
                limit=rule.requests,
                count=0,
                window_seconds=rule.window_seconds,
                reset_in_seconds=rule.window_seconds,
                reset_at=now + rule.window_seconds,
                endpoint=endpoint,
                error=str(e),
            )

        reset_in = max(1, math.ceil(remaining))
        result = RateLimitResult(
            allowed=count <= rule.requests,
            identity_type=identity_type,
            identity=identity,
            tier=tier,
            limit=rule.requests,
            count=count,
            window_seconds=rule.window_seconds,
            reset_in_seconds=reset_in,
            reset_at=now + reset_in,
            endpoint=endpoint,
        )

        if not result.allowed:
            self.logger.warning(
                "Rate limit exceeded",
                identity_type=identity_type,
                identity=identity,
                tier=tier,
                path=path,
                count=count,
                limit=rule.requests,
            )
            if self.metrics:
                self.metrics.increment_counter("rate_limit_rejections_total", tier=tier, endpoint=endpoint or "tier")
            self.tasks.spawn(
                self._record_violation(result, path, method, client or {}),
                name="rate_limit.violation",
            )
        return result

    async def _record_violation(self, result: RateLimitResult, path: str, method: str, client: Dict[str, Any]) -> None:
        record = {
            "identity": result.identity,
            "identity_type": result.identity_type,
            "tier": result.tier,
            "endpoint": path,
            "method": method,
            "limit": result.limit,
            "window_seconds": result.window_seconds,
            "user_agent": client.get("user_agent"),
            "ip": client.get("ip"),
            "timestamp": _iso(self.clock()),
        }
        await self.store.push_capped(VIOLATIONS_KEY, json.dumps(record), self.violation_log_size)

    async def status(self, identity_type: str, identity: str, tier: str) -> Dict[str, Any]:
        """Current tier counter of an identity."""
        rule = TIERS.get(tier, TIERS[DEFAULT_TIER])
        key = self._make_key(identity_type, identity, tier)
        current = int(await self.store.get(key) or 0)
        ttl = await self.store.ttl(key)
        return {
            "identity": identity,
            "identity_type": identity_type,
            "tier": tier,
            "limit": rule.requests,
            "window_ms": rule.window_ms,
            "current": current,
            "remaining": max(0, rule.requests - current),
            "reset_in_seconds": math.ceil(ttl) if ttl else rule.window_seconds,
        }

    async def violations(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent violation records, newest first."""
        raw = await self.store.list_range(VIOLATIONS_KEY, 0, max(0, limit - 1))
        return [json.loads(item) for item in raw]

    async def clear(self, identity_type: str, identity: str, tier: Optional[str] = None) -> int:
        """Drop every counter of an identity (optionally one tier)."""
        pattern = f"{self._make_key(identity_type, identity, tier or '*')}*"
        keys = await self.store.keys(pattern)
        removed = await self.store.delete(*keys) if keys else 0
        self.logger.info("Rate limit cleared", identity_type=identity_type, identity=identity, tier=tier, removed=removed)
        return removed

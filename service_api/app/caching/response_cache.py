"""
Permission-aware response cache.

Cache-aside over enveloped GET responses. Keys combine the API version,
route, organization, principal and role (or key tier) plus digests of the
query string and path parameters, so entries never cross organizations or
permission levels. Invalidation is explicit and coarse.
"""

import hashlib
import json
import re
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, Optional, Tuple

from shared.envelope import utc_timestamp
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.tasks import TaskSupervisor
from ..storage.base import KeyValueStore
from .ttl_config import DEFAULT_TTL, MAX_TTL, resolve_ttl

KEY_PREFIX = "api_cache"

_PARAM_SEGMENT = re.compile(r"\{([^}:]+)(?::[^}]*)?\}")


class CachedResponse(Exception):
    """Short-circuits a request with a stored envelope."""

    def __init__(self, envelope: Dict[str, Any], headers: Optional[Dict[str, str]] = None):
        super().__init__("cached response")
        self.envelope = envelope
        self.headers = headers or {}


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    invalidations: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return round(self.hits / total * 100, 2) if total else 0.0


def _digest(items: Iterable[Tuple[str, Any]]) -> str:
    canonical = "&".join(f"{key}={value}" for key, value in sorted(items))
    return hashlib.md5(canonical.encode("utf-8")).hexdigest()


def normalize_endpoint(route_path: str) -> str:
    """``/api/profile/{user_id}`` -> ``/api/profile/_user_id``."""
    return _PARAM_SEGMENT.sub(r"_\1", route_path)


class ResponseCache:
    """Stores and replays enveloped responses."""

    def __init__(
        self,
        store: KeyValueStore,
        tasks: TaskSupervisor,
        version: str = "v1",
        enabled: bool = True,
        default_ttl: int = DEFAULT_TTL,
        max_ttl: int = MAX_TTL,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.tasks = tasks
        self.version = version
        self.enabled = enabled
        self.default_ttl = default_ttl
        self.max_ttl = max_ttl
        self.metrics = metrics
        self.logger = get_logger("api.response_cache")
        self._stats = CacheStats()

    def _count(self, metric: str) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric, backend=self.store.kind)

    def ttl_for(self, path: str, override: Optional[int] = None) -> int:
        return resolve_ttl(path, override, default_ttl=self.default_ttl, max_ttl=self.max_ttl)

    def build_key(
        self,
        route_path: str,
        org_id: Optional[str],
        principal_id: Optional[str],
        role_or_tier: Optional[str],
        query: Iterable[Tuple[str, Any]] = (),
        path_params: Optional[Dict[str, Any]] = None,
    ) -> str:
        parts = [
            KEY_PREFIX,
            self.version,
            normalize_endpoint(route_path),
            org_id or "no_org",
            principal_id or "anonymous",
            role_or_tier or "guest",
        ]
        query = list(query)
        if query:
            parts.append(_digest(query))
        if path_params:
            parts.append(_digest(path_params.items()))
        return ":".join(parts)

    async def lookup(self, key: str) -> Optional[Dict[str, Any]]:
        """Stored envelope for ``key``; store failures and bad entries count as a miss."""
        envelope = None
        try:
            raw = await self.store.get(key)
            if raw is not None:
                envelope = json.loads(raw)
                if not isinstance(envelope, dict):
                    envelope = None
                    raise ValueError("cached value is not an envelope")
        except ValueError as exc:
            self._stats.errors += 1
            self.logger.warning("Dropping undecodable cache entry", key=key, error=str(exc))
            await self._discard(key)
        except Exception as exc:
            self._stats.errors += 1
            self.logger.error("Cache fetch error", key=key, error=str(exc))

        if envelope is None:
            self._stats.misses += 1
            self._count("cache_misses_total")
            return None

        self._stats.hits += 1
        self._count("cache_hits_total")
        self.logger.debug("Cache hit", key=key)
        return envelope

    async def _discard(self, key: str) -> None:
        try:
            await self.store.delete(key)
        except Exception as exc:
            self.logger.error("Cache delete error", key=key, error=str(exc))

    @staticmethod
    def replay(envelope: Dict[str, Any], ttl: int, request_id: Optional[str]) -> Dict[str, Any]:
        """Mark a stored envelope as served from cache for this request."""
        meta = envelope.setdefault("meta", {})
        meta["cache_hit"] = True
        meta["cache_ttl"] = ttl
        meta["request_id"] = request_id
        return envelope

    @staticmethod
    def cacheable(envelope: Dict[str, Any], status_code: int) -> bool:
        return envelope.get("success") is not False and status_code < 400

    def store_later(self, key: str, envelope: Dict[str, Any], ttl: int) -> None:
        """Tag ``envelope`` as a miss and write it in the background."""
        meta = envelope.setdefault("meta", {})
        meta["cache_hit"] = False
        meta["cache_ttl"] = ttl
        meta["cached_at"] = utc_timestamp()
        self.tasks.spawn(self._store(key, json.dumps(envelope, default=str), ttl), name="cache.set")

    async def _store(self, key: str, payload: str, ttl: int) -> None:
        try:
            await self.store.set(key, payload, ttl)
        except Exception:
            self._stats.errors += 1
            raise
        self._stats.sets += 1
        self._count("cache_sets_total")
        self.logger.debug("Cached response", key=key, ttl=ttl)

    async def invalidate(self, pattern: str) -> int:
        """Delete every entry whose key contains ``pattern``."""
        return await self._delete_matching(f"{KEY_PREFIX}:*{pattern}*")

    async def invalidate_org(self, org_id: str) -> int:
        return await self._delete_matching(f"{KEY_PREFIX}:*:{org_id}:*")

    async def invalidate_user(self, user_id: str) -> int:
        return await self._delete_matching(f"{KEY_PREFIX}:*:{user_id}:*")

    async def invalidate_endpoint(self, endpoint: str) -> int:
        return await self._delete_matching(f"{KEY_PREFIX}:*:{normalize_endpoint(endpoint)}:*")

    async def clear_all(self) -> int:
        return await self._delete_matching(f"{KEY_PREFIX}:*")

    async def _delete_matching(self, pattern: str) -> int:
        try:
            keys = await self.store.keys(pattern)
            removed = await self.store.delete(*keys) if keys else 0
        except Exception as exc:
            self._stats.errors += 1
            self.logger.error("Cache invalidation error", pattern=pattern, error=str(exc))
            return 0

        self._stats.invalidations += removed
        self.logger.info("Cache invalidated", pattern=pattern, removed=removed)
        return removed

    async def stats(self) -> Dict[str, Any]:
        try:
            size = await self.store.count(f"{KEY_PREFIX}:*")
        except Exception as exc:
            self.logger.error("Cache size error", error=str(exc))
            size = None
        return {
            **asdict(self._stats),
            "hit_rate": self._stats.hit_rate,
            "cache_size": size,
            "backend": self.store.kind,
            "enabled": self.enabled,
        }

    async def health_check(self) -> Dict[str, Any]:
        try:
            healthy = await self.store.ping()
        except Exception as exc:
            self.logger.error("Cache health check failed", error=str(exc))
            healthy = False
        return {"status": "healthy" if healthy else "unhealthy", "backend": self.store.kind}

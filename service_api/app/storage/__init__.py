"""
Storage package for the API service.

One injectable ``KeyValueStore`` interface backs the rate limiter and the
response cache. Each consumer gets its own instance from ``build_store`` so
their in-process fallbacks never share an eviction budget.
"""

from typing import Optional

from shared.config import BaseConfig
from shared.metrics import MetricsCollector
from .base import KeyValueStore
from .failover import FailoverStore
from .memory import MemoryStore
from .redis_store import RedisStore


def build_store(
    config: BaseConfig,
    metrics: Optional[MetricsCollector] = None,
    max_entries: Optional[int] = None,
) -> KeyValueStore:
    """Select the store implementation from configuration."""
    max_entries = max_entries or config.memory_store_max_entries
    if not config.redis_url:
        return MemoryStore(max_entries=max_entries)

    primary = RedisStore(config.redis_url)
    if not config.cache_memory_fallback:
        return primary
    return FailoverStore(
        primary,
        MemoryStore(max_entries=max_entries),
        recheck_seconds=config.store_recheck_seconds,
        metrics=metrics,
    )


__all__ = ["KeyValueStore", "MemoryStore", "RedisStore", "FailoverStore", "build_store"]

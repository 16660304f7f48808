"""
Primary store with automatic in-process fallback.

While the primary is unreachable every operation is served by the fallback,
and the primary is probed again after ``recheck_seconds``. Fallback state is
not shared across instances.
"""

import time
from typing import Any, Callable, List, Optional, Tuple

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .base import KeyValueStore


class FailoverStore(KeyValueStore):
    """Routes calls to ``primary`` and degrades to ``fallback`` on transient errors."""

    def __init__(
        self,
        primary: KeyValueStore,
        fallback: KeyValueStore,
        recheck_seconds: float = 30.0,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.primary = primary
        self.fallback = fallback
        self.recheck_seconds = recheck_seconds
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger("api.store")
        self._degraded_until: Optional[float] = None

    @property
    def degraded(self) -> bool:
        return self._degraded_until is not None

    @property
    def kind(self) -> str:
        return self.fallback.kind if self.degraded else self.primary.kind

    def _use_primary(self) -> bool:
        return self._degraded_until is None or self.clock() >= self._degraded_until

    def _degrade(self, operation: str, error: BaseException) -> None:
        if self._degraded_until is None:
            self.logger.warning(
                "Shared store unavailable, using in-process fallback",
                operation=operation,
                error=str(error),
            )
        self._degraded_until = self.clock() + self.recheck_seconds
        if self.metrics:
            self.metrics.set_gauge("store_degraded", 1)

    def _recover(self) -> None:
        self.logger.info("Shared store recovered")
        self._degraded_until = None
        if self.metrics:
            self.metrics.set_gauge("store_degraded", 0)

    async def _call(self, operation: str, *args: Any) -> Any:
        if self._use_primary():
            try:
                result = await getattr(self.primary, operation)(*args)
            except self.primary.transient_errors as e:
                self._degrade(operation, e)
            else:
                if self._degraded_until is not None:
                    self._recover()
                return result
        return await getattr(self.fallback, operation)(*args)

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        await self._call("set", key, value, ttl)

    async def delete(self, *keys: str) -> int:
        return await self._call("delete", *keys)

    async def keys(self, pattern: str) -> List[str]:
        return await self._call("keys", pattern)

    async def increment(self, key: str, ttl: int) -> Tuple[int, float]:
        return await self._call("increment", key, ttl)

    async def ttl(self, key: str) -> Optional[float]:
        return await self._call("ttl", key)

    async def push_capped(self, key: str, value: str, max_len: int) -> None:
        await self._call("push_capped", key, value, max_len)

    async def list_range(self, key: str, start: int = 0, stop: int = -1) -> List[Any]:
        return await self._call("list_range", key, start, stop)

    async def ping(self) -> bool:
        return await self._call("ping")

    async def close(self) -> None:
        await self.primary.close()
        await self.fallback.close()

"""
Key-value store interface shared by the rate limiter and the response cache.
"""

from abc import ABC, abstractmethod
from typing import Any, List, Optional, Tuple, Type


class KeyValueStore(ABC):
    """Async store with TTLs, glob key listing, counters and capped lists."""

    kind: str = "abstract"
    # Exceptions that mean "backend unreachable" rather than a bug
    transient_errors: Tuple[Type[BaseException], ...] = ()

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        ...

    @abstractmethod
    async def keys(self, pattern: str) -> List[str]:
        """Keys matching a glob pattern (``*``, ``?``, ``[...]``)."""

    @abstractmethod
    async def increment(self, key: str, ttl: int) -> Tuple[int, float]:
        """Increment a counter, starting its TTL on first hit.

        Returns the new count and the seconds left before the counter expires.
        """

    @abstractmethod
    async def ttl(self, key: str) -> Optional[float]:
        """Seconds until ``key`` expires, None when missing or persistent."""

    @abstractmethod
    async def push_capped(self, key: str, value: str, max_len: int) -> None:
        """Prepend to a list and trim it to the newest ``max_len`` items."""

    @abstractmethod
    async def list_range(self, key: str, start: int = 0, stop: int = -1) -> List[Any]:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    async def count(self, pattern: str = "*") -> int:
        return len(await self.keys(pattern))

    async def close(self) -> None:
        return None

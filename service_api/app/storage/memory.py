"""
Bounded in-process store.

Used when no shared store is configured and as the fallback while Redis is
unreachable. Entries are evicted oldest-first once ``max_entries`` is hit and
expire lazily on access. State is local to the process.
"""

import fnmatch
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

from shared.logging import get_logger
from .base import KeyValueStore


@dataclass
class _Entry:
    value: Any
    expires_at: Optional[float] = None


class MemoryStore(KeyValueStore):
    """OrderedDict-backed store with lazy expiry."""

    kind = "memory"

    def __init__(self, max_entries: int = 1000, clock: Callable[[], float] = time.monotonic):
        self.max_entries = max_entries
        self.clock = clock
        self.evictions = 0
        self._data: "OrderedDict[str, _Entry]" = OrderedDict()
        self.logger = get_logger("api.memory_store")

    def __len__(self) -> int:
        return len(self._data)

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self.clock():
            del self._data[key]
            return None
        return entry

    def _put(self, key: str, entry: _Entry) -> None:
        if key not in self._data:
            while len(self._data) >= self.max_entries:
                evicted, _ = self._data.popitem(last=False)
                self.evictions += 1
                self.logger.debug("Evicted oldest entry", key=evicted)
        self._data[key] = entry

    def _expiry(self, ttl: Optional[int]) -> Optional[float]:
        return self.clock() + ttl if ttl else None

    async def get(self, key: str) -> Optional[str]:
        entry = self._live(key)
        return None if entry is None else entry.value

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        self._put(key, _Entry(value, self._expiry(ttl)))

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._data.pop(key, None) is not None:
                removed += 1
        return removed

    async def keys(self, pattern: str) -> List[str]:
        return [key for key in list(self._data) if self._live(key) and fnmatch.fnmatchcase(key, pattern)]

    async def increment(self, key: str, ttl: int) -> Tuple[int, float]:
        entry = self._live(key)
        if entry is None:
            entry = _Entry(0, self._expiry(ttl))
            self._put(key, entry)
        entry.value = int(entry.value) + 1
        remaining = entry.expires_at - self.clock() if entry.expires_at is not None else float(ttl)
        return entry.value, remaining

    async def ttl(self, key: str) -> Optional[float]:
        entry = self._live(key)
        if entry is None or entry.expires_at is None:
            return None
        return max(0.0, entry.expires_at - self.clock())

    async def push_capped(self, key: str, value: str, max_len: int) -> None:
        entry = self._live(key)
        if entry is None:
            entry = _Entry([])
            self._put(key, entry)
        entry.value.insert(0, value)
        del entry.value[max_len:]

    async def list_range(self, key: str, start: int = 0, stop: int = -1) -> List[Any]:
        entry = self._live(key)
        if entry is None:
            return []
        items = entry.value
        # Redis LRANGE semantics: ``stop`` is inclusive, -1 means the end
        end = len(items) if stop == -1 else stop + 1
        return list(items[start:end])

    async def ping(self) -> bool:
        return True

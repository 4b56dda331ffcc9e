"""
Cache component for metadata lookups.

The metadata client only depends on the `Cache` protocol, so the in-process
`MemoryTTLCache` can be replaced by a shared cache without touching lookup
logic.
"""

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True)
class CacheHit:
    """A cached value. Wrapping lets a cached None differ from a miss."""

    value: Any


class Cache(Protocol):
    def get(self, key: str) -> CacheHit | None: ...

    def set(self, key: str, value: Any, ttl_seconds: float) -> None: ...


class MemoryTTLCache:
    """Process-local cache with per-entry expiry on a monotonic clock."""

    def __init__(
        self,
        max_size: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_size = max_size
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> CacheHit | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return CacheHit(value)

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._entries.pop(key, None)
        self._entries[key] = (self._clock() + ttl_seconds, value)
        if self.max_size is not None:
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

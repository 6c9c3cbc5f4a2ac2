"""
In-process cache used to shortcut repeated reads.

Callers only depend on the `Cache` protocol (get/set/clear), so the TTL map
below can be swapped for another store without touching the handlers.
Mutations invalidate with `clear()` rather than per key.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from .metrics import MetricsRegistry


class Cache(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any, ttl_ms: int) -> None: ...

    def clear(self) -> None: ...


@dataclass
class CacheEntry:
    value: Any
    inserted_at: float
    ttl_ms: int

    def expired(self, now: float) -> bool:
        return (now - self.inserted_at) * 1000 > self.ttl_ms


class TTLCache:
    """Key -> value map with passive TTL expiry and a size bound.

    Stale entries are only dropped when read. When `max_entries` is reached
    the oldest insertion is evicted.
    """

    def __init__(self, metrics: Optional[MetricsRegistry] = None, max_entries: int = 1024,
                 clock: Callable[[], float] = time.monotonic):
        self.metrics = metrics
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expired(self._clock()):
                del self._entries[key]
                entry = None
        self._record(entry is not None)
        return entry.value if entry is not None else None

    def set(self, key: str, value: Any, ttl_ms: int) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(value, self._clock(), ttl_ms)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _record(self, hit: bool) -> None:
        if self.metrics is not None:
            self.metrics.inc("cache_hits_total" if hit else "cache_misses_total")

"""
Bounded TTL cache for tenant credentials.

Credentials come from an external store on every upstream call. Caching
them briefly keeps that store off the hot path without ever writing
plaintext secrets anywhere but process memory.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: float


class BoundedTTLCache(Generic[K, V]):
    """
    Thread-safe LRU cache with a size limit and time-based expiry.

    Example:
        cache = BoundedTTLCache[str, Credentials](max_size=500, ttl_seconds=300)
        creds = cache.get_or_load("shop-1", lambda: provider.get("shop-1"))
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be positive")

        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock

        self._entries: OrderedDict[K, _Entry[V]] = OrderedDict()
        self._lock = threading.Lock()

        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _expired(self, entry: _Entry[V]) -> bool:
        return self.ttl_seconds > 0 and self._clock() > entry.expires_at

    def get(self, key: K) -> V | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._expired(entry):
                if entry is not None:
                    del self._entries[key]
                self._misses += 1
                return None

            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    def set(self, key: K, value: V) -> None:
        expires_at = self._clock() + self.ttl_seconds if self.ttl_seconds > 0 else float("inf")

        with self._lock:
            self._entries.pop(key, None)
            while len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
                self._evictions += 1
            self._entries[key] = _Entry(value=value, expires_at=expires_at)

    def get_or_load(self, key: K, loader: Callable[[], V]) -> V:
        """Return the cached value, calling `loader` on a miss."""
        value = self.get(key)
        if value is not None:
            return value

        value = loader()
        if value is not None:
            self.set(key, value)
        return value

    def invalidate(self, key: K) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 4) if total else 0.0,
            "evictions": self._evictions,
        }

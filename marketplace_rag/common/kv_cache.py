"""
LRU + TTL Cache

Bounded in-memory cache shared by concurrent requests.
Used for query embeddings and for full search responses.
"""

import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, Optional, TypeVar

V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    """A cached value with its absolute expiry (None = never expires)"""
    value: V
    expires_at: Optional[float]


class LruTtlCache(Generic[V]):
    """
    Least-recently-used cache with per-entry time-to-live.

    The most recently used entry sits at the tail of the underlying
    OrderedDict. Expiry is checked lazily on read; capacity is enforced on
    write, pruning expired entries before evicting from the head.

    All operations take a single lock. Critical sections are pure
    in-memory work with no I/O.
    """

    def __init__(
        self,
        max_entries: int,
        ttl_ms: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize cache.

        Args:
            max_entries: Capacity, must be a positive integer
            ttl_ms: Entry lifetime in milliseconds, 0 means never expires
            clock: Seconds-based monotonic clock (injectable for tests)
        """
        if isinstance(max_entries, bool) or not isinstance(max_entries, int) or max_entries <= 0:
            raise ValueError("max_entries must be a positive integer")
        if isinstance(ttl_ms, bool) or not isinstance(ttl_ms, (int, float)) or not math.isfinite(ttl_ms) or ttl_ms < 0:
            raise ValueError("ttl_ms must be a non-negative number")

        self._max_entries = max_entries
        self._ttl_seconds = ttl_ms / 1000.0
        self._clock = clock
        self._store: "OrderedDict[Hashable, CacheEntry[V]]" = OrderedDict()
        self._lock = threading.Lock()

    @property
    def size(self) -> int:
        """Number of stored entries (expired entries count until touched)"""
        with self._lock:
            return len(self._store)

    def __len__(self) -> int:
        return self.size

    def get(self, key: Hashable) -> Optional[V]:
        """Return the cached value, or None on miss or expiry."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None

            if self._is_expired(entry, self._clock()):
                del self._store[key]
                return None

            # Refresh recency
            self._store.move_to_end(key)
            return entry.value

    def set(self, key: Hashable, value: V) -> None:
        with self._lock:
            now = self._clock()
            expires_at = now + self._ttl_seconds if self._ttl_seconds > 0 else None
            self._store.pop(key, None)
            self._store[key] = CacheEntry(value=value, expires_at=expires_at)

            if len(self._store) > self._max_entries:
                self._prune_expired(now)
                self._evict_least_recently_used()

    def delete(self, key: Hashable) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    @staticmethod
    def _is_expired(entry: CacheEntry, now: float) -> bool:
        return entry.expires_at is not None and entry.expires_at <= now

    def _prune_expired(self, now: float) -> None:
        expired = [k for k, entry in self._store.items() if self._is_expired(entry, now)]
        for key in expired:
            del self._store[key]

    def _evict_least_recently_used(self) -> None:
        while len(self._store) > self._max_entries:
            self._store.popitem(last=False)

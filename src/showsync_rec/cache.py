"""
In-process TTL cache injected into the engines.

Holds compatibility scores (keyed by user pair) and trending lists. Entries
expire after the TTL and are dropped explicitly when a profile changes.
"""
import logging
import threading
import time
from typing import Any, Callable, Hashable

logger = logging.getLogger(__name__)

_MISSING = object()


class TTLCache:
    """Thread-safe key/value cache with per-entry expiry."""

    def __init__(self, ttl_seconds: float = 3600, max_size: int = 10000, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._max_size = max_size
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[Hashable, tuple[float, Any]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable, default: Any = None) -> Any:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key, _MISSING)
            if entry is _MISSING:
                self.misses += 1
                return default
            expires_at, value = entry
            if expires_at <= now:
                del self._entries[key]
                self.misses += 1
                return default
            self.hits += 1
            return value

    def put(self, key: Hashable, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        now = self._clock()
        with self._lock:
            if len(self._entries) >= self._max_size and key not in self._entries:
                self._evict(now)
            self._entries[key] = (now + ttl, value)

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        """Return the cached value, computing and storing it on a miss."""
        value = self.get(key, _MISSING)
        if value is _MISSING:
            value = compute()
            self.put(key, value)
        return value

    def invalidate(self, key: Hashable) -> bool:
        with self._lock:
            return self._entries.pop(key, _MISSING) is not _MISSING

    def invalidate_where(self, predicate: Callable[[Hashable], bool]) -> int:
        """Drop every entry whose key matches predicate; returns the count removed."""
        with self._lock:
            doomed = [k for k in self._entries if predicate(k)]
            for k in doomed:
                del self._entries[k]
        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cache entries")
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _evict(self, now: float) -> None:
        # Called with the lock held: drop expired entries, then the soonest to expire
        expired = [k for k, (exp, _) in self._entries.items() if exp <= now]
        for k in expired:
            del self._entries[k]
        if len(self._entries) >= self._max_size:
            oldest = min(self._entries, key=lambda k: self._entries[k][0])
            del self._entries[oldest]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict:
        with self._lock:
            return {
                'entries': len(self._entries),
                'max_size': self._max_size,
                'hits': self.hits,
                'misses': self.misses,
            }

"""
Short-lived read caches.

Callers key entries by an operation signature tuple, e.g.
``("check_duplicate", file_hash, module)``, and invalidate the key when they
write the underlying data. Components take a cache instance so tests can pass
``NullCache``.
"""
import threading
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

_MISSING = object()


class TTLCache:
    """
    Thread-safe in-memory cache with a fixed time-to-live per entry.

    Expired entries are dropped when read, and at most once per TTL window
    every write sweeps the whole store, so keys that are never read again
    do not accumulate.
    """

    def __init__(self, ttl_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._store: Dict[Hashable, Tuple[Any, float]] = {}
        self._lock = threading.RLock()
        self._next_sweep = clock() + ttl_seconds

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return default
            value, expires_at = entry
            if expires_at <= self._clock():
                self._store.pop(key, None)
                return default
            return value

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            self._store[key] = (value, now + (self.ttl_seconds if ttl is None else ttl))

    def _sweep(self, now: float) -> None:
        for key in [key for key, (_, expires_at) in self._store.items() if expires_at <= now]:
            del self._store[key]
        self._next_sweep = now + self.ttl_seconds

    def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        value = self.get(key, _MISSING)
        if value is _MISSING:
            value = loader()
            self.set(key, value)
        return value

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._store.pop(key, None)

    def invalidate_prefix(self, prefix: Tuple[Any, ...]) -> None:
        """Drop every tuple key starting with ``prefix``."""
        size = len(prefix)
        with self._lock:
            for key in list(self._store):
                if isinstance(key, tuple) and key[:size] == prefix:
                    self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()


class NullCache(TTLCache):
    """Cache that never stores anything."""

    def __init__(self):
        super().__init__(ttl_seconds=0)

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        return None

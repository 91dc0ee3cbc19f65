"""Short-TTL key-value caches shared by feed fetches and arrival boards."""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class MemoryCache:
    """In-process TTL cache with get/set(key, value, ttl_seconds) semantics."""

    def __init__(self, clock: Callable[[], float] = time.monotonic, max_entries: int = 64):
        self._clock = clock
        self._max_entries = max_entries
        self._store: Dict[str, Tuple[Any, float]] = {}  # key -> (value, expires_at)
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            item = self._store.get(key)
            if item is None:
                return None
            value, expires_at = item
            if now >= expires_at:
                del self._store[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        now = self._clock()
        with self._lock:
            self._evict_expired(now)
            if key not in self._store and len(self._store) >= self._max_entries:
                # Drop the entry closest to expiry
                oldest_key = min(self._store, key=lambda k: self._store[k][1])
                del self._store[oldest_key]
            self._store[key] = (value, now + ttl_seconds)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        return len(self._store)

    def _evict_expired(self, now: float) -> None:
        expired_keys = [key for key, (_, expires_at) in self._store.items() if now >= expires_at]
        for key in expired_keys:
            del self._store[key]

        if expired_keys:
            logger.debug(f"Evicted {len(expired_keys)} expired cache entries")


class SafeCache:
    """
    Wraps a cache backend so that its absence or failure never fails a request.

    A missing backend or any exception raised by it behaves like a cache miss
    (for get) or a no-op (for set and delete).
    """

    def __init__(self, backend: Optional[Any] = None):
        self.backend = backend

    @property
    def enabled(self) -> bool:
        return self.backend is not None

    def get(self, key: str) -> Optional[Any]:
        if self.backend is None:
            return None
        try:
            return self.backend.get(key)
        except Exception as e:
            logger.debug(f"Cache get failed for {key}: {e}")
            return None

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        if self.backend is None:
            return
        try:
            self.backend.set(key, value, ttl_seconds)
        except Exception as e:
            logger.debug(f"Cache set failed for {key}: {e}")

    def delete(self, key: str) -> None:
        if self.backend is None:
            return
        try:
            self.backend.delete(key)
        except Exception as e:
            logger.debug(f"Cache delete failed for {key}: {e}")

from __future__ import annotations

import time
from threading import RLock
from typing import Any, Callable


class TTLCache:
    """In-memory cache keyed by string, each entry stamped with its store time.

    Entries older than ``ttl_sec`` are treated as absent and dropped on access.
    The clock is injectable so expiry can be driven from tests.
    """

    def __init__(self, ttl_sec: float = 300.0, clock: Callable[[], float] | None = None) -> None:
        self._ttl_sec = float(ttl_sec)
        self._clock = clock or time.monotonic
        self._lock = RLock()
        self._items: dict[str, tuple[float, float, Any]] = {}

    @property
    def ttl_sec(self) -> float:
        return self._ttl_sec

    def _expired(self, entry: tuple[float, float, Any], now_ts: float) -> bool:
        stored_at, ttl, _ = entry
        return now_ts - stored_at > ttl

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._items.get(key)
            if entry is None:
                return None
            if self._expired(entry, self._clock()):
                del self._items[key]
                return None
            return entry[2]

    def set(self, key: str, value: Any, ttl_sec: float | None = None) -> None:
        ttl = self._ttl_sec if ttl_sec is None else float(ttl_sec)
        with self._lock:
            self._items[key] = (self._clock(), ttl, value)

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def delete_by_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [key for key in self._items if key.startswith(prefix)]
            for key in keys:
                del self._items[key]
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def cleanup(self) -> int:
        now_ts = self._clock()
        with self._lock:
            expired = [key for key, entry in self._items.items() if self._expired(entry, now_ts)]
            for key in expired:
                del self._items[key]
            return len(expired)

    def size(self) -> int:
        with self._lock:
            return len(self._items)

import threading
import time
from typing import Any


class ListingCache:
    """In-memory TTL cache for format listings, keyed by video id.

    Only the listing endpoint reads it; downloads always probe fresh because
    provider format ids expire. A TTL of 0 disables the cache.
    """

    def __init__(self, ttl_seconds: int = 0, max_entries: int = 256, clock=time.monotonic) -> None:
        self.ttl_seconds = max(0, int(ttl_seconds or 0))
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._lock = threading.Lock()
        self._data: dict[str, dict[str, Any]] = {}

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0

    def get(self, key: str) -> Any:
        if not self.enabled:
            return None
        now = self._clock()
        with self._lock:
            row = self._data.get(key)
            if row is None:
                return None
            if row["expires_at"] <= now:
                self._data.pop(key, None)
                return None
            return row["value"]

    def set(self, key: str, value: Any) -> None:
        if not self.enabled:
            return
        now = self._clock()
        with self._lock:
            if key not in self._data and len(self._data) >= self.max_entries:
                self._evict_locked(now)
            self._data[key] = {"expires_at": now + self.ttl_seconds, "value": value}

    def _evict_locked(self, now: float) -> None:
        for key in [k for k, row in self._data.items() if row["expires_at"] <= now]:
            self._data.pop(key, None)
        if len(self._data) >= self.max_entries:
            oldest = min(self._data, key=lambda k: self._data[k]["expires_at"])
            self._data.pop(oldest, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

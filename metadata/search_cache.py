import threading
import time
from typing import Any, Callable

_MISS = object()


class SearchCache:
    """Thread-safe TTL memo keyed by the literal query string.

    Keys are not normalized: ``"Daft Punk"`` and ``"daft punk "`` are
    different entries. Entries are never served at or past ``expires_at``.
    """

    MISS = _MISS

    def __init__(self, ttl_seconds: float = 3600, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = max(1.0, float(ttl_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        self._data: dict[str, dict[str, Any]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def get(self, key: str) -> Any:
        now = self._clock()
        with self._lock:
            row = self._data.get(key)
            if row is None:
                return _MISS
            if row["expires_at"] <= now:
                self._data.pop(key, None)
                return _MISS
            return row["value"]

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self._ttl if ttl_seconds is None else max(1.0, float(ttl_seconds))
        now = self._clock()
        with self._lock:
            self._data[key] = {
                "expires_at": now + ttl,
                "value": value,
            }

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, row in self._data.items() if row["expires_at"] <= now]
            for key in expired:
                self._data.pop(key, None)
        return len(expired)

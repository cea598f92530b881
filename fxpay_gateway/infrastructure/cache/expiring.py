"""Thread-safe in-memory key/value store with per-entry expiry"""

import threading
import time
from typing import Any, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

V = TypeVar("V")


class ExpiringStore(Generic[V]):
    """
    Dict guarded by a lock where every entry carries an absolute expiry.

    Expired entries are invisible to readers and removed by purge_expired(),
    which the maintenance sweep calls periodically. mutate() runs a
    read-modify-write for one key under the lock, so a threshold check and
    the counter update that follows it cannot interleave with another caller.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[V, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[V]:
        with self._lock:
            return self._live(key)

    def set(self, key: Hashable, value: V, ttl_seconds: float) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl_seconds)

    def delete(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def mutate(self, key: Hashable, fn: Callable[[Optional[V]], Tuple[V, float, Any]]) -> Any:
        """
        Atomically replace the value for key.

        fn receives the live value (or None) and returns
        (new_value, ttl_seconds, result); result is handed back to the caller.
        """
        with self._lock:
            current = self._live(key)
            new_value, ttl_seconds, result = fn(current)
            self._entries[key] = (new_value, self._clock() + ttl_seconds)
            return result

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _live(self, key: Hashable) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            return None
        return value

from __future__ import annotations
import time
from typing import Callable

class TTLDeduper:
    """
    TTL-based dedupe cache with max size. Keys expire after ttl_s.
    Used to keep repeated quote warnings out of the logs.
    """
    def __init__(self, ttl_s: float, max_size: int = 10_000, clock: Callable[[], float] = time.time):
        self.ttl_s = ttl_s
        self.max_size = max_size
        self._clock = clock
        self._store: dict[str, float] = {}  # key -> expire_ts

    def seen_recently(self, key: str) -> bool:
        now = self._clock()
        exp = self._store.get(key)
        if exp is None:
            return False
        if exp <= now:
            self._store.pop(key, None)
            return False
        return True

    def mark(self, key: str) -> None:
        if len(self._store) > self.max_size:
            now = self._clock()
            for k, exp in list(self._store.items()):
                if exp <= now:
                    self._store.pop(k, None)
        self._store[key] = self._clock() + self.ttl_s

    def first_sighting(self, key: str) -> bool:
        """True (and marks the key) unless it was seen within the TTL."""
        if self.seen_recently(key):
            return False
        self.mark(key)
        return True

from __future__ import annotations

import asyncio
import copy
import functools
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from channel_ticker.utils.types import Quote

T = TypeVar("T")


@dataclass(slots=True)
class CacheEntry:
    value: Quote
    expires_at: float  # epoch seconds


class QuoteCache:
    """
    Short-lived quote cache keyed "SYMBOL:interval", plus the last quote per
    key that validated with zero critical warnings (the fallback record).

    last_good holds private deep copies: callers may do whatever they like
    with what they get back without corrupting the fallback.
    """

    def __init__(self, ttl_s: float = 15.0, clock: Callable[[], float] = time.time):
        self.ttl_s = ttl_s
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._last_good: dict[str, Quote] = {}

    def get(self, key: str) -> Optional[Quote]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            self._entries.pop(key, None)
            return None
        return entry.value

    def put(self, key: str, quote: Quote, ttl_s: Optional[float] = None) -> None:
        ttl = self.ttl_s if ttl_s is None else ttl_s
        now = self._clock()
        for k, entry in list(self._entries.items()):
            if now >= entry.expires_at:
                self._entries.pop(k, None)
        self._entries[key] = CacheEntry(value=quote, expires_at=now + ttl)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def last_good(self, key: str) -> Optional[Quote]:
        q = self._last_good.get(key)
        return copy.deepcopy(q) if q is not None else None

    def remember_good(self, key: str, quote: Quote) -> None:
        self._last_good[key] = copy.deepcopy(quote)

    def __len__(self) -> int:
        return len(self._entries)


class InFlightCoordinator:
    """
    Single-flight registry: at most one pending fetch per key. Every caller
    that arrives while a fetch is pending awaits the same task; the entry is
    dropped once it settles, success or failure.
    """

    def __init__(self):
        self._pending: dict[str, asyncio.Task] = {}

    def pending(self, key: str) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._pending[key] = task
            task.add_done_callback(functools.partial(self._settle, key))
        # shield: one cancelled caller must not cancel the shared fetch
        return await asyncio.shield(task)

    def _settle(self, key: str, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled():
            # mark retrieved even if every awaiter went away
            task.exception()

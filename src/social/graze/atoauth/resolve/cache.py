"""Time-bounded cache with in-flight request sharing.

Identity lookups are cached for a fixed lifetime, and concurrent lookups of
the same key wait on one shared task instead of issuing duplicate requests.
Failures are never cached.
"""

import asyncio
import time
from typing import Awaitable, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class CachedResolver(Generic[K, V]):
    def __init__(
        self,
        resolve: Callable[[K], Awaitable[V]],
        time_to_live: float,
        max_capacity: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._resolve = resolve
        self._time_to_live = time_to_live
        self._max_capacity = max_capacity
        self._clock = clock
        self._entries: Dict[K, Tuple[float, V]] = {}
        self._in_flight: Dict[K, asyncio.Future[V]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: K) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    def set(self, key: K, value: V) -> None:
        if self._max_capacity is not None and len(self._entries) >= self._max_capacity:
            self._evict()
        self._entries[key] = (self._clock() + self._time_to_live, value)

    def invalidate(self, key: K) -> None:
        self._entries.pop(key, None)

    def _evict(self) -> None:
        now = self._clock()
        for key in [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]:
            del self._entries[key]
        while self._max_capacity is not None and len(self._entries) >= self._max_capacity:
            # Entries are kept in insertion order, so the first one is the oldest.
            del self._entries[next(iter(self._entries))]

    async def resolve(self, key: K) -> V:
        cached = self.get(key)
        if cached is not None:
            return cached

        pending = self._in_flight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(self._resolve(key))
        self._in_flight[key] = task
        try:
            value = await asyncio.shield(task)
        finally:
            self._in_flight.pop(key, None)
        self.set(key, value)
        return value

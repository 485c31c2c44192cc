from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Hashable, Optional, Set, TypeVar

from src.filmix_gateway.logger import logger

T = TypeVar("T")

Clock = Callable[[], float]
Producer = Callable[[], Awaitable[T]]

MIN_STALE_WINDOW = 60.0


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    fresh_until: float
    stale_until: float

    def is_fresh(self, now: float) -> bool:
        return now < self.fresh_until

    def is_stale(self, now: float) -> bool:
        return self.fresh_until <= now < self.stale_until


def _retrieve_exception(task: asyncio.Task) -> None:
    # marks the error as seen when every waiter went away before it finished
    if not task.cancelled():
        task.exception()


class SingleFlight:
    """At most one running computation per key; later callers attach to it.

    The registry entry is inserted before the work starts and removed by the
    task itself, and only while it is still the registered task for the key.
    """

    def __init__(self) -> None:
        self._tasks: Dict[Hashable, asyncio.Task] = {}

    def __contains__(self, key: Hashable) -> bool:
        return key in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def get(self, key: Hashable) -> Optional[asyncio.Task]:
        return self._tasks.get(key)

    def start(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> asyncio.Task:
        existing = self._tasks.get(key)
        if existing is not None:
            return existing

        async def _run() -> T:
            try:
                return await factory()
            finally:
                if self._tasks.get(key) is asyncio.current_task():
                    del self._tasks[key]

        task = asyncio.get_running_loop().create_task(_run())
        task.add_done_callback(_retrieve_exception)
        self._tasks[key] = task
        return task

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        # shield: a waiter that goes away must not cancel work others share
        return await asyncio.shield(self.start(key, factory))

    def tasks(self) -> Set[asyncio.Task]:
        return set(self._tasks.values())


class StaleWhileRevalidateCache(Generic[T]):
    """Keyed cache with fresh -> stale -> expired lifecycle.

    - fresh: value returned as is
    - stale: value returned immediately, one background refresh started
    - expired or missing: caller awaits the (single-flight) computation

    ``serve_expired_on_error`` returns an expired value when its refresh
    fails instead of raising.
    """

    def __init__(
        self,
        name: str,
        ttl: float,
        clock: Clock = time.monotonic,
        serve_expired_on_error: bool = False,
    ) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self.name = name
        self.ttl = float(ttl)
        self._clock = clock
        self._serve_expired_on_error = serve_expired_on_error
        self._entries: Dict[Hashable, CacheEntry[T]] = {}
        self._flights = SingleFlight()
        self._background: Set[asyncio.Task] = set()

    def _make_entry(self, value: T) -> CacheEntry[T]:
        fresh_until = self._clock() + self.ttl
        stale_until = max(fresh_until + 10 * self.ttl, fresh_until + MIN_STALE_WINDOW)
        return CacheEntry(value=value, fresh_until=fresh_until, stale_until=stale_until)

    def peek(self, key: Hashable) -> Optional[CacheEntry[T]]:
        return self._entries.get(key)

    def set(self, key: Hashable, value: T) -> None:
        self._entries[key] = self._make_entry(value)

    def in_flight(self, key: Hashable) -> bool:
        return key in self._flights

    def _start_refresh(self, key: Hashable, producer: Producer) -> asyncio.Task:
        async def _compute() -> T:
            value = await producer()
            self._entries[key] = self._make_entry(value)
            return value

        return self._flights.start(key, _compute)

    async def refresh(self, key: Hashable, producer: Producer) -> T:
        """Recompute ``key`` now, attaching to a refresh already in flight."""
        return await asyncio.shield(self._start_refresh(key, producer))

    def _revalidate_in_background(self, key: Hashable, producer: Producer) -> None:
        if self._flights.get(key) is not None:
            return
        task = self._start_refresh(key, producer)
        self._background.add(task)
        task.add_done_callback(lambda t: self._finish_background(key, t))

    def _finish_background(self, key: Hashable, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background refresh of %s[%s] failed: %s", self.name, key, exc)

    async def get(self, key: Hashable, producer: Producer) -> T:
        entry = self._entries.get(key)
        now = self._clock()
        if entry is not None and entry.is_fresh(now):
            return entry.value
        if entry is not None and entry.is_stale(now):
            self._revalidate_in_background(key, producer)
            return entry.value
        if entry is not None and self._serve_expired_on_error:
            try:
                return await self.refresh(key, producer)
            except Exception as exc:
                logger.warning("Refresh of %s[%s] failed, serving expired value: %s", self.name, key, exc)
                return entry.value
        return await self.refresh(key, producer)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    async def join(self) -> None:
        """Wait for every in-flight computation; errors are not raised."""
        while True:
            pending = {task for task in self._flights.tasks() | self._background if not task.done()}
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)


def cache_stats(*caches: StaleWhileRevalidateCache[Any]) -> Dict[str, int]:
    return {cache.name: len(cache) for cache in caches}

"""Staleness and refresh discipline for overlapping async calls.

Everything here runs on one asyncio event loop; no locks are needed beyond
the generation counter and the single in-flight refresh task.
"""
import asyncio
import time
from collections import OrderedDict, defaultdict
from typing import Any, Awaitable, Callable

import structlog

log = structlog.get_logger()


class LatestOnly:
    """Applies the outcome of a call only if no newer call started after it.

    Each ``run`` takes the next generation number. When the call finishes its
    result (or error) becomes ``current`` only if its generation is still the
    latest issued, so a slow first call can never overwrite a faster later one.
    """

    def __init__(self, name: str):
        self.name = name
        self.generation = 0
        self.current: Any = None
        self.current_error: Exception | None = None

    def is_latest(self, generation: int) -> bool:
        return generation == self.generation

    async def run(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs):
        self.generation += 1
        generation = self.generation
        try:
            result = await fn(*args, **kwargs)
        except Exception as e:
            if self.is_latest(generation):
                self.current, self.current_error = None, e
            else:
                log.info("stale_result_discarded", operation=self.name, generation=generation, error=str(e))
            raise
        if self.is_latest(generation):
            self.current, self.current_error = result, None
        else:
            log.info("stale_result_discarded", operation=self.name, generation=generation)
        return result


class CollapsingRefresher:
    """Keeps at most one refresh in flight; triggers during a refresh join it."""

    def __init__(self, refresh: Callable[[], Awaitable[Any]]):
        self._refresh = refresh
        self._inflight: asyncio.Task | None = None
        self._queued = False
        self.started = 0

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def trigger(self, fresh: bool = False):
        """Join the refresh in flight, or start one.

        With ``fresh``, a refresh that started before this call is not reused:
        one more is queued behind it, so the result reflects state as of now.
        Requests still go out one at a time.
        """
        if not self.in_flight:
            self._start(self._refresh())
        elif fresh and not self._queued:
            self._queued = True
            self._start(self._after(self._inflight))
        return await asyncio.shield(self._inflight)

    def _start(self, coro) -> None:
        self.started += 1
        self._inflight = asyncio.ensure_future(coro)

    async def _after(self, previous: asyncio.Future):
        await asyncio.wait([previous])
        self._queued = False
        return await self._refresh()


class RefreshSignal:
    """In-process publish/subscribe for cross-view refresh notifications.

    Delivery order is latest-write-wins: subscribers only learn that a topic
    changed, never a causal history.
    """

    def __init__(self):
        self._subscribers: dict[str, list[Callable[[Any], Awaitable[Any] | None]]] = defaultdict(list)
        self.last: dict[str, Any] = {}

    def subscribe(self, topic: str, callback) -> Callable[[], None]:
        self._subscribers[topic].append(callback)

        def unsubscribe():
            if callback in self._subscribers[topic]:
                self._subscribers[topic].remove(callback)

        return unsubscribe

    def count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    async def publish(self, topic: str, payload: Any = None) -> None:
        self.last[topic] = payload
        for callback in list(self._subscribers[topic]):
            result = callback(payload)
            if asyncio.iscoroutine(result):
                await result


class Poller:
    """Calls ``fn`` every ``interval`` seconds until stopped."""

    def __init__(self, fn: Callable[[], Awaitable[Any]], interval: float):
        self.fn = fn
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self):
        while True:
            try:
                await self.fn()
            except Exception as e:
                # a failed poll is retried on the next tick
                log.warning("poll_failed", error=str(e))
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.ensure_future(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


class IdleCache:
    """Per-key objects (boards, checkers) that are dropped when not used.

    An entry goes once it has been idle for ``ttl`` seconds, or when more than
    ``max_size`` entries exist (least recently used first). ``on_evict`` is
    called, and awaited if it returns a coroutine, for every dropped entry.
    """

    def __init__(self, max_size: int = 100, ttl: float = 900.0,
                 on_evict: Callable[[Any], Awaitable[Any] | None] | None = None,
                 clock: Callable[[], float] = time.monotonic):
        self.max_size = max(1, max_size)
        self.ttl = ttl
        self.on_evict = on_evict
        self.clock = clock
        self._items: OrderedDict[str, tuple[Any, float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: str) -> bool:
        return key in self._items

    async def _evict(self, key: str) -> None:
        value, _ = self._items.pop(key)
        log.info("cache_entry_evicted", key=key)
        if self.on_evict is not None:
            result = self.on_evict(value)
            if asyncio.iscoroutine(result):
                await result

    async def sweep(self) -> None:
        now = self.clock()
        for key in [k for k, (_, used) in self._items.items() if now - used > self.ttl]:
            await self._evict(key)

    async def get(self, key: str):
        await self.sweep()
        entry = self._items.get(key)
        if entry is None:
            return None
        self._items[key] = (entry[0], self.clock())
        self._items.move_to_end(key)
        return entry[0]

    async def put(self, key: str, value) -> None:
        if key in self._items:
            await self._evict(key)
        self._items[key] = (value, self.clock())
        while len(self._items) > self.max_size:
            await self._evict(next(iter(self._items)))

    async def clear(self) -> None:
        for key in list(self._items):
            await self._evict(key)

"""Keyed request deduplication with a short-lived result cache.

`DedupCache.get(key)` returns a cached value while it is fresh. Otherwise the
first caller starts `load(key)` and every concurrent caller for the same key
awaits that same load, so the upstream sees one request per key at a time.

- Only successful results are cached. A failed load is delivered to everyone
  waiting on it, and the next `get` starts a fresh load.
- Entries expire `ttl` seconds after they are stored. `ttl=0` keeps the
  deduplication but caches nothing.
- When more than `max_size` entries are held, expired entries are dropped
  first, then the oldest-stored ones.
- `invalidate(key)` drops the entry at once. A load already in flight still
  answers its waiters, but its result is not stored.

One instance belongs to one event loop. The lock guards both maps and is
never held across an await.
"""

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Hashable, Optional, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

DEFAULT_TTL = 2.0
DEFAULT_MAX_SIZE = 1000


@dataclass
class CacheEntry(Generic[V]):
    value: V
    stored_at: float
    expires_at: float


class _Flight:
    """One in-flight load. `stale` is set when the key is invalidated mid-load."""

    __slots__ = ("task", "stale")

    def __init__(self):
        self.task: Optional[asyncio.Task] = None
        self.stale = False


def _consume_exception(task: asyncio.Task) -> None:
    # Waiters may all have been cancelled; don't warn about an unread failure
    if not task.cancelled():
        task.exception()


class DedupCache(Generic[K, V]):
    """Singleflight + TTL cache in front of an async loader."""

    def __init__(
        self,
        load: Callable[[K], Awaitable[V]],
        ttl: float = DEFAULT_TTL,
        max_size: int = DEFAULT_MAX_SIZE,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl < 0:
            raise ValueError("ttl must not be negative")
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._load = load
        self.ttl = ttl
        self.max_size = max_size
        self.name = name
        self._clock = clock

        self._lock = threading.Lock()
        self._entries: "OrderedDict[K, CacheEntry[V]]" = OrderedDict()
        self._in_flight: Dict[K, _Flight] = {}

    async def get(self, key: K) -> V:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                if self._clock() < entry.expires_at:
                    logger.debug(f"[CACHE] {self.name} hit for {key}")
                    return entry.value
                del self._entries[key]

            flight = self._in_flight.get(key)
            if flight is None:
                flight = _Flight()
                flight.task = asyncio.ensure_future(self._run(key, flight))
                flight.task.add_done_callback(_consume_exception)
                self._in_flight[key] = flight
                logger.debug(f"[CACHE] {self.name} miss for {key}, loading")
            else:
                logger.debug(f"[CACHE] {self.name} joining in-flight load for {key}")

        # A cancelled waiter must not cancel the load the others share
        return await asyncio.shield(flight.task)

    async def _run(self, key: K, flight: _Flight) -> V:
        try:
            value = await self._load(key)
        except BaseException as e:
            with self._lock:
                self._release(key, flight)
            if not isinstance(e, asyncio.CancelledError):
                logger.info(f"[CACHE] {self.name} load for {key} failed: {e}")
            raise

        with self._lock:
            if self.ttl > 0 and not flight.stale:
                self._store(key, value)
            self._release(key, flight)
        return value

    def _release(self, key: K, flight: _Flight) -> None:
        if self._in_flight.get(key) is flight:
            del self._in_flight[key]

    def _store(self, key: K, value: V) -> None:
        now = self._clock()
        # Re-insert so iteration order stays stored_at order
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(value=value, stored_at=now, expires_at=now + self.ttl)
        if len(self._entries) > self.max_size:
            self._evict(now)

    def _evict(self, now: float) -> None:
        expired = [k for k, entry in self._entries.items() if entry.expires_at <= now]
        for k in expired:
            del self._entries[k]
        evicted = 0
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)
            evicted += 1
        if expired or evicted:
            logger.debug(f"[CACHE] {self.name} dropped {len(expired)} expired, evicted {evicted} oldest")

    def invalidate(self, key: K) -> None:
        """Forget the cached value for `key` and keep any in-flight load from storing one."""
        with self._lock:
            self._entries.pop(key, None)
            flight = self._in_flight.get(key)
            if flight is not None:
                flight.stale = True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            for flight in self._in_flight.values():
                flight.stale = True

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {"in_flight": len(self._in_flight), "cached": len(self._entries)}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

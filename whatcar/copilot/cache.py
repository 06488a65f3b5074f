"""
Shared cache layer.

The model gateway and the schema summarizer both use cache-aside against a
string cache with ``get(key)`` / ``set(key, value, ttl)`` semantics:

  RedisCache   -- the distributed cache shared by every service instance
  MemoryCache  -- process-local TTL store for development and tests

Reads and writes are uncoordinated (last write wins).  ``SingleFlight`` can
optionally coalesce concurrent misses for the same key inside one process so
they share a single underlying computation.
"""
from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from whatcar.core.config import get_settings
from whatcar.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


# ── Interface ───────────────────────────────────────────


class DistributedCache(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl: float) -> None: ...


# ── Process-local implementation ────────────────────────

DEFAULT_MAX_SIZE = 1024


@dataclass
class CacheEntry:
    """A single cached value."""
    key: str
    value: str
    created_at: float
    ttl: float

    @property
    def is_expired(self) -> bool:
        return (time.time() - self.created_at) > self.ttl


class MemoryCache:
    """Thread-safe in-memory TTL cache.

    Parameters
    ----------
    max_size : int
        Maximum number of entries. Oldest entries are evicted when full.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE):
        self._store: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._max_size = max_size

    async def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if entry.is_expired:
                del self._store[key]
                return None
            return entry.value

    async def set(self, key: str, value: str, ttl: float) -> None:
        with self._lock:
            if len(self._store) >= self._max_size and key not in self._store:
                self._evict_oldest()
            self._store[key] = CacheEntry(key=key, value=value, created_at=time.time(), ttl=ttl)
        logger.debug("Cache SET key=%s size=%d", key[:32], len(self._store))

    def clear(self) -> int:
        with self._lock:
            count = len(self._store)
            self._store.clear()
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def _evict_oldest(self) -> None:
        if not self._store:
            return
        oldest_key = min(self._store, key=lambda k: self._store[k].created_at)
        del self._store[oldest_key]


# ── Redis implementation ────────────────────────────────


class RedisCache:
    """String cache backed by ``redis.asyncio``; TTLs are absolute expiries."""

    def __init__(self, client: Any):
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        import redis.asyncio as redis

        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        logger.info("Redis cache configured url=%s", url.split("@")[-1])
        return cls(client)

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl: float) -> None:
        await self._client.set(key, value, ex=max(1, int(ttl)))

    async def close(self) -> None:
        await self._client.aclose()


# ── Miss coalescing ─────────────────────────────────────


class SingleFlight:
    """Share one in-flight computation between concurrent callers of a key.

    The computation runs in its own task, so a cancelled caller does not
    cancel the work other callers are still waiting on.  When the last
    waiter goes away the computation is cancelled as well.
    """

    def __init__(self) -> None:
        self._calls: dict[str, asyncio.Task] = {}
        self._waiters: dict[asyncio.Task, int] = {}

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        task = self._calls.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._calls[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            logger.debug("Joining in-flight computation key=%s", key[:32])

        self._waiters[task] = self._waiters.get(task, 0) + 1
        try:
            return await asyncio.shield(task)
        finally:
            self._leave(key, task)

    def in_flight(self) -> int:
        return len(self._calls)

    def _leave(self, key: str, task: asyncio.Task) -> None:
        remaining = self._waiters.pop(task) - 1
        if remaining:
            self._waiters[task] = remaining
        elif not task.done():
            logger.debug("Last waiter left, cancelling computation key=%s", key[:32])
            if self._calls.get(key) is task:
                del self._calls[key]
            task.cancel()

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._calls.get(key) is task:
            del self._calls[key]
        # Mark the outcome as retrieved when every waiter has gone away.
        if not task.cancelled():
            task.exception()


# ── Module-level singleton ──────────────────────────────

_cache: DistributedCache | None = None


def get_cache() -> DistributedCache:
    """Return the configured cache (Redis when ``redis_url`` is set)."""
    global _cache
    if _cache is None:
        url = get_settings().redis_url
        _cache = RedisCache.from_url(url) if url else MemoryCache()
    return _cache


async def close_cache() -> None:
    global _cache
    if isinstance(_cache, RedisCache):
        await _cache.close()
    _cache = None

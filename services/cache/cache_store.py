# services/cache/cache_store.py
"""
Read-through TTL cache shared by every orchestration run.

get_or_fetch is cache-aside: a live entry is returned without touching the
producer; a miss (or an expired entry) invokes the producer and stores the
result. A failing producer fails the call. There is no stale fallback.

Persistence problems on the hot path (lookup/store) are logged and absorbed:
the producer still runs and its value is returned, it just isn't cached.
Admin operations (invalidate*, clear_expired) propagate CacheBackendError.
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from services.fetching.errors import CacheBackendError

from .cache_backend import CacheEntry, CachePersistence

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL_SEC = 3600.0


def should_cache_any(val: Any) -> bool:
    """Default policy: cache every value except None."""
    return val is not None


def should_cache_non_empty(val: Any) -> bool:
    """Skip None and empty containers/strings; useful for list endpoints."""
    if val is None:
        return False
    if isinstance(val, (str, bytes, list, tuple, dict, set)):
        return len(val) > 0
    return True


def _norm_key(key: str) -> str:
    return (key or "").strip()


class CacheStore:
    def __init__(
        self,
        persistence: CachePersistence,
        *,
        default_ttl_s: float = DEFAULT_TTL_SEC,
        single_flight: bool = False,
        should_cache: Callable[[Any], bool] = should_cache_any,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._persistence = persistence
        self.default_ttl_s = float(default_ttl_s)
        self.single_flight = single_flight
        self._should_cache = should_cache
        self._clock = clock
        # key -> shared producer task (single-flight mode only)
        self._inflight: Dict[str, "asyncio.Future[Any]"] = {}

    @property
    def persistence(self) -> CachePersistence:
        return self._persistence

    def _ttl(self, ttl_s: Optional[float]) -> float:
        return float(ttl_s) if ttl_s and ttl_s > 0 else self.default_ttl_s

    # -------------------------
    # Reads / writes
    # -------------------------
    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Live entry for key, or None. Expired entries and backend failures read as misses."""
        k = _norm_key(key)
        if not k:
            return None
        try:
            entry = await self._persistence.get(k)
        except CacheBackendError as exc:
            logger.warning("cache.backend_unavailable op=get key=%s error=%s", k, exc)
            return None
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            logger.debug("cache.expired key=%s", k)
            return None
        return entry

    async def get(self, key: str, default: Any = None) -> Any:
        entry = await self.get_entry(key)
        return entry.value if entry is not None else default

    async def set(
        self,
        key: str,
        value: Any,
        ttl_s: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Write-through store. Returns False (and logs) when the backend refuses."""
        k = _norm_key(key)
        if not k:
            return False
        now = self._clock()
        entry = CacheEntry(
            key=k,
            value=value,
            stored_at=now,
            expires_at=now + self._ttl(ttl_s),
            metadata={
                "fetched_at": datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
                **(metadata or {}),
            },
        )
        try:
            await self._persistence.upsert(entry)
        except CacheBackendError as exc:
            logger.warning("cache.backend_unavailable op=upsert key=%s error=%s", k, exc)
            return False
        return True

    async def get_or_fetch(
        self,
        key: str,
        ttl_s: Optional[float],
        producer: Callable[[], Awaitable[T]],
        *,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> T:
        k = _norm_key(key)
        if not k:
            raise ValueError("cache key must be a non-empty string")

        hit = await self.get_entry(k)
        if hit is not None:
            logger.debug("cache.hit key=%s", k)
            return hit.value

        logger.debug("cache.miss key=%s", k)
        if not self.single_flight:
            return await self._fetch_and_store(k, ttl_s, producer, metadata)

        task = self._inflight.get(k)
        if task is None:
            task = asyncio.ensure_future(self._fetch_and_store(k, ttl_s, producer, metadata))
            self._inflight[k] = task

            def _forget(done: "asyncio.Future[Any]", k: str = k) -> None:
                if self._inflight.get(k) is done:
                    del self._inflight[k]

            task.add_done_callback(_forget)
        else:
            logger.debug("cache.join_inflight key=%s", k)
        # one waiter giving up must not cancel the shared call
        return await asyncio.shield(task)

    async def _fetch_and_store(
        self,
        key: str,
        ttl_s: Optional[float],
        producer: Callable[[], Awaitable[T]],
        metadata: Optional[Dict[str, Any]],
    ) -> T:
        value = await producer()
        if self._should_cache(value):
            await self.set(key, value, ttl_s=ttl_s, metadata=metadata)
        return value

    # -------------------------
    # Invalidation / maintenance
    # -------------------------
    async def invalidate(self, key: str) -> bool:
        k = _norm_key(key)
        if not k:
            return False
        removed = await self._persistence.delete_by_key(k)
        logger.info("cache.invalidate key=%s removed=%s", k, removed)
        return removed > 0

    async def invalidate_by_prefix(self, prefix: str) -> int:
        p = _norm_key(prefix)
        if not p:
            raise ValueError("prefix must be a non-empty string")
        removed = await self._persistence.delete_by_prefix(p)
        logger.info("cache.invalidate_prefix prefix=%s removed=%d", p, removed)
        return removed

    async def clear_expired(self) -> int:
        removed = await self._persistence.delete_expired(self._clock())
        logger.info("cache.clear_expired removed=%d", removed)
        return removed

    async def close(self) -> None:
        await self._persistence.close()

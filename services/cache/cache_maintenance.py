# services/cache/cache_maintenance.py
"""
Operator-triggered cache maintenance (admin routes, scheduled sweep).
Not on the request hot path, so backend failures propagate to the caller.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

from services.fetching.errors import CacheBackendError

from .cache_store import CacheStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MaintenanceResult:
    action: str
    affected: int
    elapsed_ms: int
    prefix: Optional[str] = None

    def to_dict(self):
        out = {"action": self.action, "affected": self.affected, "elapsedMs": self.elapsed_ms}
        if self.prefix is not None:
            out["prefix"] = self.prefix
        return out


async def clear_expired_cache(store: CacheStore) -> MaintenanceResult:
    start = time.perf_counter()
    removed = await store.clear_expired()
    return MaintenanceResult(
        action="clear-expired-cache",
        affected=removed,
        elapsed_ms=int((time.perf_counter() - start) * 1000),
    )


async def invalidate_cache_prefix(store: CacheStore, prefix: str) -> MaintenanceResult:
    start = time.perf_counter()
    removed = await store.invalidate_by_prefix(prefix)
    return MaintenanceResult(
        action="invalidate-by-prefix",
        affected=removed,
        elapsed_ms=int((time.perf_counter() - start) * 1000),
        prefix=prefix.strip(),
    )


class CacheSweeper:
    """Periodic clear_expired in the background. interval_s <= 0 disables it."""

    def __init__(self, store: CacheStore, interval_s: float) -> None:
        self._store = store
        self.interval_s = float(interval_s)
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.interval_s <= 0 or self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="cache-sweeper")
        logger.info("cache.sweeper.started interval_s=%.0f", self.interval_s)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("cache.sweeper.stopped")

    async def sweep_once(self) -> int:
        try:
            result = await clear_expired_cache(self._store)
        except CacheBackendError as exc:
            logger.warning("cache.sweeper.failed error=%s", exc)
            return 0
        return result.affected

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            await self.sweep_once()

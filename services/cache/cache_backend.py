# services/cache/cache_backend.py
"""
Cache persistence back ends.

Every back end satisfies the same small contract (CachePersistence) so the
CacheStore never knows whether entries live in process memory, Redis or the
`api_cache` SQL table. Back ends are constructed explicitly at startup and
injected; there is no module-level client.

Back ends raise CacheBackendError for anything that goes wrong underneath.
"""
from __future__ import annotations

import copy
import json
import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from services.fetching.errors import CacheBackendError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    stored_at: float  # epoch seconds
    expires_at: float  # epoch seconds
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_json(self) -> str:
        return json.dumps(
            {
                "key": self.key,
                "value": self.value,
                "stored_at": self.stored_at,
                "expires_at": self.expires_at,
                "metadata": self.metadata,
            },
            separators=(",", ":"),
        )

    @staticmethod
    def from_json(raw: str) -> "CacheEntry":
        d = json.loads(raw)
        return CacheEntry(
            key=d["key"],
            value=d.get("value"),
            stored_at=float(d["stored_at"]),
            expires_at=float(d["expires_at"]),
            metadata=d.get("metadata") or {},
        )


class CachePersistence(Protocol):
    async def get(self, key: str) -> Optional[CacheEntry]: ...

    async def upsert(self, entry: CacheEntry) -> None: ...

    async def delete_by_key(self, key: str) -> int: ...

    async def delete_by_prefix(self, prefix: str) -> int: ...

    async def delete_expired(self, now: float) -> int: ...

    async def close(self) -> None: ...


# -------------------------
# Memory
# -------------------------
class MemoryCachePersistence:
    """
    Process-local store. Default back end and the one tests run against.
    Entries are deep-copied in and out so callers never share state with the
    cache, same as the serializing SQL and Redis back ends.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
        return copy.deepcopy(entry) if entry is not None else None

    async def upsert(self, entry: CacheEntry) -> None:
        stored = copy.deepcopy(entry)
        with self._lock:
            self._entries[entry.key] = stored

    async def delete_by_key(self, key: str) -> int:
        with self._lock:
            return 1 if self._entries.pop(key, None) is not None else 0

    async def delete_by_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    async def delete_expired(self, now: float) -> int:
        with self._lock:
            doomed = [k for k, e in self._entries.items() if e.is_expired(now)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)

    async def close(self) -> None:
        return None


# -------------------------
# Redis
# -------------------------
_GLOB_SPECIAL = str.maketrans({c: f"\\{c}" for c in "*?[]\\"})


class RedisCachePersistence:
    """
    Shared cache across instances. Prefix isolates app + env, e.g.
      research:prod:
      research:preview:
    Redis expires keys on its own; delete_expired only sweeps stragglers.
    """

    SCAN_BATCH = 500

    def __init__(self, client: Any, prefix: str = "research:") -> None:
        self._r = client
        self._prefix = prefix or ""

    @classmethod
    def from_url(cls, url: str, prefix: str = "research:") -> "RedisCachePersistence":
        client = redis_async.from_url(
            url,
            decode_responses=True,  # returns str for GET/MGET
            socket_timeout=2,
            socket_connect_timeout=2,
        )
        return cls(client, prefix=prefix)

    def _k(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _match(self, prefix: str) -> str:
        return f"{self._prefix}{prefix}".translate(_GLOB_SPECIAL) + "*"

    async def get(self, key: str) -> Optional[CacheEntry]:
        try:
            raw = await self._r.get(self._k(key))
        except RedisError as exc:
            raise CacheBackendError(f"redis get failed: {exc}") from exc
        if raw is None:
            return None
        try:
            return CacheEntry.from_json(raw)
        except (ValueError, KeyError, TypeError):
            logger.warning("cache.redis.corrupt_entry key=%s", key)
            return None

    async def upsert(self, entry: CacheEntry) -> None:
        ttl = max(1, math.ceil(entry.expires_at - entry.stored_at))
        try:
            payload = entry.to_json()
        except (TypeError, ValueError) as exc:
            raise CacheBackendError(f"value for {entry.key} is not JSON-serializable") from exc
        try:
            await self._r.set(self._k(entry.key), payload, ex=ttl)
        except RedisError as exc:
            raise CacheBackendError(f"redis set failed: {exc}") from exc

    async def delete_by_key(self, key: str) -> int:
        try:
            return int(await self._r.delete(self._k(key)))
        except RedisError as exc:
            raise CacheBackendError(f"redis delete failed: {exc}") from exc

    async def _scan(self, match: str) -> List[str]:
        return [k async for k in self._r.scan_iter(match=match, count=self.SCAN_BATCH)]

    async def delete_by_prefix(self, prefix: str) -> int:
        try:
            keys = await self._scan(self._match(prefix))
            removed = 0
            for i in range(0, len(keys), self.SCAN_BATCH):
                removed += int(await self._r.delete(*keys[i : i + self.SCAN_BATCH]))
            return removed
        except RedisError as exc:
            raise CacheBackendError(f"redis prefix delete failed: {exc}") from exc

    async def delete_expired(self, now: float) -> int:
        try:
            keys = await self._scan(self._match(""))
            removed = 0
            for i in range(0, len(keys), self.SCAN_BATCH):
                batch = keys[i : i + self.SCAN_BATCH]
                raws = await self._r.mget(batch)
                doomed = []
                for k, raw in zip(batch, raws):
                    if raw is None:
                        continue
                    try:
                        if CacheEntry.from_json(raw).is_expired(now):
                            doomed.append(k)
                    except (ValueError, KeyError, TypeError):
                        doomed.append(k)
                if doomed:
                    removed += int(await self._r.delete(*doomed))
            return removed
        except RedisError as exc:
            raise CacheBackendError(f"redis sweep failed: {exc}") from exc

    async def close(self) -> None:
        await self._r.aclose()

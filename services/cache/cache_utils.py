# services/cache/cache_utils.py
from __future__ import annotations

from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar, cast

from config.settings import Settings
from database import create_db_engine, create_session_factory, init_db

from .cache_backend import CachePersistence, MemoryCachePersistence, RedisCachePersistence
from .cache_store import CacheStore

T = TypeVar("T")


def cache_key(category: str, subject: str) -> str:
    """
    Canonical key: "<category>:<SUBJECT>", e.g. "dcf:AAPL", "profile:MSFT".
    Categories stay lowercase so invalidate_by_prefix("dcf:") hits one category.
    """
    cat = (category or "").strip().lower()
    sub = (subject or "").strip().upper()
    return f"{cat}:{sub}"


def cacheable(
    store: CacheStore,
    *,
    ttl: Optional[float],
    key_fn: Callable[..., str],
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Decorator for read-only async functions.

    - ttl: entry lifetime in seconds (None -> store default)
    - key_fn: key_fn(*args, **kwargs) -> str; a blank key bypasses the cache
    """
    def deco(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(fn)
        async def awrapper(*args: Any, **kwargs: Any) -> T:
            key = (key_fn(*args, **kwargs) or "").strip()
            if not key:
                return await fn(*args, **kwargs)
            return cast(T, await store.get_or_fetch(key, ttl, lambda: fn(*args, **kwargs)))

        return awrapper

    return deco


def build_cache_persistence(settings: Settings) -> CachePersistence:
    """Pick the back end named by CACHE_BACKEND. Called once at startup."""
    backend = settings.cache_backend
    if backend == "memory":
        return MemoryCachePersistence()
    if backend == "redis":
        if not settings.redis_url:
            raise RuntimeError("CACHE_BACKEND=redis requires REDIS_URL")
        return RedisCachePersistence.from_url(settings.redis_url, prefix=settings.redis_prefix)
    if backend == "sql":
        from .sql_cache_backend import SqlCachePersistence

        engine = create_db_engine(settings.database_url)
        init_db(engine)
        return SqlCachePersistence(create_session_factory(engine))
    raise RuntimeError(f"Unknown CACHE_BACKEND: {backend}")


def build_cache_store(settings: Settings, persistence: Optional[CachePersistence] = None) -> CacheStore:
    return CacheStore(
        persistence or build_cache_persistence(settings),
        default_ttl_s=settings.cache_default_ttl_s,
        single_flight=settings.cache_single_flight,
    )

# services/cache/sql_cache_backend.py
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from models.api_cache import ApiCacheEntry
from services.fetching.errors import CacheBackendError

from .cache_backend import CacheEntry

logger = logging.getLogger(__name__)


def _to_dt(epoch: float) -> datetime:
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


def _to_epoch(dt: datetime) -> float:
    # SQLite hands back naive datetimes; everything is written as UTC.
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


class SqlCachePersistence:
    """
    `api_cache` table back end (cache_key unique, data, expires_at, metadata).
    SQLAlchemy sessions are blocking, so each op runs in a worker thread.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except SQLAlchemyError as exc:
            raise CacheBackendError(f"api_cache {fn.__name__.strip('_')} failed: {exc}") from exc

    # -------------------------
    # sync bodies
    # -------------------------
    def _get(self, key: str) -> Optional[CacheEntry]:
        with self._session_factory() as db:
            row = db.execute(select(ApiCacheEntry).where(ApiCacheEntry.cache_key == key)).scalar_one_or_none()
            if row is None:
                return None
            entry = CacheEntry(
                key=row.cache_key,
                value=row.data,
                stored_at=_to_epoch(row.created_at),
                expires_at=_to_epoch(row.expires_at),
                metadata=dict(row.meta or {}),
            )
            db.execute(
                update(ApiCacheEntry)
                .where(ApiCacheEntry.id == row.id)
                .values(
                    access_count=ApiCacheEntry.access_count + 1,
                    last_accessed=datetime.now(timezone.utc),
                )
            )
            db.commit()
            return entry

    def _upsert(self, entry: CacheEntry) -> None:
        values = {
            "data": entry.value,
            "created_at": _to_dt(entry.stored_at),
            "expires_at": _to_dt(entry.expires_at),
            "meta": entry.metadata or None,
        }
        with self._session_factory() as db:
            row = db.execute(select(ApiCacheEntry).where(ApiCacheEntry.cache_key == entry.key)).scalar_one_or_none()
            if row is None:
                db.add(ApiCacheEntry(cache_key=entry.key, **values))
                try:
                    db.commit()
                    return
                except IntegrityError:
                    # lost an insert race on cache_key; fall through to update
                    db.rollback()
            db.execute(
                update(ApiCacheEntry)
                .where(ApiCacheEntry.cache_key == entry.key)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            db.commit()

    def _delete_by_key(self, key: str) -> int:
        with self._session_factory() as db:
            res = db.execute(
                delete(ApiCacheEntry)
                .where(ApiCacheEntry.cache_key == key)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return res.rowcount or 0

    def _delete_by_prefix(self, prefix: str) -> int:
        with self._session_factory() as db:
            res = db.execute(
                delete(ApiCacheEntry)
                .where(ApiCacheEntry.cache_key.startswith(prefix, autoescape=True))
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return res.rowcount or 0

    def _delete_expired(self, now: float) -> int:
        with self._session_factory() as db:
            res = db.execute(
                delete(ApiCacheEntry)
                .where(ApiCacheEntry.expires_at <= _to_dt(now))
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return res.rowcount or 0

    # -------------------------
    # CachePersistence
    # -------------------------
    async def get(self, key: str) -> Optional[CacheEntry]:
        return await self._run(self._get, key)

    async def upsert(self, entry: CacheEntry) -> None:
        try:
            await self._run(self._upsert, entry)
        except (TypeError, ValueError) as exc:
            raise CacheBackendError(f"value for {entry.key} is not JSON-serializable") from exc

    async def delete_by_key(self, key: str) -> int:
        return await self._run(self._delete_by_key, key)

    async def delete_by_prefix(self, prefix: str) -> int:
        return await self._run(self._delete_by_prefix, prefix)

    async def delete_expired(self, now: float) -> int:
        return await self._run(self._delete_expired, now)

    async def close(self) -> None:
        bind = self._session_factory.kw.get("bind")
        if bind is not None:
            await asyncio.to_thread(bind.dispose)

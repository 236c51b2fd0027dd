from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel

from services.cache.cache_maintenance import clear_expired_cache, invalidate_cache_prefix
from services.cache.cache_store import CacheStore
from services.fetching.errors import CacheBackendError

logger = logging.getLogger(__name__)

router = APIRouter()


class InvalidateRequest(BaseModel):
    prefix: str


def require_admin_token(request: Request, x_admin_token: Optional[str] = Header(None)) -> None:
    expected = request.app.state.settings.admin_api_token
    if not expected:
        raise HTTPException(status_code=403, detail="Admin API is disabled")
    if not x_admin_token or not secrets.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=401, detail="Invalid admin token")


def get_cache_store(request: Request) -> CacheStore:
    return request.app.state.cache_store


@router.post("/clear-expired", dependencies=[Depends(require_admin_token)])
async def clear_expired(store: CacheStore = Depends(get_cache_store)):
    try:
        result = await clear_expired_cache(store)
    except CacheBackendError as exc:
        logger.error("admin_cache_clear_expired_failed error=%s", exc)
        raise HTTPException(status_code=503, detail="Cache backend unavailable")
    logger.info("admin_cache_clear_expired affected=%d", result.affected)
    return result.to_dict()


@router.post("/invalidate", dependencies=[Depends(require_admin_token)])
async def invalidate_prefix(payload: InvalidateRequest, store: CacheStore = Depends(get_cache_store)):
    try:
        result = await invalidate_cache_prefix(store, payload.prefix)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except CacheBackendError as exc:
        logger.error("admin_cache_invalidate_failed prefix=%s error=%s", payload.prefix, exc)
        raise HTTPException(status_code=503, detail="Cache backend unavailable")
    logger.info("admin_cache_invalidate prefix=%s affected=%d", result.prefix, result.affected)
    return result.to_dict()

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from middleware.rate_limit import limiter
from services.fetching.errors import CacheBackendError, CoreDataUnavailable
from services.research.report_data_service import ReportDataService, normalize_symbol

logger = logging.getLogger(__name__)

router = APIRouter()


class PrefetchRequest(BaseModel):
    symbols: List[str] = Field(default_factory=list, max_length=50)


def get_report_service(request: Request) -> ReportDataService:
    return request.app.state.report_service


@router.post("/prefetch")
@limiter.limit("10/minute")
async def prefetch_symbols(
    request: Request,
    payload: PrefetchRequest,
    service: ReportDataService = Depends(get_report_service),
):
    warmed = await service.prefetch(payload.symbols)
    return {"requested": len(payload.symbols), "warmed": warmed}


@router.get("/{symbol}")
@limiter.limit("30/minute")
async def get_research_data(
    request: Request,
    symbol: str,
    x_session_id: Optional[str] = Header(None),
    service: ReportDataService = Depends(get_report_service),
):
    """Aggregate dashboard data; degraded optional items come back with status=error."""
    try:
        result = await service.fetch_report_data(symbol, x_session_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except CoreDataUnavailable as exc:
        return JSONResponse(
            status_code=502,
            content={
                "detail": str(exc),
                "retryable": exc.retryable,
                "failures": {k: v.model_dump() for k, v in exc.failures.items()},
            },
        )
    return result.to_dict()


@router.get("/{symbol}/status")
@limiter.limit("60/minute")
async def get_research_status(
    request: Request,
    symbol: str,
    x_session_id: Optional[str] = Header(None),
    service: ReportDataService = Depends(get_report_service),
):
    try:
        sym = normalize_symbol(symbol)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    snap = service.status(x_session_id)
    if snap.subject_key != sym:
        raise HTTPException(status_code=404, detail=f"No run for {sym} in this session")
    return {
        "generation": snap.generation,
        "subject": snap.subject_key,
        "outcome": snap.outcome.value,
        "settled": snap.settled,
        "status": {k: v.value for k, v in snap.status_by_item.items()},
        "errors": {k: v.model_dump() for k, v in snap.error_by_item.items()},
        "coreFailures": {k: v.model_dump() for k, v in snap.core_failures.items()},
    }


@router.delete("/{symbol}/cache")
@limiter.limit("10/minute")
async def refresh_research_cache(
    request: Request,
    symbol: str,
    service: ReportDataService = Depends(get_report_service),
):
    try:
        removed = await service.refresh_symbol(symbol)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except CacheBackendError as exc:
        logger.warning("research_cache_refresh_failed symbol=%s error=%s", symbol, exc)
        raise HTTPException(status_code=503, detail="Cache backend unavailable")
    return {"symbol": symbol.strip().upper(), "removed": removed}

# main.py
import logging
import os
from contextlib import asynccontextmanager
from typing import Mapping, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from config.logging_config import configure_logging
from config.settings import Settings
from middleware.rate_limit import limiter
from middleware.request_logging import RequestLoggingMiddleware
from routers.admin_cache_routes import router as admin_cache_router
from routers.research_routes import router as research_router
from services.cache.cache_backend import CachePersistence
from services.cache.cache_maintenance import CacheSweeper
from services.cache.cache_utils import build_cache_store
from services.fetching.retrying_fetcher import RetryingFetcher
from services.research.report_data_service import ReportDataService
from services.research.upstream_client import SymbolFetcher, UpstreamClient

logger = logging.getLogger(__name__)

DEFAULT_ORIGINS = "http://localhost:3000"


def create_app(
    settings: Optional[Settings] = None,
    *,
    persistence: Optional[CachePersistence] = None,
    fetchers: Optional[Mapping[str, SymbolFetcher]] = None,
) -> FastAPI:
    """
    Build the app. persistence/fetchers override what settings would pick
    (tests inject in-memory persistence and fake upstream fetchers).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        cfg = settings or Settings.from_env()
        store = build_cache_store(cfg, persistence)

        upstream = None
        if fetchers is None:
            upstream = UpstreamClient.from_settings(cfg, RetryingFetcher.from_settings(cfg))
            item_fetchers = upstream.fetchers()
        else:
            item_fetchers = fetchers

        sweeper = CacheSweeper(store, cfg.cache_sweep_interval_s)
        sweeper.start()

        app.state.settings = cfg
        app.state.cache_store = store
        app.state.report_service = ReportDataService(store, item_fetchers)
        app.state.sweeper = sweeper
        logger.info(
            "app.startup cache_backend=%s single_flight=%s sweep_interval_s=%.0f",
            cfg.cache_backend, cfg.cache_single_flight, cfg.cache_sweep_interval_s,
        )
        try:
            yield
        finally:
            await sweeper.stop()
            if upstream is not None:
                await upstream.aclose()
            await store.close()
            logger.info("app.shutdown")

    app = FastAPI(title="Research Data API", lifespan=lifespan)

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    origins = [o.strip() for o in os.getenv("CORS_ORIGINS", DEFAULT_ORIGINS).split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # Include routers
    app.include_router(research_router, prefix="/api/research")
    app.include_router(admin_cache_router, prefix="/api/admin/cache")

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()

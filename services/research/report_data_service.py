# services/research/report_data_service.py
"""
Assembles the research dashboard dataset for one ticker.

profile + quote are required (nothing else is meaningful without them); the
twelve statement/ratio/news/peer/transcript/filing items are optional and
fall back to an empty default. Each item is cached under "<item>:<SYMBOL>".
"""
from __future__ import annotations

import asyncio
import copy
import logging
import re
import threading
from collections import OrderedDict
from typing import Any, Dict, Iterable, Mapping, Optional

from services.cache.cache_store import CacheStore
from services.cache.cache_utils import cache_key, cacheable
from services.orchestration.fetch_orchestrator import FetchOrchestrator, Producer
from services.orchestration.types import AggregateResult, RunSnapshot

from .upstream_client import SymbolFetcher

logger = logging.getLogger(__name__)

REQUIRED_ITEMS = ("profile", "quote")

OPTIONAL_DEFAULTS: Dict[str, Any] = {
    "income": [],
    "income_ttm": None,
    "balance": [],
    "balance_ttm": None,
    "cashflow": [],
    "cashflow_ttm": None,
    "ratios": [],
    "ratios_ttm": None,
    "news": [],
    "peers": [],
    "transcripts": [],
    "filings": [],
}

# Cache TTLs
TTL_PROFILE_SEC = 24 * 3600
TTL_QUOTE_SEC = 5 * 60
TTL_FINANCIALS_SEC = 24 * 3600
TTL_NEWS_SEC = 30 * 60
TTL_DEFAULT_SEC = 15 * 60

ITEM_TTL_SEC: Dict[str, float] = {
    "profile": TTL_PROFILE_SEC,
    "quote": TTL_QUOTE_SEC,
    "income": TTL_FINANCIALS_SEC,
    "income_ttm": TTL_FINANCIALS_SEC,
    "balance": TTL_FINANCIALS_SEC,
    "balance_ttm": TTL_FINANCIALS_SEC,
    "cashflow": TTL_FINANCIALS_SEC,
    "cashflow_ttm": TTL_FINANCIALS_SEC,
    "ratios": TTL_FINANCIALS_SEC,
    "ratios_ttm": TTL_FINANCIALS_SEC,
    "news": TTL_NEWS_SEC,
}

MAX_SESSIONS = 1000
DEFAULT_SESSION = "default"

_SYMBOL_RE = re.compile(r"^[A-Z0-9][A-Z0-9.\-^=]{0,14}$")


def normalize_symbol(symbol: str) -> str:
    sym = (symbol or "").strip().upper()
    if not _SYMBOL_RE.match(sym):
        raise ValueError(f"invalid symbol: {symbol!r}")
    return sym


class ReportDataService:
    def __init__(
        self,
        cache: CacheStore,
        fetchers: Mapping[str, SymbolFetcher],
        *,
        ttl_overrides: Optional[Mapping[str, float]] = None,
        max_sessions: int = MAX_SESSIONS,
    ) -> None:
        missing = [i for i in REQUIRED_ITEMS if i not in fetchers]
        if missing:
            raise ValueError(f"missing fetchers for required items: {missing}")
        self._cache = cache
        self._fetchers = dict(fetchers)
        self._ttls = {**ITEM_TTL_SEC, **(ttl_overrides or {})}
        # item -> fetcher read through the cache under "<item>:<SYMBOL>"
        self._cached_fetchers = {
            item: cacheable(cache, ttl=self.ttl_for(item), key_fn=self._key_fn(item))(fetcher)
            for item, fetcher in self._fetchers.items()
        }
        self._max_sessions = max(1, int(max_sessions))
        self._sessions: "OrderedDict[str, FetchOrchestrator]" = OrderedDict()
        self._sessions_lock = threading.Lock()

    def ttl_for(self, item: str) -> float:
        return self._ttls.get(item, TTL_DEFAULT_SEC)

    def orchestrator_for(self, session_id: Optional[str]) -> FetchOrchestrator:
        """One orchestrator (and generation counter) per session, LRU-capped."""
        sid = (session_id or "").strip() or DEFAULT_SESSION
        with self._sessions_lock:
            orch = self._sessions.get(sid)
            if orch is None:
                orch = FetchOrchestrator()
                self._sessions[sid] = orch
                while len(self._sessions) > self._max_sessions:
                    self._sessions.popitem(last=False)
            else:
                self._sessions.move_to_end(sid)
            return orch

    def status(self, session_id: Optional[str]) -> RunSnapshot:
        """Read-only: an unknown session gets an empty snapshot and is not registered."""
        sid = (session_id or "").strip() or DEFAULT_SESSION
        with self._sessions_lock:
            orch = self._sessions.get(sid)
        return orch.snapshot() if orch is not None else RunSnapshot()

    @staticmethod
    def _key_fn(item: str):
        return lambda symbol: cache_key(item, symbol)

    def _producer(self, item: str, symbol: str) -> Producer:
        fetcher = self._cached_fetchers[item]

        async def _produce() -> Any:
            return await fetcher(symbol)

        return _produce

    async def fetch_report_data(self, symbol: str, session_id: Optional[str] = None) -> AggregateResult:
        sym = normalize_symbol(symbol)
        required = {item: self._producer(item, sym) for item in REQUIRED_ITEMS}
        optional = {item: self._producer(item, sym) for item in OPTIONAL_DEFAULTS if item in self._fetchers}
        defaults = copy.deepcopy(OPTIONAL_DEFAULTS)
        return await self.orchestrator_for(session_id).run(sym, required, optional, defaults)

    async def prefetch(self, symbols: Iterable[str]) -> int:
        """Warm profile+quote for several symbols (e.g. a watchlist). Returns how many fully warmed."""
        clean = []
        for s in symbols:
            try:
                clean.append(normalize_symbol(s))
            except ValueError:
                continue
        if not clean:
            return 0

        async def warm(sym: str) -> bool:
            await asyncio.gather(*(self._producer(item, sym)() for item in REQUIRED_ITEMS))
            return True

        results = await asyncio.gather(*(warm(s) for s in clean), return_exceptions=True)
        ok = sum(1 for r in results if r is True)
        logger.info("report_data.prefetch symbols=%d warmed=%d", len(clean), ok)
        return ok

    async def refresh_symbol(self, symbol: str) -> int:
        """Drop every cached item for one symbol so the next run refetches."""
        sym = normalize_symbol(symbol)
        removed = 0
        for item in self._fetchers:
            if await self._cache.invalidate(cache_key(item, sym)):
                removed += 1
        return removed

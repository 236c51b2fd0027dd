# services/research/upstream_client.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional
from urllib.parse import quote

import httpx

from config.settings import Settings
from services.fetching.http_fetch import fetch_json
from services.fetching.retrying_fetcher import RetryingFetcher

SymbolFetcher = Callable[[str], Awaitable[Any]]


@dataclass(frozen=True)
class Endpoint:
    path: str  # "{symbol}" is substituted
    params: Dict[str, Any] = field(default_factory=dict)


# Payloads are passed through untouched; only the paths live here.
DEFAULT_ENDPOINTS: Dict[str, Endpoint] = {
    "profile": Endpoint("/profile/{symbol}"),
    "quote": Endpoint("/quote/{symbol}"),
    "income": Endpoint("/income-statement/{symbol}", {"limit": 5}),
    "income_ttm": Endpoint("/income-statement-ttm/{symbol}"),
    "balance": Endpoint("/balance-sheet-statement/{symbol}", {"limit": 5}),
    "balance_ttm": Endpoint("/balance-sheet-statement-ttm/{symbol}"),
    "cashflow": Endpoint("/cash-flow-statement/{symbol}", {"limit": 5}),
    "cashflow_ttm": Endpoint("/cash-flow-statement-ttm/{symbol}"),
    "ratios": Endpoint("/ratios/{symbol}", {"limit": 5}),
    "ratios_ttm": Endpoint("/ratios-ttm/{symbol}"),
    "news": Endpoint("/stock_news", {"tickers": "{symbol}", "limit": 20}),
    "peers": Endpoint("/stock_peers", {"symbol": "{symbol}"}),
    "transcripts": Endpoint("/earning_call_transcript/{symbol}"),
    "filings": Endpoint("/sec_filings/{symbol}", {"limit": 20}),
}


class UpstreamClient:
    """
    Thin async client for the financial-data REST provider.
    Every call goes through the RetryingFetcher; 4xx surfaces as ClientError.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        fetcher: RetryingFetcher,
        *,
        timeout_s: float = 10.0,
        endpoints: Optional[Mapping[str, Endpoint]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self._api_key = api_key
        self._fetcher = fetcher
        self._endpoints = dict(endpoints or DEFAULT_ENDPOINTS)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s, connect=2.0),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )

    @classmethod
    def from_settings(cls, settings: Settings, fetcher: RetryingFetcher, **kwargs: Any) -> "UpstreamClient":
        return cls(
            settings.upstream_base_url,
            settings.upstream_api_key,
            fetcher,
            timeout_s=settings.upstream_timeout_s,
            **kwargs,
        )

    async def fetch(self, item: str, symbol: str) -> Any:
        ep = self._endpoints.get(item)
        if ep is None:
            raise KeyError(f"no upstream endpoint configured for {item}")
        sym = quote((symbol or "").strip().upper(), safe="")
        url = self.base_url + ep.path.format(symbol=sym)
        params = {
            k: (v.format(symbol=sym) if isinstance(v, str) else v)
            for k, v in ep.params.items()
        }
        if self._api_key:
            params["apikey"] = self._api_key
        return await fetch_json(self._client, url, fetcher=self._fetcher, params=params)

    def fetchers(self) -> Dict[str, SymbolFetcher]:
        """item -> async fn(symbol), the shape ReportDataService consumes."""
        def make(item: str) -> SymbolFetcher:
            async def _fetch(symbol: str) -> Any:
                return await self.fetch(item, symbol)
            return _fetch

        return {item: make(item) for item in self._endpoints}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

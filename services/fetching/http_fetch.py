# services/fetching/http_fetch.py
from __future__ import annotations

import re
from typing import Any, Dict, Optional

import httpx

from .errors import ClientError, FetchError
from .retrying_fetcher import RetryingFetcher

_SECRET_PARAM = re.compile(r"(apikey|token|api_key)=[^&]+", re.IGNORECASE)


def redact_url(url: str) -> str:
    return _SECRET_PARAM.sub(r"\1=***", url or "")


async def fetch_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    fetcher: RetryingFetcher,
    params: Optional[Dict[str, Any]] = None,
) -> Any:
    """
    GET `url` through the retrying fetcher and decode the JSON body.
    A 4xx comes back from the fetcher unretried; here it becomes a ClientError.
    """
    resp = await fetcher.execute(lambda: client.get(url, params=params))
    if resp.status_code >= 400:
        raise ClientError(
            f"upstream returned {resp.status_code} for {redact_url(url)}",
            status_code=resp.status_code,
            response=resp,
        )
    try:
        return resp.json()
    except ValueError as exc:
        raise FetchError(f"invalid JSON from {redact_url(url)}") from exc

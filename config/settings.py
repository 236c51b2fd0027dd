# config/settings.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    # Retry / backoff
    retry_max_attempts: int = 3
    retry_base_delay_s: float = 1.0
    fetch_attempt_timeout_s: float = 30.0

    # Cache
    cache_backend: str = "memory"  # memory | sql | redis
    cache_default_ttl_s: float = 3600.0
    cache_single_flight: bool = False
    cache_sweep_interval_s: float = 900.0  # 0 disables the sweeper

    database_url: Optional[str] = None
    redis_url: Optional[str] = None
    redis_prefix: str = "research:"

    # Upstream provider (payloads stay opaque)
    upstream_base_url: str = "https://financialmodelingprep.com/api/v3"
    upstream_api_key: str = ""
    upstream_timeout_s: float = 10.0

    # Ops
    admin_api_token: str = ""

    @staticmethod
    def from_env() -> "Settings":
        return Settings(
            retry_max_attempts=max(1, int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))),
            retry_base_delay_s=float(os.getenv("RETRY_BASE_DELAY_SEC", "1.0")),
            fetch_attempt_timeout_s=float(os.getenv("FETCH_ATTEMPT_TIMEOUT_SEC", "30")),

            cache_backend=(os.getenv("CACHE_BACKEND") or "memory").strip().lower(),
            cache_default_ttl_s=float(os.getenv("CACHE_DEFAULT_TTL_SEC", "3600")),
            cache_single_flight=_env_bool("CACHE_SINGLE_FLIGHT"),
            cache_sweep_interval_s=float(os.getenv("CACHE_SWEEP_INTERVAL_SEC", "900")),

            database_url=os.getenv("DATABASE_URL") or None,
            redis_url=os.getenv("REDIS_URL") or None,
            redis_prefix=os.getenv("REDIS_PREFIX", "research:"),

            upstream_base_url=os.getenv(
                "UPSTREAM_BASE_URL", "https://financialmodelingprep.com/api/v3"
            ).rstrip("/"),
            upstream_api_key=os.getenv("UPSTREAM_API_KEY", ""),
            upstream_timeout_s=float(os.getenv("UPSTREAM_TIMEOUT_SEC", "10")),

            admin_api_token=os.getenv("ADMIN_API_TOKEN", ""),
        )

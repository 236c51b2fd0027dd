# middleware/rate_limit.py
"""
Rate limiting configuration using slowapi.

Usage in route files:
    from middleware.rate_limit import limiter

    @router.get("/expensive")
    @limiter.limit("5/minute")
    async def my_endpoint(request: Request):
        ...
"""
import logging
import os

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

SESSION_HEADER = "X-Session-Id"
MAX_SESSION_ID_LEN = 128


def _get_rate_limit_key(request: Request) -> str:
    """
    Identify the caller for rate-limiting.

    A dashboard session (X-Session-Id) gets its own bucket so tabs behind one
    NAT don't starve each other; anything else is limited per client IP.
    """
    session_id = (request.headers.get(SESSION_HEADER) or "").strip()
    if session_id and len(session_id) <= MAX_SESSION_ID_LEN:
        return f"session:{session_id}"
    return get_remote_address(request)


# Env-overridable so you can tune per-environment without redeploying.
DEFAULT_RATE_LIMIT = os.getenv("RATE_LIMIT_DEFAULT", "60/minute")

limiter = Limiter(
    key_func=_get_rate_limit_key,
    default_limits=[DEFAULT_RATE_LIMIT],
    storage_uri=os.getenv("RATE_LIMIT_STORAGE_URI", "memory://"),
    strategy="fixed-window",
)

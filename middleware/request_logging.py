"""
Request logging middleware. Logs method, path, status, duration and whether a
dashboard session header was present. Never logs headers, body, or query
params (the upstream API key and session ids stay out of the logs).
"""
import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

RESPONSE_TIME_HEADER = "X-Response-Time-Ms"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log each request once it finishes; level follows the status class."""

    async def dispatch(self, request: Request, call_next) -> Response:
        method = request.method
        path = request.scope.get("path", "")
        has_session = bool(request.headers.get("X-Session-Id"))
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.exception(
                "request_failed method=%s path=%s duration_ms=%.1f", method, path, duration_ms,
            )
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        status = response.status_code
        response.headers[RESPONSE_TIME_HEADER] = f"{duration_ms:.1f}"

        if status >= 500:
            level = logging.ERROR
        elif status >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(
            level,
            "request_finished method=%s path=%s status=%s session=%s duration_ms=%.1f",
            method, path, status, has_session, duration_ms,
        )
        return response

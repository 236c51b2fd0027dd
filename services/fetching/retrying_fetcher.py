# services/fetching/retrying_fetcher.py
"""
Bounded retry with exponential backoff for one async upstream call.

- 2xx (or any non-HTTP result) returns immediately.
- 4xx-like *results* return immediately, unretried; the caller inspects them.
- 5xx-like results, raised network errors and other raised exceptions are
  retried: wait base_delay * 2^(attempt-1), up to max_attempts in total.
- ClientError raised by the op is permanent and propagates at once.
- Each attempt is bounded by attempt_timeout_s so a hung socket can't stall a run.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from config.settings import Settings

from .errors import ClientError, FetchError, NetworkError, ServerError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_S = 1.0
DEFAULT_ATTEMPT_TIMEOUT_S = 30.0


@dataclass(frozen=True)
class AttemptEvent:
    attempt: int
    max_attempts: int
    outcome: str  # success | client_error | retry | failed
    delay_s: float = 0.0
    error: Optional[BaseException] = None
    status_code: Optional[int] = None


AttemptHook = Callable[[AttemptEvent], None]


def log_attempt(event: AttemptEvent) -> None:
    """Default telemetry hook: one log line per interesting attempt."""
    if event.outcome == "retry":
        logger.warning(
            "fetch.retry attempt=%s/%s delay_s=%.2f error=%s",
            event.attempt, event.max_attempts, event.delay_s, event.error,
        )
    elif event.outcome == "client_error":
        logger.warning(
            "fetch.client_error attempt=%s/%s status=%s (not retrying)",
            event.attempt, event.max_attempts, event.status_code,
        )
    elif event.outcome == "failed":
        logger.error(
            "fetch.failed attempt=%s/%s error=%s",
            event.attempt, event.max_attempts, event.error,
        )
    elif event.attempt > 1:
        logger.info("fetch.recovered attempt=%s/%s", event.attempt, event.max_attempts)


def is_retryable(exc: BaseException) -> bool:
    # CancelledError and friends are BaseException only; never swallow them.
    if not isinstance(exc, Exception):
        return False
    if isinstance(exc, FetchError):
        return exc.retryable
    return True


def classify_exception(exc: Exception) -> Exception:
    """Map httpx failures onto the fetch error taxonomy; pass others through."""
    if isinstance(exc, FetchError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if 400 <= status < 500:
            return ClientError(f"HTTP {status}", status_code=status, response=exc.response)
        return ServerError(f"HTTP {status}", status_code=status, response=exc.response)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return NetworkError(f"{exc.__class__.__name__}: {exc}")
    return exc


def _status_of(result: Any) -> Optional[int]:
    status = getattr(result, "status_code", None)
    return status if isinstance(status, int) else None


class RetryingFetcher:
    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_s: float = DEFAULT_BASE_DELAY_S,
        attempt_timeout_s: Optional[float] = DEFAULT_ATTEMPT_TIMEOUT_S,
        on_attempt: Optional[AttemptHook] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay_s = max(0.0, float(base_delay_s))
        self.attempt_timeout_s = attempt_timeout_s
        self._on_attempt = on_attempt or log_attempt
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "RetryingFetcher":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay_s=settings.retry_base_delay_s,
            attempt_timeout_s=settings.fetch_attempt_timeout_s,
            **kwargs,
        )

    def _emit(self, event: AttemptEvent) -> None:
        try:
            self._on_attempt(event)
        except Exception:
            logger.exception("fetch.attempt_hook_failed")

    async def execute(
        self,
        op: Callable[[], Awaitable[T]],
        max_attempts: Optional[int] = None,
        base_delay_s: Optional[float] = None,
    ) -> T:
        attempts = max(1, int(max_attempts or self.max_attempts))
        base = self.base_delay_s if base_delay_s is None else max(0.0, float(base_delay_s))

        def _before_sleep(retry_state) -> None:
            outcome = retry_state.outcome
            self._emit(
                AttemptEvent(
                    attempt=retry_state.attempt_number,
                    max_attempts=attempts,
                    outcome="retry",
                    delay_s=retry_state.next_action.sleep if retry_state.next_action else 0.0,
                    error=outcome.exception() if outcome is not None else None,
                )
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=base, exp_base=2, min=0),
            retry=retry_if_exception(is_retryable),
            before_sleep=_before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

        attempt_no = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempt_no = attempt.retry_state.attempt_number
                    result = await self._attempt_once(op)
        except Exception as exc:
            self._emit(
                AttemptEvent(
                    attempt=attempt_no,
                    max_attempts=attempts,
                    outcome="failed",
                    error=exc,
                    status_code=getattr(exc, "status_code", None),
                )
            )
            raise

        status = _status_of(result)
        outcome = "client_error" if status is not None and 400 <= status < 500 else "success"
        self._emit(
            AttemptEvent(attempt=attempt_no, max_attempts=attempts, outcome=outcome, status_code=status)
        )
        return result

    async def _attempt_once(self, op: Callable[[], Awaitable[T]]) -> T:
        try:
            if self.attempt_timeout_s and self.attempt_timeout_s > 0:
                result = await asyncio.wait_for(op(), timeout=self.attempt_timeout_s)
            else:
                result = await op()
        except asyncio.TimeoutError as exc:
            raise NetworkError(f"attempt timed out after {self.attempt_timeout_s}s") from exc
        except Exception as exc:
            classified = classify_exception(exc)
            if classified is exc:
                raise
            raise classified from exc

        status = _status_of(result)
        if status is not None and status >= 500:
            raise ServerError(f"HTTP {status}", status_code=status, response=result)
        return result

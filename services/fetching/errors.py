# services/fetching/errors.py
from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    type: str
    message: str
    retryable: bool = False
    status_code: Optional[int] = None


class FetchError(Exception):
    """Base class for every failure raised by the aggregation layer."""

    retryable: bool = False
    error_type: str = "fetch_error"

    def __init__(self, message: str = "", *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(
            type=self.error_type,
            message=self.message or self.__class__.__name__,
            retryable=self.retryable,
            status_code=self.status_code,
        )


class NetworkError(FetchError):
    """Transport failure or per-attempt timeout. Retryable."""

    retryable = True
    error_type = "network_error"


class ClientError(FetchError):
    """4xx-equivalent. Permanent, never retried."""

    error_type = "client_error"

    def __init__(self, message: str = "", *, status_code: Optional[int] = None, response=None) -> None:
        super().__init__(message, status_code=status_code)
        self.response = response


class ServerError(FetchError):
    """5xx-equivalent. Retryable up to the attempt limit."""

    retryable = True
    error_type = "server_error"

    def __init__(self, message: str = "", *, status_code: Optional[int] = None, response=None) -> None:
        super().__init__(message, status_code=status_code)
        self.response = response


class CacheBackendError(FetchError):
    """The cache persistence layer is unreachable or rejected an operation."""

    error_type = "cache_backend_error"


class OptionalDataUnavailable(FetchError):
    """A non-required item failed; the orchestrator substitutes its default."""

    error_type = "optional_data_unavailable"

    def __init__(self, item: str, cause: BaseException) -> None:
        super().__init__(f"{item}: {cause}")
        self.item = item
        self.cause = cause
        self.retryable = bool(getattr(cause, "retryable", False))
        self.status_code = getattr(cause, "status_code", None)


class CoreDataUnavailable(FetchError):
    """A required item failed. The only error that fails a whole run."""

    retryable = True
    error_type = "core_data_unavailable"

    def __init__(self, subject_key: str, failures: Dict[str, ErrorDetail]) -> None:
        names = ", ".join(sorted(failures)) or "unknown"
        super().__init__(f"Could not fetch core data for {subject_key} ({names})")
        self.subject_key = subject_key
        self.failures = failures


def error_detail_from(exc: BaseException) -> ErrorDetail:
    """Normalize any exception into an ErrorDetail for the status surface."""
    if isinstance(exc, FetchError):
        return exc.to_detail()
    return ErrorDetail(type="producer_error", message=str(exc) or exc.__class__.__name__)

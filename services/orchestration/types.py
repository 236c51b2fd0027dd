from __future__ import annotations

from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field

from services.fetching.errors import ErrorDetail


class FetchStatus(str, Enum):
    """Per-item lifecycle within one run: pending -> loading -> success|empty|error."""
    PENDING = "pending"
    LOADING = "loading"
    SUCCESS = "success"
    EMPTY = "empty"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (FetchStatus.SUCCESS, FetchStatus.EMPTY, FetchStatus.ERROR)


class RunOutcome(str, Enum):
    """Run-level state: idle (no run yet) -> running -> succeeded|failed."""
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RunSnapshot(BaseModel):
    """Read-only view of the committed state of the current run."""
    model_config = ConfigDict(frozen=True)

    generation: int = 0
    subject_key: str = ""
    outcome: RunOutcome = RunOutcome.IDLE
    status_by_item: Dict[str, FetchStatus] = Field(default_factory=dict)
    result_by_item: Dict[str, Any] = Field(default_factory=dict)
    error_by_item: Dict[str, ErrorDetail] = Field(default_factory=dict)
    # required items that failed the run (outcome=failed only)
    core_failures: Dict[str, ErrorDetail] = Field(default_factory=dict)

    @property
    def settled(self) -> bool:
        # a failed run leaves its optional items pending; they will never start
        return self.outcome in (RunOutcome.SUCCEEDED, RunOutcome.FAILED)


class AggregateResult(BaseModel):
    generation: int
    subject_key: str
    values: Dict[str, Any] = Field(default_factory=dict)
    status_by_item: Dict[str, FetchStatus] = Field(default_factory=dict)
    error_by_item: Dict[str, ErrorDetail] = Field(default_factory=dict)
    superseded: bool = False
    elapsed_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generation": self.generation,
            "subject": self.subject_key,
            "data": self.values,
            "status": {k: v.value for k, v in self.status_by_item.items()},
            "errors": {k: v.model_dump() for k, v in self.error_by_item.items()},
            "superseded": self.superseded,
            "elapsedMs": self.elapsed_ms,
        }

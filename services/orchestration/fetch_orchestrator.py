# services/orchestration/fetch_orchestrator.py
"""
Runs a subject's named producers concurrently and assembles one aggregate.

Two phases:
  1. required items, concurrently. Any failure (or an empty result) fails the
     whole run with CoreDataUnavailable; optional items are never dispatched.
  2. optional items, concurrently. Failures are absorbed: the item gets its
     default value and status=error.

Every settle is committed to the observable state only while the run's
generation is current. A superseded run keeps computing (its own caller still
gets an AggregateResult with superseded=True) but can't touch what observers see.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from services.fetching.errors import (
    CoreDataUnavailable,
    ErrorDetail,
    OptionalDataUnavailable,
    error_detail_from,
)

from .generation_guard import GenerationGuard
from .types import AggregateResult, FetchStatus, RunOutcome, RunSnapshot

logger = logging.getLogger(__name__)

Producer = Callable[[], Awaitable[Any]]
SnapshotListener = Callable[[RunSnapshot], None]

_UNSET = object()


def is_empty_result(value: Any) -> bool:
    """A successful call with no usable data: None or an empty container/string."""
    if value is None:
        return True
    if isinstance(value, (str, bytes, list, tuple, dict, set)):
        return len(value) == 0
    return False


@dataclass
class _RunState:
    generation: int
    subject_key: str
    outcome: RunOutcome = RunOutcome.RUNNING
    statuses: Dict[str, FetchStatus] = field(default_factory=dict)
    values: Dict[str, Any] = field(default_factory=dict)
    errors: Dict[str, ErrorDetail] = field(default_factory=dict)
    core_failures: Dict[str, ErrorDetail] = field(default_factory=dict)

    def to_snapshot(self) -> RunSnapshot:
        return RunSnapshot(
            generation=self.generation,
            subject_key=self.subject_key,
            outcome=self.outcome,
            status_by_item=dict(self.statuses),
            result_by_item=dict(self.values),
            error_by_item=dict(self.errors),
            core_failures=dict(self.core_failures),
        )


class FetchOrchestrator:
    def __init__(self, guard: Optional[GenerationGuard] = None) -> None:
        self._guard = guard or GenerationGuard()
        # guards _current and every per-run state mutation
        self._lock = threading.Lock()
        self._current: Optional[_RunState] = None
        self._listeners: List[SnapshotListener] = []

    @property
    def guard(self) -> GenerationGuard:
        return self._guard

    # -------------------------
    # Observer surface
    # -------------------------
    def snapshot(self) -> RunSnapshot:
        with self._lock:
            return self._current.to_snapshot() if self._current else RunSnapshot()

    def subscribe(self, listener: SnapshotListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: SnapshotListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, snap: RunSnapshot) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snap)
            except Exception:
                logger.exception("orchestrator.listener_failed generation=%s", snap.generation)

    # -------------------------
    # Run
    # -------------------------
    async def run(
        self,
        subject_key: str,
        required_specs: Mapping[str, Producer],
        optional_specs: Optional[Mapping[str, Producer]] = None,
        defaults: Optional[Mapping[str, Any]] = None,
    ) -> AggregateResult:
        optional_specs = optional_specs or {}
        defaults = defaults or {}
        overlap = set(required_specs) & set(optional_specs)
        if overlap:
            raise ValueError(f"items cannot be both required and optional: {sorted(overlap)}")

        start = time.perf_counter()
        names = list(required_specs) + list(optional_specs)
        with self._lock:
            generation = self._guard.start_new_run()
            run = _RunState(
                generation=generation,
                subject_key=subject_key,
                statuses={n: FetchStatus.PENDING for n in names},
            )
            self._current = run
            snap = run.to_snapshot()
        self._notify(snap)
        logger.info(
            "orchestrator.run.start subject=%s generation=%s required=%d optional=%d",
            subject_key, generation, len(required_specs), len(optional_specs),
        )

        # Phase 1: required items gate everything else
        await asyncio.gather(
            *(self._settle(run, name, producer, required=True) for name, producer in required_specs.items())
        )
        failures: Dict[str, ErrorDetail] = {}
        for name in required_specs:
            status = run.statuses[name]
            if status == FetchStatus.SUCCESS:
                continue
            failures[name] = run.errors.get(name) or ErrorDetail(
                type="empty", message=f"{name} returned no data"
            )
        if failures:
            logger.warning(
                "orchestrator.run.core_unavailable subject=%s generation=%s items=%s",
                subject_key, generation, ",".join(sorted(failures)),
            )
            self._finish(run, RunOutcome.FAILED, failures)
            raise CoreDataUnavailable(subject_key, failures)

        # Phase 2: optional items, failures absorbed
        await asyncio.gather(
            *(
                self._settle(run, name, producer, default=defaults.get(name))
                for name, producer in optional_specs.items()
            )
        )

        self._finish(run, RunOutcome.SUCCEEDED)
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        with self._lock:
            result = AggregateResult(
                generation=generation,
                subject_key=subject_key,
                values=dict(run.values),
                status_by_item=dict(run.statuses),
                error_by_item=dict(run.errors),
                superseded=not self._guard.is_current(generation),
                elapsed_ms=elapsed_ms,
            )

        counts = Counter(s.value for s in result.status_by_item.values())
        logger.info(
            "orchestrator.run.done subject=%s generation=%s success=%d empty=%d error=%d superseded=%s elapsed_ms=%d",
            subject_key, generation, counts["success"], counts["empty"], counts["error"],
            result.superseded, elapsed_ms,
        )
        return result

    async def _settle(
        self,
        run: _RunState,
        name: str,
        producer: Producer,
        *,
        required: bool = False,
        default: Any = None,
    ) -> None:
        self._transition(run, name, FetchStatus.LOADING)
        try:
            value = await producer()
        except Exception as exc:
            if required:
                detail = error_detail_from(exc)
                logger.warning("orchestrator.item.failed subject=%s item=%s required=true error=%s",
                               run.subject_key, name, exc)
            else:
                absorbed = OptionalDataUnavailable(name, exc)
                detail = absorbed.to_detail()
                logger.warning("orchestrator.item.failed subject=%s item=%s required=false error=%s",
                               run.subject_key, name, absorbed)
            self._transition(
                run, name, FetchStatus.ERROR,
                value=_UNSET if required else default,
                error=detail,
            )
            return

        status = FetchStatus.EMPTY if is_empty_result(value) else FetchStatus.SUCCESS
        self._transition(run, name, status, value=value)

    def _transition(
        self,
        run: _RunState,
        name: str,
        status: FetchStatus,
        *,
        value: Any = _UNSET,
        error: Optional[ErrorDetail] = None,
    ) -> None:
        with self._lock:
            current = run.statuses.get(name)
            if current is not None and current.is_terminal:
                return
            run.statuses[name] = status
            if value is not _UNSET:
                run.values[name] = value
            if error is not None:
                run.errors[name] = error
            if not (self._current is run and self._guard.is_current(run.generation)):
                logger.debug(
                    "orchestrator.stale_update_dropped subject=%s generation=%s item=%s",
                    run.subject_key, run.generation, name,
                )
                return
            snap = run.to_snapshot()
        self._notify(snap)

    def _finish(
        self,
        run: _RunState,
        outcome: RunOutcome,
        failures: Optional[Mapping[str, ErrorDetail]] = None,
    ) -> None:
        with self._lock:
            run.outcome = outcome
            if failures:
                run.core_failures = dict(failures)
            if not (self._current is run and self._guard.is_current(run.generation)):
                logger.debug(
                    "orchestrator.stale_outcome_dropped subject=%s generation=%s outcome=%s",
                    run.subject_key, run.generation, outcome.value,
                )
                return
            snap = run.to_snapshot()
        self._notify(snap)

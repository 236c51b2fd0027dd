# services/orchestration/generation_guard.py
from __future__ import annotations

import threading


class GenerationGuard:
    """
    Monotonic run counter for one caller/session.

    Only the most recently started run is current; the orchestrator checks
    is_current() before every commit so a slow superseded run can never
    overwrite newer state.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._current = 0

    def start_new_run(self) -> int:
        with self._lock:
            self._current += 1
            return self._current

    def is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._current

    @property
    def current(self) -> int:
        with self._lock:
            return self._current

"""Execution lifecycle tracking.

LifecycleTracker owns every ExecutionRun and is the only code that mutates
one. State moves forward only:

    pending -> running -> success | failed | cancelled
    pending -> failed | cancelled

Finished runs move from the active table into a bounded history ring.
"""

import itertools
import logging
import uuid
from collections import deque
from typing import Deque, Dict, List, Optional

from protocolos.kernel.models import (
    ExecutionResult,
    ExecutionRun,
    HealthStatus,
    LogEntry,
    RunStatus,
    utc_now,
)
from protocolos.protocols.errors import ErrorCode, InvalidTransitionError, RunNotFoundError

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[RunStatus, frozenset] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED}),
    RunStatus.RUNNING: frozenset({RunStatus.SUCCESS, RunStatus.FAILED, RunStatus.CANCELLED}),
    RunStatus.SUCCESS: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}


class LifecycleTracker:
    """Tracks runs from creation to a terminal state.

    Returned runs are copies; changing them does not affect the tracker.
    """

    def __init__(self, history_size: int = 50):
        self.history_size = history_size
        self._active: Dict[str, ExecutionRun] = {}
        self._history: Deque[ExecutionRun] = deque(maxlen=history_size)
        self._order: Dict[str, int] = {}
        self._counter = itertools.count()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _find(self, run_id: str) -> ExecutionRun:
        run = self._active.get(run_id)
        if run is not None:
            return run
        for finished in self._history:
            if finished.id == run_id:
                return finished
        raise RunNotFoundError(run_id)

    def _transition(self, run_id: str, target: RunStatus) -> ExecutionRun:
        run = self._find(run_id)
        if target not in ALLOWED_TRANSITIONS[run.status]:
            raise InvalidTransitionError(run_id, run.status.value, target.value)
        logger.debug("Run %s: %s -> %s", run_id, run.status.value, target.value)
        run.status = target
        if target.is_terminal:
            run.completed_at = utc_now()
            self._active.pop(run_id, None)
            if self._history and len(self._history) == self._history.maxlen:
                self._order.pop(self._history[0].id, None)
            self._history.append(run)
        return run

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def create_run(self, handshake_id: str, run_id: Optional[str] = None) -> ExecutionRun:
        """Register a new pending run.

        Raises:
            InvalidTransitionError: If a run with this id is still active
        """
        if run_id is not None and run_id in self._active:
            raise InvalidTransitionError(run_id, self._active[run_id].status.value, RunStatus.PENDING.value)
        run = ExecutionRun(id=run_id or str(uuid.uuid4()), handshake_id=handshake_id)
        self._active[run.id] = run
        self._order[run.id] = next(self._counter)
        return run.model_copy(deep=True)

    def start(self, run_id: str) -> ExecutionRun:
        run = self._transition(run_id, RunStatus.RUNNING)
        run.started_at = utc_now()
        return run.model_copy(deep=True)

    def update_progress(self, run_id: str, progress: float) -> float:
        """Set progress, clamped to 0-100; never lowers it.

        Returns:
            The progress actually stored

        Raises:
            InvalidTransitionError: If the run already finished
        """
        run = self._find(run_id)
        if run.status.is_terminal:
            raise InvalidTransitionError(run_id, run.status.value, "progress update")
        clamped = max(0.0, min(100.0, float(progress)))
        run.progress = max(run.progress, clamped)
        return run.progress

    def add_log(self, run_id: str, entry: LogEntry) -> None:
        self._find(run_id).logs.append(entry)

    def add_result(self, run_id: str, result: ExecutionResult) -> None:
        self._find(run_id).results.append(result)

    def complete(
        self,
        run_id: str,
        success: bool,
        error: Optional[str] = None,
        code: Optional[ErrorCode] = None,
    ) -> ExecutionRun:
        """Finish a run as success or failed."""
        run = self._transition(run_id, RunStatus.SUCCESS if success else RunStatus.FAILED)
        if success:
            run.progress = 100.0
        else:
            run.error = error
            run.error_code = code
        return run.model_copy(deep=True)

    def cancel(self, run_id: str) -> ExecutionRun:
        return self._transition(run_id, RunStatus.CANCELLED).model_copy(deep=True)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_by_id(self, run_id: str) -> Optional[ExecutionRun]:
        try:
            return self._find(run_id).model_copy(deep=True)
        except RunNotFoundError:
            return None

    def get_all_for_handshake(self, handshake_id: str) -> List[ExecutionRun]:
        """All known runs of a handshake, newest first."""
        runs = [r for r in list(self._active.values()) + list(self._history) if r.handshake_id == handshake_id]
        runs.sort(key=lambda r: self._order.get(r.id, -1), reverse=True)
        return [r.model_copy(deep=True) for r in runs]

    def latest_for_handshake(self, handshake_id: str) -> Optional[ExecutionRun]:
        runs = self.get_all_for_handshake(handshake_id)
        return runs[0] if runs else None

    def active_runs(self) -> List[ExecutionRun]:
        return [r.model_copy(deep=True) for r in self._active.values()]

    def history(self) -> List[ExecutionRun]:
        """Finished runs, oldest first."""
        return [r.model_copy(deep=True) for r in self._history]

    def health_indicator(self, handshake_id: str, configured: bool) -> HealthStatus:
        """Health derived from the handshake's latest run.

        Args:
            handshake_id: Handshake to inspect
            configured: Whether the handshake's authentication validates
        """
        latest = self.latest_for_handshake(handshake_id)
        if latest is not None:
            if latest.status in (RunStatus.PENDING, RunStatus.RUNNING):
                return HealthStatus.PROCESSING
            if latest.status == RunStatus.SUCCESS:
                return HealthStatus.HEALTHY
            if latest.status == RunStatus.FAILED:
                return HealthStatus.FAILED
        return HealthStatus.CONFIGURED if configured else HealthStatus.UNCONFIGURED

    def clear_history(self) -> None:
        """Forget finished runs; active runs are kept."""
        for run in self._history:
            self._order.pop(run.id, None)
        self._history.clear()

"""Tests for run lifecycle tracking."""

import pytest

from protocolos.kernel.lifecycle import ALLOWED_TRANSITIONS, LifecycleTracker
from protocolos.kernel.models import ExecutionResult, HealthStatus, LogEntry, RunStatus
from protocolos.protocols.errors import ErrorCode, InvalidTransitionError, RunNotFoundError


@pytest.fixture
def tracker():
    return LifecycleTracker(history_size=3)


class TestTransitions:
    """Tests for forward-only state changes."""

    def test_happy_path(self, tracker):
        run = tracker.create_run("hs-1")
        assert run.status == RunStatus.PENDING

        started = tracker.start(run.id)
        assert started.status == RunStatus.RUNNING
        assert started.started_at is not None

        done = tracker.complete(run.id, True)
        assert done.status == RunStatus.SUCCESS
        assert done.progress == 100.0
        assert done.completed_at is not None
        assert done.duration_ms is not None

    def test_failure_records_error(self, tracker):
        run = tracker.create_run("hs-1")
        tracker.start(run.id)
        failed = tracker.complete(run.id, False, "HTTP 500", ErrorCode.SERVER_ERROR)
        assert failed.status == RunStatus.FAILED
        assert failed.error == "HTTP 500"
        assert failed.error_code == ErrorCode.SERVER_ERROR

    def test_pending_can_fail_or_cancel(self, tracker):
        assert tracker.cancel(tracker.create_run("hs-1").id).status == RunStatus.CANCELLED
        assert tracker.complete(tracker.create_run("hs-1").id, False, "x").status == RunStatus.FAILED

    def test_pending_cannot_succeed(self, tracker):
        run = tracker.create_run("hs-1")
        with pytest.raises(InvalidTransitionError):
            tracker.complete(run.id, True)

    @pytest.mark.parametrize("terminal", [RunStatus.SUCCESS, RunStatus.FAILED, RunStatus.CANCELLED])
    def test_terminal_states_are_final(self, tracker, terminal):
        assert ALLOWED_TRANSITIONS[terminal] == frozenset()
        run = tracker.create_run("hs-1")
        tracker.start(run.id)
        if terminal == RunStatus.CANCELLED:
            tracker.cancel(run.id)
        else:
            tracker.complete(run.id, terminal == RunStatus.SUCCESS)

        with pytest.raises(InvalidTransitionError):
            tracker.start(run.id)
        with pytest.raises(InvalidTransitionError):
            tracker.cancel(run.id)
        with pytest.raises(InvalidTransitionError):
            tracker.update_progress(run.id, 50)

    def test_unknown_run(self, tracker):
        with pytest.raises(RunNotFoundError):
            tracker.start("missing")
        assert tracker.get_by_id("missing") is None

    def test_duplicate_active_id(self, tracker):
        tracker.create_run("hs-1", run_id="r1")
        with pytest.raises(InvalidTransitionError):
            tracker.create_run("hs-1", run_id="r1")


class TestProgressAndRecords:
    """Tests for progress, logs and results."""

    def test_progress_clamped_and_monotonic(self, tracker):
        run = tracker.create_run("hs-1")
        tracker.start(run.id)
        assert tracker.update_progress(run.id, 40) == 40.0
        assert tracker.update_progress(run.id, 20) == 40.0
        assert tracker.update_progress(run.id, 250) == 100.0
        assert tracker.update_progress(run.id, -5) == 100.0

    def test_logs_and_results_appended(self, tracker):
        run = tracker.create_run("hs-1")
        tracker.add_log(run.id, LogEntry(message="hello"))
        tracker.add_result(run.id, ExecutionResult(request_id="r1", success=True))

        stored = tracker.get_by_id(run.id)
        assert [e.message for e in stored.logs] == ["hello"]
        assert stored.results[0].request_id == "r1"

    def test_returned_runs_are_copies(self, tracker):
        run = tracker.create_run("hs-1")
        run.logs.append(LogEntry(message="outside"))
        assert tracker.get_by_id(run.id).logs == []


class TestHistory:
    """Tests for active runs and the bounded history."""

    def _finish(self, tracker, handshake_id="hs-1", success=True):
        run = tracker.create_run(handshake_id)
        tracker.start(run.id)
        tracker.complete(run.id, success, None if success else "boom")
        return run.id

    def test_finished_runs_leave_active(self, tracker):
        active = tracker.create_run("hs-1")
        finished = self._finish(tracker)
        assert [r.id for r in tracker.active_runs()] == [active.id]
        assert [r.id for r in tracker.history()] == [finished]

    def test_history_bounded(self, tracker):
        ids = [self._finish(tracker) for _ in range(4)]
        assert [r.id for r in tracker.history()] == ids[1:]
        assert tracker.get_by_id(ids[0]) is None

    def test_runs_for_handshake_newest_first(self, tracker):
        first = self._finish(tracker)
        self._finish(tracker, handshake_id="other")
        second = tracker.create_run("hs-1").id
        assert [r.id for r in tracker.get_all_for_handshake("hs-1")] == [second, first]
        assert tracker.latest_for_handshake("hs-1").id == second
        assert tracker.latest_for_handshake("nobody") is None

    def test_clear_history_keeps_active(self, tracker):
        active = tracker.create_run("hs-1")
        self._finish(tracker)
        tracker.clear_history()
        assert tracker.history() == []
        assert [r.id for r in tracker.get_all_for_handshake("hs-1")] == [active.id]

    def test_zero_history(self):
        tracker = LifecycleTracker(history_size=0)
        run_id = self._finish(tracker)
        assert tracker.history() == []
        assert tracker.get_by_id(run_id) is None


class TestHealth:
    """Tests for health derived from the latest run."""

    def test_without_runs(self, tracker):
        assert tracker.health_indicator("hs-1", configured=False) == HealthStatus.UNCONFIGURED
        assert tracker.health_indicator("hs-1", configured=True) == HealthStatus.CONFIGURED

    def test_follows_latest_run(self, tracker):
        run = tracker.create_run("hs-1")
        assert tracker.health_indicator("hs-1", True) == HealthStatus.PROCESSING
        tracker.start(run.id)
        assert tracker.health_indicator("hs-1", True) == HealthStatus.PROCESSING
        tracker.complete(run.id, True)
        assert tracker.health_indicator("hs-1", True) == HealthStatus.HEALTHY

        failed = tracker.create_run("hs-1")
        tracker.complete(failed.id, False, "x")
        assert tracker.health_indicator("hs-1", True) == HealthStatus.FAILED

    def test_cancelled_falls_back_to_configuration(self, tracker):
        tracker.cancel(tracker.create_run("hs-1").id)
        assert tracker.health_indicator("hs-1", True) == HealthStatus.CONFIGURED

"""Tests for the iteration timer, controller and coordinator."""
import threading
from unittest.mock import MagicMock

import pytest

from taskloop.handlers.learning import IterationOutcome, LearningHandler
from taskloop.models import SessionStatus
from taskloop.orchestration import (
    IterationCallbacks,
    IterationController,
    IterationCoordinator,
    IterationTimer,
)
from taskloop.progress import ProgressLog
from taskloop.session_manager import SessionManager
from taskloop.state_store import PrdStore, SessionStore


def no_wait(seconds: float) -> bool:
    return False


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class Recorder:
    """Collects controller callbacks in order."""

    def __init__(self) -> None:
        self.events = []

    def callbacks(self) -> IterationCallbacks:
        return IterationCallbacks(
            on_iteration_start=lambda i: self.events.append(("start", i)),
            on_iteration_complete=lambda i: self.events.append(("complete", i)),
            on_all_complete=lambda: self.events.append(("all_complete",)),
            on_max_iterations=lambda: self.events.append(("max_iterations",)),
            on_max_runtime=lambda: self.events.append(("max_runtime",)),
        )


def make_controller(**kwargs):
    recorder = Recorder()
    controller = IterationController(delay_ms=0, **kwargs)
    controller.set_callbacks(recorder.callbacks())
    return controller, recorder


class TestIterationTimer:
    """Tests for IterationTimer."""

    def test_run_pending_invokes_callback_once(self):
        timer = IterationTimer()
        calls = []
        timer.schedule_next(0, lambda: calls.append(1))
        assert timer.is_pending()
        assert timer.run_pending(no_wait) is True
        assert timer.run_pending(no_wait) is False
        assert calls == [1]

    def test_reschedule_replaces_callback(self):
        timer = IterationTimer()
        calls = []
        timer.schedule_next(0, lambda: calls.append("first"))
        timer.schedule_next(0, lambda: calls.append("second"))
        timer.run_pending(no_wait)
        assert calls == ["second"]

    def test_cancel(self):
        timer = IterationTimer()
        timer.schedule_next(0, lambda: pytest.fail("cancelled callback ran"))
        timer.cancel()
        assert timer.run_pending(no_wait) is False

    def test_interrupted_wait_skips_callback(self):
        timer = IterationTimer()
        timer.schedule_next(60_000, lambda: pytest.fail("should not run"))
        assert timer.run_pending(lambda seconds: True) is False
        assert timer.is_pending()

    def test_waits_with_event(self):
        timer = IterationTimer()
        calls = []
        timer.schedule_next(10, lambda: calls.append(1))
        assert timer.run_pending(threading.Event().wait) is True
        assert calls == [1]


class TestIterationController:
    """Tests for IterationController."""

    def test_runs_to_the_iteration_limit(self):
        controller, recorder = make_controller(total=3)
        controller.start()
        while controller.is_running:
            controller.mark_iteration_complete(all_tasks_done=False, has_pending_tasks=True)
            controller.timer.run_pending(no_wait)

        assert recorder.events == [
            ("start", 1), ("complete", 1),
            ("start", 2), ("complete", 2),
            ("start", 3), ("complete", 3),
            ("max_iterations",),
        ]

    def test_all_complete_stops_immediately(self):
        controller, recorder = make_controller(total=5)
        controller.start()
        controller.mark_iteration_complete(all_tasks_done=True, has_pending_tasks=False)
        assert recorder.events[-1] == ("all_complete",)
        assert not controller.is_running
        assert not controller.timer.is_pending()

    def test_full_mode_extends_total_while_tasks_pend(self):
        controller, recorder = make_controller(total=3, full_mode=True)
        controller.start()
        for _ in range(4):
            controller.mark_iteration_complete(all_tasks_done=False, has_pending_tasks=True)
            controller.timer.run_pending(no_wait)

        assert controller.current == 5
        assert controller.total == 5

        controller.mark_iteration_complete(all_tasks_done=True, has_pending_tasks=False)
        assert recorder.events[-1] == ("all_complete",)

    def test_full_mode_without_pending_tasks_stops(self):
        controller, recorder = make_controller(total=1, full_mode=True)
        controller.start()
        controller.mark_iteration_complete(all_tasks_done=False, has_pending_tasks=False)
        assert recorder.events[-1] == ("max_iterations",)

    def test_runtime_limit(self):
        clock = FakeClock()
        controller, recorder = make_controller(total=10, max_runtime_ms=5000, clock=clock)
        controller.start()
        assert controller.get_time_remaining() == 5000

        clock.now += 6
        controller.mark_iteration_complete(all_tasks_done=False, has_pending_tasks=True)
        controller.timer.run_pending(no_wait)

        assert recorder.events[-1] == ("max_runtime",)
        assert controller.get_time_remaining() == 0
        assert not controller.is_running

    def test_no_runtime_limit(self):
        controller, _ = make_controller(total=2)
        controller.start()
        assert controller.get_time_remaining() is None
        assert not controller.is_max_runtime_reached()

    def test_restart_does_not_charge_the_budget(self):
        controller, recorder = make_controller(total=2)
        controller.start()
        controller.restart_current_iteration()
        controller.timer.run_pending(no_wait)
        assert controller.current == 1
        assert recorder.events == [("start", 1), ("start", 1)]

    def test_pause_during_delay_and_resume(self):
        controller, recorder = make_controller(total=3)
        controller.start()
        controller.mark_iteration_complete(all_tasks_done=False, has_pending_tasks=True)
        assert controller.is_delaying

        controller.pause()
        assert not controller.timer.is_pending()
        assert controller.timer.run_pending(no_wait) is False

        controller.resume()
        controller.timer.run_pending(no_wait)
        assert controller.current == 2
        assert recorder.events[-1] == ("start", 2)

    def test_complete_while_paused_waits_for_resume(self):
        controller, recorder = make_controller(total=3)
        controller.start()
        controller.pause()
        controller.mark_iteration_complete(all_tasks_done=False, has_pending_tasks=True)
        assert not controller.timer.is_pending()

        controller.resume()
        controller.timer.run_pending(no_wait)
        assert recorder.events[-1] == ("start", 2)

    def test_start_from_iteration(self):
        controller, recorder = make_controller(total=5)
        controller.start_from_iteration(4)
        assert recorder.events == [("start", 4)]

    def test_stop_cancels_pending_advance(self):
        controller, recorder = make_controller(total=3)
        controller.start()
        controller.mark_iteration_complete(all_tasks_done=False, has_pending_tasks=True)
        controller.stop()
        assert controller.timer.run_pending(no_wait) is False
        controller.mark_iteration_complete(all_tasks_done=False, has_pending_tasks=True)
        assert recorder.events == [("start", 1), ("complete", 1)]

    def test_reset(self):
        controller, _ = make_controller(total=2, full_mode=True)
        controller.start()
        controller.set_total(7)
        controller.reset()
        assert controller.current == 0
        assert controller.total == 2
        assert controller.start_time is None
        assert not controller.is_running


@pytest.fixture
def coordinator(config, write_prd):
    write_prd([
        {"title": "Low", "id": "low", "priority": 5},
        {"title": "High", "id": "high", "priority": 1},
        {"title": "Blocked", "id": "blocked", "dependsOn": ["high"]},
    ])
    progress = ProgressLog(config.progress_path)
    session_store = SessionStore(config.session_path)
    manager = SessionManager(session_store, progress)
    learning = LearningHandler(False, MagicMock())
    coordinator = IterationCoordinator(PrdStore(config.prd_path), manager, progress, learning)
    started = manager.start(coordinator.load_prd(), 3)
    coordinator.attach_session(started.session, 3)
    return coordinator


class TestIterationCoordinator:
    """Tests for IterationCoordinator."""

    def test_iteration_start_picks_ready_task_by_priority(self, coordinator, config):
        context = coordinator.handle_iteration_start(1, 3)
        assert context.task.title == "High"
        assert context.task_index == 1
        assert coordinator.session.current_iteration == 1
        assert coordinator.session.current_task_index == 1
        assert "Working on: High" in config.progress_path.read_text()

    def test_iteration_start_with_changed_total(self, coordinator):
        coordinator.handle_iteration_start(4, 4)
        assert coordinator.session.total_iterations == 4
        assert coordinator.session.statistics.total_iterations == 4

    def test_iteration_complete_updates_statistics(self, coordinator, config):
        coordinator.handle_iteration_start(1, 3)
        coordinator.handle_iteration_complete(
            1, IterationOutcome(iteration=1, was_successful=False, task_title="High", agent_error="boom"),
        )

        stats = SessionStore(config.session_path).load().value.statistics
        assert stats.completed_iterations == 1
        assert stats.failed_iterations == 1
        progress = config.progress_path.read_text()
        assert "Iteration failed" in progress
        assert "[ERROR] [Iteration 1/3] boom" in progress

    def test_all_complete_marks_session_completed(self, coordinator, config):
        coordinator.handle_all_complete()
        assert coordinator.session.status == SessionStatus.COMPLETED
        assert SessionStore(config.session_path).load().value.status == SessionStatus.COMPLETED

    def test_max_iterations_stops_session(self, coordinator, config):
        coordinator.handle_max_iterations()
        assert coordinator.session.status == SessionStatus.STOPPED
        assert "Reached maximum of 3 iterations" in config.progress_path.read_text()

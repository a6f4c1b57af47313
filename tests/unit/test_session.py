"""Tests for session state transitions and the session manager."""
from unittest.mock import MagicMock

import pytest

from taskloop import session as session_ops
from taskloop.models import ExecutionStatus, Prd, SessionStatus, Task
from taskloop.progress import ProgressLog
from taskloop.session_manager import SessionManager
from taskloop.state_store import SessionStore


class TestSessionOps:
    """Tests for the pure session functions."""

    def test_create_session(self):
        session = session_ops.create_session(total_iterations=4, current_task_index=2)
        assert session.current_iteration == 0
        assert session.total_iterations == 4
        assert session.statistics.total_iterations == 4
        assert session.current_task_index == 2
        assert session.status == SessionStatus.RUNNING

    def test_transitions_do_not_mutate_input(self):
        session = session_ops.create_session(3, 0)
        before = session.to_dict()

        session_ops.record_iteration_start(session, 1)
        session_ops.update_iteration(session, 1, 1, 10)
        session_ops.update_status(session, SessionStatus.PAUSED)
        session_ops.enable_parallel_mode(session, 2)

        assert session.to_dict() == before

    def test_iteration_statistics(self):
        session = session_ops.create_session(3, 0)
        session = session_ops.record_iteration_start(session, 1)
        session = session_ops.record_iteration_end(session, 1, was_successful=True)
        session = session_ops.record_iteration_start(session, 2)
        session = session_ops.record_iteration_end(session, 2, was_successful=False)

        stats = session.statistics
        assert stats.completed_iterations == 2
        assert stats.successful_iterations == 1
        assert stats.failed_iterations == 1
        assert stats.success_rate == 50
        assert stats.get_timing(1).end_time is not None
        assert stats.get_timing(2).duration_ms >= 0

    def test_end_without_start_records_zero_duration(self):
        session = session_ops.record_iteration_end(session_ops.create_session(3, 0), 7, True)
        timing = session.statistics.get_timing(7)
        assert timing.duration_ms == 0
        assert timing.start_time == timing.end_time

    def test_restarting_an_iteration_keeps_one_timing(self):
        session = session_ops.create_session(3, 0)
        session = session_ops.record_iteration_start(session, 1)
        session = session_ops.record_iteration_start(session, 1)
        assert len(session.statistics.iteration_timings) == 1

    def test_set_total_iterations(self):
        session = session_ops.set_total_iterations(session_ops.create_session(3, 0), 8)
        assert session.total_iterations == 8
        assert session.statistics.total_iterations == 8

    @pytest.mark.parametrize("status,resumable", [
        (SessionStatus.RUNNING, True),
        (SessionStatus.PAUSED, True),
        (SessionStatus.STOPPED, True),
        (SessionStatus.COMPLETED, False),
    ])
    def test_is_resumable(self, status, resumable):
        session = session_ops.update_status(session_ops.create_session(3, 0), status)
        assert session_ops.is_resumable(session) is resumable

    def test_none_is_not_resumable(self):
        assert not session_ops.is_resumable(None)


class TestParallelSessionState:
    """Tests for parallel execution bookkeeping."""

    def test_group_and_execution_lifecycle(self):
        session = session_ops.enable_parallel_mode(session_ops.create_session(3, 0), 2)
        assert session_ops.is_parallel_mode(session)

        session = session_ops.start_parallel_group(session, 0)
        session = session_ops.start_task_execution(session, "a", "Task A", 0, "a")
        session = session_ops.start_task_execution(session, "b", "Task B", 1, "b")
        assert session_ops.get_current_parallel_group(session).group_index == 0
        assert [e.task_id for e in session_ops.get_active_executions(session)] == ["a", "b"]
        assert session_ops.is_task_executing(session, "a")

        session = session_ops.fail_task_execution(session, "b", "boom")
        session = session_ops.retry_task_execution(session, "b")
        execution = session_ops.get_task_execution(session, "b")
        assert execution.retry_count == 1
        assert execution.status == ExecutionStatus.RUNNING
        assert execution.last_error is None

        session = session_ops.complete_task_execution(session, "a", True)
        session = session_ops.complete_task_execution(session, "b", False)
        session = session_ops.complete_parallel_group(session, 0)

        group = session.parallel_state.execution_groups[0]
        assert group.is_complete
        assert [e.status for e in group.task_executions] == [
            ExecutionStatus.COMPLETED, ExecutionStatus.FAILED,
        ]
        assert session.parallel_state.active_executions == []
        assert session_ops.get_current_parallel_group(session) is None

    def test_operations_are_noops_outside_parallel_mode(self):
        session = session_ops.create_session(3, 0)
        assert session_ops.start_parallel_group(session, 0) is session
        assert session_ops.start_task_execution(session, "a", "A", 0, "a") is session
        assert session_ops.get_active_executions(session) == []

    def test_parallel_state_survives_serialization(self, config):
        session = session_ops.enable_parallel_mode(session_ops.create_session(3, 0), 2)
        session = session_ops.start_parallel_group(session, 0)
        session = session_ops.start_task_execution(session, "a", "Task A", 0, "a")

        store = SessionStore(config.session_path)
        store.save(session)

        assert store.reload().value == session

    def test_disable_parallel_mode(self):
        session = session_ops.enable_parallel_mode(session_ops.create_session(3, 0), 2)
        assert not session_ops.is_parallel_mode(session_ops.disable_parallel_mode(session))


@pytest.fixture
def manager(config):
    return SessionManager(SessionStore(config.session_path), ProgressLog(config.progress_path))


class TestSessionManager:
    """Tests for SessionManager."""

    def test_start_points_at_first_pending_task(self, manager, config):
        prd = Prd(project="demo", tasks=[Task("A", done=True), Task("B")])
        result = manager.start(prd, total_iterations=5)

        assert result.task_index == 1
        assert result.session.total_iterations == 5
        assert config.session_path.exists()
        progress = config.progress_path.read_text()
        assert progress.startswith("=== PROGRESS LOG ===")
        assert '[SESSION START] [Iteration 0/5] Session started for project "demo"' in progress

    def test_load_pending(self, manager):
        assert manager.load_pending() is None
        started = manager.start(Prd(project="demo", tasks=[Task("A")]), 3).session

        assert manager.load_pending() == started

        manager.complete(started)
        assert manager.load_pending() is None

    def test_resume_computes_remaining(self, manager):
        started = manager.start(Prd(project="demo", tasks=[Task("A")]), 5).session
        stopped = manager.stop(session_ops.update_iteration(started, 3, 0, 60))

        result = manager.resume(stopped)

        assert result.remaining_iterations == 2
        assert result.session.status == SessionStatus.RUNNING

    def test_resume_always_leaves_one_iteration(self, manager):
        started = manager.start(Prd(project="demo", tasks=[Task("A")]), 2).session
        exhausted = session_ops.update_iteration(started, 5, 0, 0)
        assert manager.resume(exhausted).remaining_iterations == 1

    def test_handle_fatal_error_stops_session(self, manager, config):
        logger = MagicMock()
        manager._logger = logger
        started = manager.start(Prd(project="demo", tasks=[Task("A")]), 3).session

        result = manager.handle_fatal_error("agent missing", started, iteration=1)

        assert result.session.status == SessionStatus.STOPPED
        assert SessionStore(config.session_path).load().value.status == SessionStatus.STOPPED
        assert "Fatal error: agent missing" in config.progress_path.read_text()
        logger.log.assert_any_call(
            "fatal_error", {"error": "agent missing", "iteration": 1}, level="error"
        )

    def test_handle_fatal_error_without_session(self, manager):
        assert manager.handle_fatal_error("boom", None).session is None

"""Tests for ParallelExecutionManager."""
from unittest.mock import MagicMock

import pytest

from taskloop import session as session_ops
from taskloop.config import ParallelConfig
from taskloop.errors import SchedulingError
from taskloop.models import ExecutionStatus, Prd, Task
from taskloop.orchestration import ParallelExecutionManager
from taskloop.orchestration.parallel import task_key


def make_prd() -> Prd:
    return Prd("demo", [
        Task("A", id="a"),
        Task("B", id="b", depends_on=["a"]),
        Task("C", id="c"),
    ])


class SessionHolder:
    def __init__(self) -> None:
        self.session = session_ops.create_session(5, 0)

    def get(self):
        return self.session

    def set(self, session) -> None:
        self.session = session


@pytest.fixture
def holder():
    return SessionHolder()


def make_manager(holder, max_concurrent: int = 2, progress=None) -> ParallelExecutionManager:
    return ParallelExecutionManager(
        ParallelConfig(enabled=True, max_concurrent_tasks=max_concurrent),
        holder.get,
        holder.set,
        progress=progress,
    )


def mark_done(prd: Prd, *ids: str) -> None:
    for task in prd.tasks:
        if task.id in ids:
            task.done = True


class TestTaskKey:
    def test_prefers_id(self):
        assert task_key(Task("A", id="a"), 3) == "a"

    def test_falls_back_to_index(self):
        assert task_key(Task("A"), 3) == "task-3"


class TestInitialize:
    """Tests for round computation."""

    def test_groups_and_session_state(self, holder):
        manager = make_manager(holder, max_concurrent=3)
        manager.initialize(make_prd())

        assert [[task.id for task in group] for group in manager.groups] == [["a", "c"], ["b"]]
        assert session_ops.is_parallel_mode(holder.session)
        assert holder.session.parallel_state.max_concurrent_tasks == 3
        assert not manager.is_complete()

    def test_cycle_is_rejected(self, holder):
        prd = Prd("demo", [Task("A", id="a", depends_on=["b"]), Task("B", id="b", depends_on=["a"])])
        with pytest.raises(SchedulingError, match="Invalid task dependencies"):
            make_manager(holder).initialize(prd)
        assert holder.session.parallel_state is None

    def test_is_enabled(self, holder):
        assert make_manager(holder).is_enabled


class TestRounds:
    """Tests for batch scheduling within rounds."""

    def test_runs_rounds_in_order(self, holder):
        prd = make_prd()
        manager = make_manager(holder)
        manager.initialize(prd)

        first = manager.start_next_group(prd)
        assert first.started
        assert first.group_index == 0
        assert [task.id for task in first.tasks] == ["a", "c"]
        assert holder.session.parallel_state.current_group_index == 0

        for index, task in enumerate(first.tasks):
            manager.record_task_start(task, index, task.id)
        assert len(session_ops.get_active_executions(holder.session)) == 2

        assert not manager.record_task_complete("a", "A", True).group_complete
        outcome = manager.record_task_complete("c", "C", True)
        assert outcome.group_complete
        assert outcome.all_succeeded

        mark_done(prd, "a", "c")
        manager.finish_batch(prd)
        assert manager.current_group_index == 1
        assert holder.session.parallel_state.execution_groups[0].is_complete
        assert session_ops.get_active_executions(holder.session) == []

        second = manager.start_next_group(prd)
        assert [task.id for task in second.tasks] == ["b"]

        mark_done(prd, "b")
        manager.record_task_complete("b", "B", True)
        manager.finish_batch(prd)
        assert manager.is_complete()
        assert not manager.start_next_group(prd).started

    def test_batches_respect_concurrency_limit(self, holder):
        prd = make_prd()
        manager = make_manager(holder, max_concurrent=1)
        manager.initialize(prd)

        assert [task.id for task in manager.start_next_group(prd).tasks] == ["a"]
        mark_done(prd, "a")
        manager.record_task_complete("a", "A", True)
        manager.finish_batch(prd)
        assert manager.current_group_index == 0

        assert [task.id for task in manager.start_next_group(prd).tasks] == ["c"]
        # Still the same round in the session
        assert len(holder.session.parallel_state.execution_groups) == 1

    def test_failed_task_is_retried_in_next_batch(self, holder):
        prd = make_prd()
        manager = make_manager(holder)
        manager.initialize(prd)
        batch = manager.start_next_group(prd)
        for index, task in enumerate(batch.tasks):
            manager.record_task_start(task, index, task.id)

        manager.record_task_complete("a", "A", False, "boom")
        outcome = manager.record_task_complete("c", "C", True)
        assert outcome.group_complete
        assert not outcome.all_succeeded
        execution = session_ops.get_task_execution(holder.session, "a")
        assert execution.status == ExecutionStatus.FAILED
        assert execution.last_error == "boom"

        mark_done(prd, "c")
        manager.finish_batch(prd)
        assert manager.current_group_index == 0
        assert [task.id for task in manager.start_next_group(prd).tasks] == ["a"]

    def test_done_tasks_and_empty_rounds_are_skipped(self, holder):
        prd = make_prd()
        manager = make_manager(holder)
        manager.initialize(prd)
        mark_done(prd, "a", "c")

        result = manager.start_next_group(prd)

        assert result.group_index == 1
        assert [task.id for task in result.tasks] == ["b"]

    def test_removed_task_counts_as_done(self, holder):
        prd = make_prd()
        manager = make_manager(holder)
        manager.initialize(prd)
        prd.tasks = [task for task in prd.tasks if task.id != "a"]
        assert [task.id for task in manager.start_next_group(prd).tasks] == ["c"]

    def test_record_without_group(self, holder):
        manager = make_manager(holder)
        outcome = manager.record_task_complete("x", "X", True)
        assert outcome.group_complete
        assert not outcome.all_succeeded

    def test_batch_summary_written_to_progress(self, holder):
        progress = MagicMock()
        prd = make_prd()
        manager = make_manager(holder, progress=progress)
        manager.initialize(prd)
        manager.start_next_group(prd)
        manager.record_task_complete("a", "A", True)
        manager.record_task_complete("c", "C", False, "boom")

        manager.finish_batch(prd)

        text = progress.section.call_args[0][0]
        assert "=== Parallel Group 1 Batch Complete ===" in text
        assert "Completed: 1, Failed: 1" in text


class TestSummary:
    def test_counts_results(self, holder):
        prd = make_prd()
        manager = make_manager(holder)
        manager.initialize(prd)
        manager.start_next_group(prd)
        manager.record_task_complete("a", "A", True)
        manager.record_task_complete("c", "C", False, "boom")

        summary = manager.get_summary()

        assert summary.total_groups == 2
        assert summary.completed_tasks == 1
        assert summary.failed_tasks == 1
        assert [result.task_id for result in summary.results] == ["a", "c"]

    def test_reset(self, holder):
        manager = make_manager(holder)
        manager.initialize(make_prd())
        manager.reset()
        assert manager.groups == []
        assert manager.is_complete()

"""
Parallel execution of dependency-independent tasks.

Tasks are partitioned into rounds with get_parallel_execution_groups. A
round runs in batches of at most max_concurrent_tasks; tasks that fail stay
pending and are picked up again by the round's next batch. The round is
finished once every task in it is done.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Optional

from taskloop import session as session_ops
from taskloop.dependency_graph import get_parallel_execution_groups, validate_dependencies
from taskloop.errors import SchedulingError
from taskloop.models import Prd, Session, Task

if TYPE_CHECKING:
    from taskloop.config import ParallelConfig
    from taskloop.logger import TaskloopLogger
    from taskloop.progress import ProgressLog


def task_key(task: Task, index: int) -> str:
    """Registry key for a task's process: its id, or a per-index fallback."""
    return task.id or f"task-{index}"


@dataclass
class ParallelTaskResult:
    task_id: str
    task_title: str
    success: bool
    error: Optional[str] = None


@dataclass
class ParallelGroupRun:
    group_index: int
    tasks: list[Task]
    start_time: float = field(default_factory=time.time)
    completed_task_ids: set[str] = field(default_factory=set)
    failed_task_ids: set[str] = field(default_factory=set)

    @property
    def finished_count(self) -> int:
        return len(self.completed_task_ids) + len(self.failed_task_ids)


@dataclass
class StartGroupResult:
    started: bool
    group_index: int = -1
    tasks: list[Task] = field(default_factory=list)


@dataclass
class RecordTaskCompleteResult:
    group_complete: bool
    all_succeeded: bool


@dataclass
class ParallelExecutionSummary:
    total_groups: int
    current_group_index: int
    completed_tasks: int
    failed_tasks: int
    results: list[ParallelTaskResult] = field(default_factory=list)


class ParallelExecutionManager:
    """
    Round-by-round scheduler for parallel mode.

    Session updates flow through get_session/set_session so the caller keeps
    owning the session object.
    """

    def __init__(
        self,
        config: ParallelConfig,
        get_session: Callable[[], Optional[Session]],
        set_session: Callable[[Session], None],
        progress: Optional[ProgressLog] = None,
        logger: Optional[TaskloopLogger] = None,
    ) -> None:
        self.config = config
        self._get_session = get_session
        self._set_session = set_session
        self._progress = progress
        self._logger = logger
        self.groups: list[list[Task]] = []
        self.current_group_index = 0
        self.current_group: Optional[ParallelGroupRun] = None
        self._results: list[ParallelTaskResult] = []

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def _update_session(self, update: Callable[[Session], Session]) -> None:
        session = self._get_session()
        if session is not None:
            self._set_session(update(session))

    @property
    def is_enabled(self) -> bool:
        return self.config.enabled

    def initialize(self, prd: Prd) -> None:
        """
        Validate dependencies and compute the execution rounds.

        Raises:
            SchedulingError: If dependencies are invalid or some tasks can
                never be scheduled.
        """
        validation = validate_dependencies(prd)
        if not validation.is_valid:
            details = "; ".join(f"{error.type}: {error.details}" for error in validation.errors)
            self._log("parallel_validation_failed", {"errors": details}, level="error")
            raise SchedulingError(f"Invalid task dependencies: {details}")

        plan = get_parallel_execution_groups(prd)
        if not plan.is_complete:
            titles = ", ".join(task.title for task in plan.unscheduled)
            raise SchedulingError(f"Tasks can never be scheduled: {titles}")

        self.groups = plan.groups
        self.current_group_index = 0
        self.current_group = None
        self._results = []

        self._log("parallel_initialized", {
            "total_groups": len(self.groups),
            "max_concurrent_tasks": self.config.max_concurrent_tasks,
        })
        self._update_session(
            lambda session: session_ops.enable_parallel_mode(session, self.config.max_concurrent_tasks)
        )

    def is_complete(self) -> bool:
        return self.current_group_index >= len(self.groups)

    def start_next_group(self, prd: Prd) -> StartGroupResult:
        """
        Start the next batch of the current round.

        Tasks already done in prd are skipped; a round with nothing left is
        closed and the next one is tried.
        """
        while self.current_group_index < len(self.groups):
            group = self.groups[self.current_group_index]
            pending = [task for task in group if not _is_done(prd, task)]
            if not pending:
                self._close_group()
                continue

            batch = pending[:max(self.config.max_concurrent_tasks, 1)]
            is_new_round = self.current_group is None
            self.current_group = ParallelGroupRun(group_index=self.current_group_index, tasks=batch)

            self._log("parallel_group_started", {
                "group_index": self.current_group_index,
                "task_count": len(batch),
                "task_titles": [task.title for task in batch],
            })
            if is_new_round:
                index = self.current_group_index
                self._update_session(lambda session: session_ops.start_parallel_group(session, index))
            return StartGroupResult(started=True, group_index=self.current_group_index, tasks=batch)

        self._log("parallel_groups_complete")
        return StartGroupResult(started=False)

    def record_task_start(self, task: Task, task_index: int, process_id: str) -> None:
        self._log("parallel_task_started", {
            "task_id": task_key(task, task_index),
            "task_title": task.title,
            "process_id": process_id,
            "group_index": self.current_group_index,
        })
        self._update_session(lambda session: session_ops.start_task_execution(
            session, task_key(task, task_index), task.title, task_index, process_id,
        ))

    def record_task_complete(
        self,
        task_id: str,
        task_title: str,
        was_successful: bool,
        error: Optional[str] = None,
    ) -> RecordTaskCompleteResult:
        run = self.current_group
        if run is None:
            self._log("parallel_task_without_group", {"task_id": task_id}, level="warn")
            return RecordTaskCompleteResult(group_complete=True, all_succeeded=False)

        self._results.append(ParallelTaskResult(task_id, task_title, was_successful, error))
        if was_successful:
            run.completed_task_ids.add(task_id)
            self._update_session(lambda session: session_ops.complete_task_execution(session, task_id, True))
        else:
            run.failed_task_ids.add(task_id)
            self._update_session(
                lambda session: session_ops.fail_task_execution(session, task_id, error or "Unknown error")
            )

        self._log("parallel_task_completed", {
            "task_id": task_id,
            "task_title": task_title,
            "was_successful": was_successful,
            "completed_count": len(run.completed_task_ids),
            "failed_count": len(run.failed_task_ids),
            "total_in_batch": len(run.tasks),
        })
        return RecordTaskCompleteResult(
            group_complete=run.finished_count >= len(run.tasks),
            all_succeeded=not run.failed_task_ids,
        )

    def finish_batch(self, prd: Prd) -> None:
        """Write the batch summary; close the round if all of its tasks are done."""
        run = self.current_group
        if run is None:
            return
        duration_s = round(time.time() - run.start_time)
        if self._progress:
            self._progress.section(
                f"=== Parallel Group {run.group_index + 1} Batch Complete ===\n"
                f"Completed: {len(run.completed_task_ids)}, "
                f"Failed: {len(run.failed_task_ids)}, "
                f"Duration: {duration_s}s"
            )
        group = self.groups[self.current_group_index]
        if all(_is_done(prd, task) for task in group):
            self._close_group()

    def _close_group(self) -> None:
        index = self.current_group_index
        self._log("parallel_group_completed", {"group_index": index})
        self._update_session(lambda session: session_ops.complete_parallel_group(session, index))
        self.current_group_index += 1
        self.current_group = None

    def get_summary(self) -> ParallelExecutionSummary:
        return ParallelExecutionSummary(
            total_groups=len(self.groups),
            current_group_index=self.current_group_index,
            completed_tasks=sum(1 for result in self._results if result.success),
            failed_tasks=sum(1 for result in self._results if not result.success),
            results=list(self._results),
        )

    def reset(self) -> None:
        self.groups = []
        self.current_group_index = 0
        self.current_group = None
        self._results = []


def _is_done(prd: Prd, task: Task) -> bool:
    current = prd.get_task_by_id(task.id) if task.id else prd.get_task_by_title(task.title)
    # Removed from the PRD (e.g. decomposed elsewhere)
    if current is None:
        return True
    return current.done

"""
Session state transitions.

Every function takes a Session and returns an updated copy; the input is
never mutated. Persistence is the SessionStore's job.
"""

from __future__ import annotations

import copy
from typing import Callable, Optional

from taskloop.models import (
    ActiveTaskExecution,
    ExecutionStatus,
    IterationTiming,
    ParallelGroupState,
    ParallelSessionState,
    Session,
    SessionStatistics,
    SessionStatus,
    now_ms,
)

RESUMABLE_STATUSES = (SessionStatus.RUNNING, SessionStatus.PAUSED, SessionStatus.STOPPED)


def _touch(session: Session, now: Optional[int] = None) -> Session:
    updated = copy.deepcopy(session)
    updated.last_update_time = now if now is not None else now_ms()
    return updated


def create_session(total_iterations: int, current_task_index: int) -> Session:
    now = now_ms()
    return Session(
        start_time=now,
        last_update_time=now,
        current_iteration=0,
        total_iterations=total_iterations,
        current_task_index=current_task_index,
        status=SessionStatus.RUNNING,
        elapsed_time_seconds=0,
        statistics=SessionStatistics(total_iterations=total_iterations),
    )


def record_iteration_start(session: Session, iteration: int) -> Session:
    """Stamp the start time of an iteration, restarting it if already recorded."""
    now = now_ms()
    updated = _touch(session, now)
    timing = updated.statistics.get_timing(iteration)
    if timing is not None:
        timing.start_time = now
    else:
        updated.statistics.iteration_timings.append(IterationTiming(iteration=iteration, start_time=now))
    return updated


def record_iteration_end(session: Session, iteration: int, was_successful: bool) -> Session:
    """
    Close an iteration and fold it into the session statistics.

    An iteration that never recorded a start gets a zero-duration timing.
    """
    now = now_ms()
    updated = _touch(session, now)
    stats = updated.statistics

    timing = stats.get_timing(iteration)
    if timing is not None:
        duration_ms = now - timing.start_time
        timing.end_time = now
        timing.duration_ms = duration_ms
    else:
        duration_ms = 0
        stats.iteration_timings.append(
            IterationTiming(iteration=iteration, start_time=now, end_time=now, duration_ms=0)
        )

    stats.completed_iterations += 1
    if was_successful:
        stats.successful_iterations += 1
    else:
        stats.failed_iterations += 1
    stats.total_duration_ms += duration_ms
    stats.average_duration_ms = stats.total_duration_ms / stats.completed_iterations
    stats.success_rate = stats.successful_iterations / stats.completed_iterations * 100
    return updated


def update_iteration(
    session: Session,
    current_iteration: int,
    current_task_index: int,
    elapsed_time_seconds: int,
) -> Session:
    updated = _touch(session)
    updated.current_iteration = current_iteration
    updated.current_task_index = current_task_index
    updated.elapsed_time_seconds = elapsed_time_seconds
    return updated


def update_status(session: Session, status: SessionStatus) -> Session:
    updated = _touch(session)
    updated.status = status
    return updated


def set_total_iterations(session: Session, total_iterations: int) -> Session:
    updated = _touch(session)
    updated.total_iterations = total_iterations
    updated.statistics.total_iterations = total_iterations
    return updated


def is_resumable(session: Optional[Session]) -> bool:
    return session is not None and session.status in RESUMABLE_STATUSES


# ---------------------------------------------------------------------------
# Parallel execution
# ---------------------------------------------------------------------------


def enable_parallel_mode(session: Session, max_concurrent_tasks: int) -> Session:
    updated = _touch(session)
    updated.parallel_state = ParallelSessionState(max_concurrent_tasks=max_concurrent_tasks)
    return updated


def disable_parallel_mode(session: Session) -> Session:
    updated = _touch(session)
    updated.parallel_state = None
    return updated


def is_parallel_mode(session: Session) -> bool:
    return session.parallel_state is not None and session.parallel_state.is_parallel_mode


def get_current_parallel_group(session: Session) -> Optional[ParallelGroupState]:
    state = session.parallel_state
    if state is None or state.current_group_index < 0:
        return None
    for group in state.execution_groups:
        if group.group_index == state.current_group_index and not group.is_complete:
            return group
    return None


def start_parallel_group(session: Session, group_index: int) -> Session:
    if session.parallel_state is None:
        return session
    now = now_ms()
    updated = _touch(session, now)
    updated.parallel_state.current_group_index = group_index
    updated.parallel_state.execution_groups.append(
        ParallelGroupState(group_index=group_index, start_time=now)
    )
    return updated


def complete_parallel_group(session: Session, group_index: int) -> Session:
    """
    Close a group and drop its finished executions from the active list.

    The group's executions are replaced with their final state from the
    active list.
    """
    if session.parallel_state is None:
        return session
    now = now_ms()
    updated = _touch(session, now)
    state = updated.parallel_state

    for group in state.execution_groups:
        if group.group_index != group_index:
            continue
        member_ids = {execution.task_id for execution in group.task_executions}
        finished = [execution for execution in state.active_executions if execution.task_id in member_ids]
        if finished:
            group.task_executions = copy.deepcopy(finished)
        group.end_time = now
        group.is_complete = True

    state.active_executions = [
        execution for execution in state.active_executions if execution.status == ExecutionStatus.RUNNING
    ]
    return updated


def _update_execution(
    session: Session,
    task_id: str,
    updater: Callable[[ActiveTaskExecution, int], None],
) -> Session:
    if session.parallel_state is None:
        return session
    now = now_ms()
    updated = _touch(session, now)
    state = updated.parallel_state
    executions = list(state.active_executions)
    for group in state.execution_groups:
        executions.extend(group.task_executions)
    for execution in executions:
        if execution.task_id == task_id:
            updater(execution, now)
    return updated


def start_task_execution(
    session: Session,
    task_id: str,
    task_title: str,
    task_index: int,
    process_id: str,
) -> Session:
    """Add a running execution to the active list and the current group."""
    if session.parallel_state is None:
        return session
    now = now_ms()
    updated = _touch(session, now)
    execution = ActiveTaskExecution(
        task_id=task_id,
        task_title=task_title,
        task_index=task_index,
        start_time=now,
        process_id=process_id,
    )
    current_group = get_current_parallel_group(updated)
    if current_group is not None:
        current_group.task_executions.append(copy.deepcopy(execution))
    updated.parallel_state.active_executions.append(execution)
    return updated


def complete_task_execution(session: Session, task_id: str, was_successful: bool) -> Session:
    status = ExecutionStatus.COMPLETED if was_successful else ExecutionStatus.FAILED

    def apply(execution: ActiveTaskExecution, now: int) -> None:
        execution.status = status
        execution.end_time = now

    return _update_execution(session, task_id, apply)


def fail_task_execution(session: Session, task_id: str, error: str) -> Session:
    def apply(execution: ActiveTaskExecution, now: int) -> None:
        execution.status = ExecutionStatus.FAILED
        execution.end_time = now
        execution.last_error = error

    return _update_execution(session, task_id, apply)


def retry_task_execution(session: Session, task_id: str) -> Session:
    def apply(execution: ActiveTaskExecution, now: int) -> None:
        execution.status = ExecutionStatus.RUNNING
        execution.start_time = now
        execution.end_time = None
        execution.retry_count += 1
        execution.last_error = None

    return _update_execution(session, task_id, apply)


def get_active_executions(session: Session) -> list[ActiveTaskExecution]:
    if session.parallel_state is None:
        return []
    return [
        execution
        for execution in session.parallel_state.active_executions
        if execution.status == ExecutionStatus.RUNNING
    ]


def get_task_execution(session: Session, task_id: str) -> Optional[ActiveTaskExecution]:
    if session.parallel_state is None:
        return None
    for execution in session.parallel_state.active_executions:
        if execution.task_id == task_id:
            return execution
    return None


def is_task_executing(session: Session, task_id: str) -> bool:
    execution = get_task_execution(session, task_id)
    return execution is not None and execution.status == ExecutionStatus.RUNNING

"""Display helpers and formatters for the CLI.

Contains Rich formatting utilities for session status, stop reasons, tasks
and guardrails.
"""
from __future__ import annotations

from typing import Optional

from rich.table import Table
from rich.text import Text

from taskloop.models import Guardrail, Prd, Session, SessionStatus, Task
from taskloop.orchestration.orchestrator import RunResult, StopReason

STATUS_DISPLAY: dict[SessionStatus, tuple[str, str]] = {
    SessionStatus.RUNNING: ("Running", "cyan bold"),
    SessionStatus.PAUSED: ("Paused", "yellow"),
    SessionStatus.STOPPED: ("Stopped", "yellow bold"),
    SessionStatus.COMPLETED: ("Completed", "green bold"),
}

STOP_REASON_DISPLAY: dict[StopReason, tuple[str, str]] = {
    StopReason.ALL_COMPLETE: ("All tasks complete", "green bold"),
    StopReason.MAX_ITERATIONS: ("Iteration limit reached", "yellow bold"),
    StopReason.MAX_RUNTIME: ("Runtime limit reached", "yellow bold"),
    StopReason.FATAL_ERROR: ("Fatal error", "red bold"),
    StopReason.DECOMPOSITION_EXHAUSTED: ("Decomposition limit reached", "red"),
    StopReason.ABORTED: ("Aborted", "magenta"),
}


def format_status(status: SessionStatus) -> Text:
    """Format a session status as colored text."""
    display_name, style = STATUS_DISPLAY.get(status, (status.name, "white"))
    return Text(display_name, style=style)


def format_stop_reason(reason: StopReason) -> Text:
    display_name, style = STOP_REASON_DISPLAY.get(reason, (reason.value, "white"))
    return Text(display_name, style=style)


def format_duration(seconds: float) -> str:
    """Format seconds as e.g. '1h 02m', '3m 05s' or '42s'."""
    seconds = int(seconds)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


def format_task_state(task: Task, blocked_by: Optional[list[str]] = None) -> Text:
    if task.done:
        return Text("Done", style="green")
    if blocked_by:
        return Text(f"Blocked by {', '.join(blocked_by)}", style="yellow")
    return Text("Ready", style="cyan")


def build_task_table(prd: Prd, blocked: dict[int, list[str]]) -> Table:
    """Table of every task with its id, dependencies and state."""
    table = Table(title=f"{prd.project} ({len(prd.tasks) - prd.pending_count()}/{len(prd.tasks)} done)")
    table.add_column("#", justify="right", style="dim")
    table.add_column("ID", style="dim")
    table.add_column("Title")
    table.add_column("Depends On", style="dim")
    table.add_column("State")

    for index, task in enumerate(prd.tasks):
        table.add_row(
            str(index + 1),
            task.id or "-",
            task.title,
            ", ".join(task.depends_on or []) or "-",
            format_task_state(task, blocked.get(index)),
        )
    return table


def build_session_table(session: Session) -> Table:
    """Key/value table for a persisted session."""
    stats = session.statistics
    table = Table(show_header=False, box=None)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Status", format_status(session.status))
    table.add_row("Iteration", f"{session.current_iteration}/{session.total_iterations}")
    table.add_row("Elapsed", format_duration(session.elapsed_time_seconds))
    table.add_row(
        "Iterations",
        f"{stats.completed_iterations} completed "
        f"({stats.successful_iterations} ok, {stats.failed_iterations} failed)",
    )
    table.add_row("Success Rate", f"{stats.success_rate:.0f}%")
    if stats.average_duration_ms:
        table.add_row("Avg Duration", format_duration(stats.average_duration_ms / 1000))
    if session.parallel_state is not None:
        parallel = session.parallel_state
        table.add_row(
            "Parallel",
            f"group {parallel.current_group_index + 1}, "
            f"{len(parallel.active_executions)} active, "
            f"max {parallel.max_concurrent_tasks}",
        )
    return table


def build_guardrail_table(guardrails: list[Guardrail]) -> Table:
    table = Table(title="Guardrails")
    table.add_column("ID", style="dim")
    table.add_column("Enabled")
    table.add_column("Trigger")
    table.add_column("Category")
    table.add_column("Instruction")

    for guardrail in guardrails:
        table.add_row(
            guardrail.id,
            Text("yes", style="green") if guardrail.enabled else Text("no", style="dim"),
            guardrail.trigger.value,
            guardrail.category.value,
            guardrail.instruction,
        )
    return table


def format_run_summary(result: RunResult) -> Text:
    text = Text()
    text.append_text(format_stop_reason(result.stop_reason))
    text.append(f" after {result.iterations_run} iteration(s)")
    if result.error:
        text.append(f": {result.error}", style="red")
    return text


LEVEL_STYLES = {"debug": "dim", "info": "cyan", "warn": "yellow", "error": "red bold"}


def build_log_table(entries: list[dict]) -> Table:
    """Table of JSONL log entries: time, level, event and compact data."""
    table = Table(title="Log")
    table.add_column("Time", style="dim", no_wrap=True)
    table.add_column("Level")
    table.add_column("Event", style="bold")
    table.add_column("Data", overflow="fold")

    for entry in entries:
        level = entry.get("level", "")
        data = entry.get("data") or {}
        table.add_row(
            str(entry.get("timestamp", ""))[11:19],
            Text(level, style=LEVEL_STYLES.get(level, "white")),
            entry.get("event_type", ""),
            ", ".join(f"{key}={value}" for key, value in data.items()),
        )
    return table

"""Main Typer app definition and routing.

This is the canonical entry point for the CLI. The app, callback, the
top-level commands and sub-app registrations are all defined here.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.panel import Panel

from taskloop import __version__
from taskloop.cli.common import (
    get_config_or_default,
    get_console,
    get_stores,
    relative_path,
    set_config_file,
    set_project_dir,
)
from taskloop.cli.display import (
    build_session_table,
    build_task_table,
    format_run_summary,
)

# Create Typer app
app = typer.Typer(
    name="taskloop",
    help="Drive a coding agent through a PRD task list, one iteration at a time",
    add_completion=False,
)

# Rich console for output - use singleton from common module
console = get_console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"taskloop version {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    project: Optional[str] = typer.Option(
        None,
        "--project",
        "-p",
        help="Project directory to operate on (default: current directory)",
    ),
    config_file: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to taskloop.yaml (default: ./taskloop.yaml)",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Show diagnostic log messages",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    Taskloop - autonomous task-list runner for AI coding agents.

    Reads .taskloop/prd.json, hands the next ready task to the agent and
    repeats until every task is done or a budget runs out.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if project:
        project_path = Path(project)
        if not project_path.is_dir():
            console.print(f"[red]Error: Project directory not found: {project}[/red]")
            raise typer.Exit(1)
        set_project_dir(str(project_path.absolute()))
    else:
        set_project_dir(None)
    set_config_file(config_file)

    # If no subcommand and no --help, show help
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


# =============================================================================
# Run Command
# =============================================================================


@app.command()
def run(
    iterations: Optional[int] = typer.Option(
        None,
        "--iterations",
        "-n",
        min=1,
        help="Iteration budget (default: iterations.iterations from config).",
    ),
    resume: bool = typer.Option(
        False,
        "--resume",
        "-r",
        help="Continue the persisted session if it is resumable.",
    ),
    full: bool = typer.Option(
        False,
        "--full",
        help="Keep extending the budget while tasks are pending.",
    ),
    parallel: Optional[int] = typer.Option(
        None,
        "--parallel",
        min=1,
        help="Run independent tasks concurrently, at most N at a time.",
    ),
    skip_verification: bool = typer.Option(
        False,
        "--skip-verification",
        help="Skip verification checks even when enabled in config.",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Do not echo agent output.",
    ),
) -> None:
    """
    Run the iteration loop until a stop condition.

    Exit codes: 0 all tasks complete, 1 fatal error, 2 iteration limit,
    3 runtime limit, 4 decomposition limit, 130 aborted.

    Examples:
        taskloop run -n 20
        taskloop run --resume
        taskloop run --parallel 3 --full
    """
    from taskloop.logger import TaskloopLogger
    from taskloop.orchestration.orchestrator import Orchestrator

    config = get_config_or_default()
    if full:
        config.iterations.full_mode = True
    if parallel is not None:
        config.parallel.enabled = True
        config.parallel.max_concurrent_tasks = parallel

    stores = get_stores(config)
    prd = stores.prd.load().value
    project = prd.project if prd else Path(config.repo_root).name
    task_logger = TaskloopLogger(project, config)

    def echo(line: str) -> None:
        console.print(line, markup=False, highlight=False)

    orchestrator = Orchestrator(
        config,
        logger=task_logger,
        stores=stores,
        on_output=None if quiet else echo,
    )

    console.print(Panel(
        f"[bold]{project}[/bold]\n"
        f"PRD: {relative_path(config.prd_path)}\n"
        f"Agent: {' '.join(config.agent.command)}",
        title="taskloop",
        border_style="cyan",
    ))

    result = orchestrator.run(
        iterations=iterations,
        resume=resume,
        skip_verification=skip_verification,
    )

    console.print()
    console.print(format_run_summary(result))
    raise typer.Exit(result.stop_reason.exit_code)


# =============================================================================
# Status Command
# =============================================================================


@app.command()
def status() -> None:
    """Show the persisted session and task progress."""
    config = get_config_or_default()
    stores = get_stores(config)

    prd_result = stores.prd.load()
    if prd_result.value is None:
        console.print(f"[yellow]No PRD found at {relative_path(config.prd_path)}[/yellow]")
        if prd_result.error:
            console.print(f"[dim]{prd_result.error}[/dim]")
        raise typer.Exit(1)

    prd = prd_result.value
    done = len(prd.tasks) - prd.pending_count()
    console.print(f"[bold]{prd.project}[/bold]: {done}/{len(prd.tasks)} tasks done")

    session = stores.session.load().value
    if session is None:
        console.print("[dim]No session recorded yet.[/dim]")
        return
    console.print(Panel(build_session_table(session), title="Session", border_style="blue"))


# =============================================================================
# Tasks Command
# =============================================================================


@app.command()
def tasks(
    groups: bool = typer.Option(
        False,
        "--groups",
        "-g",
        help="Show the parallel execution rounds.",
    ),
) -> None:
    """List tasks with their dependencies; validate the dependency graph."""
    from taskloop.dependency_graph import (
        get_all_tasks_with_dependency_info,
        get_parallel_execution_groups,
        validate_dependencies,
    )

    config = get_config_or_default()
    prd_result = get_stores(config).prd.load()
    if prd_result.value is None:
        console.print(f"[yellow]No PRD found at {relative_path(config.prd_path)}[/yellow]")
        raise typer.Exit(1)
    prd = prd_result.value

    blocked = {
        info.index: info.blocked_by
        for info in get_all_tasks_with_dependency_info(prd)
        if info.blocked_by and not info.task.done
    }
    console.print(build_task_table(prd, blocked))

    validation = validate_dependencies(prd)
    if not validation.is_valid:
        console.print()
        console.print("[red]Dependency errors:[/red]")
        for error in validation.errors:
            console.print(f"  [red]{error.type}[/red] {error.details}")
        raise typer.Exit(1)

    if groups:
        plan = get_parallel_execution_groups(prd)
        console.print()
        for index, group in enumerate(plan.groups, 1):
            titles = ", ".join(task.title for task in group)
            console.print(f"[cyan]Round {index}:[/cyan] {titles}")
        if plan.unscheduled:
            titles = ", ".join(task.title for task in plan.unscheduled)
            console.print(f"[red]Never schedulable:[/red] {titles}")
            raise typer.Exit(1)


# =============================================================================
# Failures Command
# =============================================================================


@app.command()
def failures(
    clear: bool = typer.Option(
        False,
        "--clear",
        help="Delete the recorded failure history.",
    ),
) -> None:
    """Analyze recorded failures and print the pattern report."""
    from taskloop.failure_patterns import FailureHistory, format_pattern_report

    config = get_config_or_default()
    history = FailureHistory(get_stores(config).failure_history)

    if clear:
        history.clear()
        console.print("[green]Failure history cleared.[/green]")
        return

    report = history.generate_pattern_report()
    if report.total_failures == 0:
        console.print("[dim]No failures recorded.[/dim]")
        return
    console.print(format_pattern_report(report), markup=False, highlight=False)


# =============================================================================
# Logs Command
# =============================================================================


@app.command()
def logs(
    level: Optional[str] = typer.Option(
        None,
        "--level",
        "-l",
        help="Lowest level to show: debug, info, warn or error.",
    ),
    event: Optional[str] = typer.Option(
        None,
        "--event",
        "-e",
        help="Only show this event type (e.g. agent_error).",
    ),
    date: Optional[str] = typer.Option(
        None,
        "--date",
        help="Day to read, YYYY-MM-DD (default: today).",
    ),
    limit: int = typer.Option(
        50,
        "--limit",
        "-n",
        min=1,
        help="Show the last N matching entries.",
    ),
) -> None:
    """Show recent entries from the JSONL event log."""
    from taskloop.cli.display import build_log_table
    from taskloop.logger import LogLevel, TaskloopLogger

    if level is not None and level not in LogLevel.ORDER:
        console.print(f"[red]Unknown level: {level}[/red] (choose from {', '.join(LogLevel.ORDER)})")
        raise typer.Exit(1)

    config = get_config_or_default()
    prd = get_stores(config).prd.load().value
    project = prd.project if prd else Path(config.repo_root).name

    entries = TaskloopLogger(project, config).read_entries(
        date=date, min_level=level, event_type=event, limit=limit,
    )
    if not entries:
        console.print("[dim]No log entries.[/dim]")
        return
    console.print(build_log_table(entries))


# =============================================================================
# Version Command
# =============================================================================


@app.command()
def version() -> None:
    """Show version."""
    console.print(f"taskloop version {__version__}")


# =========================================================================
# Sub-App Registration
# =========================================================================

from taskloop.cli.guardrails import app as guardrails_app  # noqa: E402
from taskloop.cli.memory import app as memory_app  # noqa: E402

app.add_typer(guardrails_app, name="guardrails")
app.add_typer(memory_app, name="memory")


# =========================================================================
# Entry Point
# =========================================================================


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


__all__ = ["app", "cli_main"]

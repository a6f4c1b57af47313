"""Session memory commands.

Show, export and clear the lessons collected across sessions, and attach
notes to tasks.
"""
from __future__ import annotations

import json

import typer

from taskloop.cli.common import get_config_or_default, get_console, get_stores
from taskloop.session_memory import SessionMemoryManager

# Create memory command group
app = typer.Typer(
    name="memory",
    help="Inspect the lessons kept across sessions",
    no_args_is_help=True,
)

console = get_console()


def _manager() -> SessionMemoryManager:
    config = get_config_or_default()
    return SessionMemoryManager(get_stores(config).session_memory)


@app.command()
def show(
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print the raw session-memory document.",
    ),
) -> None:
    """Show lessons, patterns, failed approaches and task notes."""
    manager = _manager()
    if not manager.exists():
        console.print("[dim]No session memory found. Memory is created automatically during sessions.[/dim]")
        return

    memory = manager.get()
    if as_json:
        console.print(json.dumps(memory.to_dict(), indent=2), markup=False, highlight=False)
        return

    console.print(f"[bold]Session Memory:[/bold] {memory.project_name}")
    console.print(f"[dim]Last updated: {memory.last_updated}[/dim]")
    sections = (
        ("Lessons Learned", memory.lessons_learned),
        ("Successful Patterns", memory.successful_patterns),
        ("Failed Approaches", memory.failed_approaches),
    )
    for heading, items in sections:
        if not items:
            continue
        console.print()
        console.print(f"[cyan]{heading}:[/cyan]")
        for item in items:
            console.print(f"  - {item}", markup=False, highlight=False)

    if memory.task_notes:
        console.print()
        console.print("[cyan]Task Notes:[/cyan]")
        for title, note in memory.task_notes.items():
            console.print(f"  {title}:", markup=False, highlight=False)
            for line in note.splitlines():
                console.print(f"    {line}", markup=False, highlight=False)

    stats = manager.get_stats()
    console.print()
    console.print(
        f"Lessons: {stats.lessons_count}  Patterns: {stats.patterns_count}  "
        f"Failed approaches: {stats.failed_approaches_count}  Task notes: {stats.task_notes_count}"
    )


@app.command()
def export() -> None:
    """Print the session memory as Markdown."""
    manager = _manager()
    if not manager.exists():
        console.print("[dim]No session memory found.[/dim]")
        return
    console.print(manager.export_as_markdown(), markup=False, highlight=False)


@app.command()
def note(
    task_title: str = typer.Argument(..., help="Task the note belongs to."),
    text: str = typer.Argument(..., help="Note text."),
) -> None:
    """Attach a note to a task."""
    _manager().add_task_note(task_title, text)
    console.print(f"[green]Note added to[/green] {task_title}")


@app.command()
def clear(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Skip the confirmation prompt.",
    ),
) -> None:
    """Clear all session memory."""
    manager = _manager()
    stats = manager.get_stats()
    total = stats.lessons_count + stats.patterns_count + stats.failed_approaches_count + stats.task_notes_count
    if total == 0:
        console.print("[dim]Session memory is already empty.[/dim]")
        return

    # Confirm unless --force
    if not force:
        confirm = typer.confirm(
            f"Clear {stats.lessons_count} lessons, {stats.patterns_count} patterns, "
            f"{stats.failed_approaches_count} failed approaches and {stats.task_notes_count} task notes?"
        )
        if not confirm:
            console.print("[dim]Cancelled.[/dim]")
            raise typer.Exit(0)

    manager.clear()
    console.print("[green]Session memory cleared.[/green]")

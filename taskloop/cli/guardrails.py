"""Guardrail commands.

List, add, toggle and remove the standing instructions injected into every
prompt, and apply suggestions mined from the failure history.
"""
from __future__ import annotations

import typer

from taskloop.cli.common import get_config_or_default, get_console, get_stores
from taskloop.cli.display import build_guardrail_table
from taskloop.guardrails import GuardrailManager
from taskloop.models import GuardrailCategory, GuardrailTrigger

# Create guardrails command group
app = typer.Typer(
    name="guardrails",
    help="Manage prompt guardrails",
    no_args_is_help=True,
)

console = get_console()


def _manager() -> GuardrailManager:
    config = get_config_or_default()
    return GuardrailManager(get_stores(config).guardrails)


@app.command("list")
def list_guardrails(
    active: bool = typer.Option(
        False,
        "--active",
        "-a",
        help="Only show enabled guardrails.",
    ),
) -> None:
    """List guardrails."""
    manager = _manager()
    guardrails = manager.get_active() if active else manager.get()
    if not guardrails:
        console.print("[dim]No guardrails.[/dim]")
        return
    console.print(build_guardrail_table(guardrails))


@app.command()
def add(
    instruction: str = typer.Argument(..., help="Instruction text for the agent."),
    trigger: GuardrailTrigger = typer.Option(
        GuardrailTrigger.ALWAYS,
        "--trigger",
        "-t",
        help="When the guardrail applies.",
    ),
    category: GuardrailCategory = typer.Option(
        GuardrailCategory.QUALITY,
        "--category",
        help="Guardrail category.",
    ),
    disabled: bool = typer.Option(
        False,
        "--disabled",
        help="Add the guardrail switched off.",
    ),
) -> None:
    """Add a guardrail."""
    guardrail = _manager().add(
        instruction,
        trigger=trigger,
        category=category,
        enabled=not disabled,
    )
    console.print(f"[green]Added guardrail[/green] {guardrail.id}")


@app.command()
def toggle(
    guardrail_id: str = typer.Argument(..., help="Guardrail ID."),
) -> None:
    """Enable or disable a guardrail."""
    guardrail = _manager().toggle(guardrail_id)
    if guardrail is None:
        console.print(f"[red]Guardrail not found:[/red] {guardrail_id}")
        raise typer.Exit(1)
    state = "enabled" if guardrail.enabled else "disabled"
    console.print(f"Guardrail {guardrail.id} {state}")


@app.command()
def remove(
    guardrail_id: str = typer.Argument(..., help="Guardrail ID."),
) -> None:
    """Remove a guardrail."""
    if not _manager().remove(guardrail_id):
        console.print(f"[red]Guardrail not found:[/red] {guardrail_id}")
        raise typer.Exit(1)
    console.print(f"Removed guardrail {guardrail_id}")


@app.command()
def suggest(
    apply: bool = typer.Option(
        False,
        "--apply",
        help="Add the suggestions (disabled) to the guardrail list.",
    ),
) -> None:
    """Suggest guardrails from recurring failure patterns."""
    from taskloop.failure_patterns import FailureHistory

    config = get_config_or_default()
    stores = get_stores(config)
    suggestions = FailureHistory(stores.failure_history).get_suggested_guardrails()
    if not suggestions:
        console.print("[dim]No recurring failure patterns to suggest guardrails for.[/dim]")
        return

    console.print(build_guardrail_table(suggestions))
    if not apply:
        console.print("[dim]Run with --apply to add them.[/dim]")
        return

    manager = GuardrailManager(stores.guardrails)
    existing = {guardrail.instruction for guardrail in manager.get()}
    added = 0
    for suggestion in suggestions:
        if suggestion.instruction in existing:
            continue
        manager.add(
            suggestion.instruction,
            trigger=suggestion.trigger,
            category=suggestion.category,
            enabled=False,
            added_after_failure=suggestion.added_after_failure,
        )
        added += 1
    console.print(f"[green]Added {added} suggested guardrail(s)[/green] (disabled; use 'toggle' to enable)")

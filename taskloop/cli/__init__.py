"""CLI package for taskloop.

Modules:
    app.py        - Main Typer app, run/status/tasks/failures/logs/version commands
    guardrails.py - Guardrail commands (list, add, toggle, remove, suggest)
    memory.py     - Session memory commands (show, export, note, clear)
    display.py    - Rich formatting utilities
    common.py     - Shared helpers (get_console, get_config_or_default)

Usage:
    from taskloop.cli import app, cli_main
"""
from taskloop.cli.app import app, cli_main

__all__ = ["app", "cli_main"]

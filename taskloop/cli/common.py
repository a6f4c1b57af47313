"""Common utilities and global state for the CLI.

Contains the project directory override, the console singleton and config
loading. This module should NOT import from the command modules to avoid
circular imports.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console

if TYPE_CHECKING:
    from taskloop.config import TaskloopConfig
    from taskloop.state_store import Stores

# ============================================================================
# Global State
# ============================================================================

# Global project directory override (set via --project flag)
_project_dir: Optional[str] = None

# Global config file override (set via --config flag)
_config_file: Optional[str] = None

# Console singleton
_console: Optional[Console] = None


def get_project_dir() -> Optional[str]:
    """Get the project directory override if set."""
    return _project_dir


def set_project_dir(path: Optional[str]) -> None:
    """Set the project directory override."""
    global _project_dir
    _project_dir = path


def set_config_file(path: Optional[str]) -> None:
    """Set the config file override."""
    global _config_file
    _config_file = path


def get_console() -> Console:
    """Get or create the console singleton."""
    global _console
    if _console is None:
        _console = Console()
    return _console


# ============================================================================
# Config Helpers
# ============================================================================


def get_config_or_default() -> "TaskloopConfig":
    """
    Load taskloop.yaml from the project directory, or defaults without one.

    Exits with code 1 when the file exists but is invalid.
    """
    from taskloop.config import ConfigError, load_config_or_default

    project_dir = get_project_dir()
    if project_dir:
        os.chdir(project_dir)

    try:
        return load_config_or_default(_config_file)
    except ConfigError as e:
        get_console().print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1)


def get_stores(config: "TaskloopConfig") -> "Stores":
    """Document stores for the configured data directory."""
    from taskloop.state_store import Stores

    return Stores.from_config(config)


def relative_path(path: Path) -> str:
    """Path relative to the working directory when possible."""
    try:
        return str(path.relative_to(Path.cwd()))
    except ValueError:
        return str(path)

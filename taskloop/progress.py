"""
Append-only progress journal.

Human-readable log at <data_dir>/progress.txt that the agent itself reads at
the start of every iteration. Entries are timestamped one-liners; larger
blocks (retry analysis, decomposition, verification results) are appended
as sections. The file rotates once it grows past max_bytes.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from taskloop.utils.fs import append_file, rotate_file

DEFAULT_MAX_FILE_SIZE_BYTES = 1024 * 1024
DEFAULT_MAX_BACKUP_FILES = 2


class ProgressLog:
    """
    Append-only human-readable progress log.

    Never truncates; an oversized file is rotated to progress.txt.1,
    progress.txt.2, ... before the next append.
    """

    def __init__(
        self,
        path: Path,
        max_bytes: int = DEFAULT_MAX_FILE_SIZE_BYTES,
        max_backups: int = DEFAULT_MAX_BACKUP_FILES,
    ) -> None:
        """
        Initialize the progress log.

        Args:
            path: Path to progress.txt.
            max_bytes: Size at which the file is rotated.
            max_backups: Number of rotated files kept.
        """
        self._path = Path(path)
        self._max_bytes = max_bytes
        self._max_backups = max_backups

    @property
    def path(self) -> Path:
        return self._path

    def _rotate_if_needed(self) -> None:
        if self._path.exists() and self._path.stat().st_size >= self._max_bytes:
            rotate_file(self._path, self._max_backups)

    def _append(self, text: str) -> None:
        self._rotate_if_needed()
        append_file(self._path, text)

    def initialize(self, project: str) -> bool:
        """
        Write the journal header if the file does not exist yet.

        Returns:
            True if a new file was created.
        """
        if self._path.exists():
            return False
        timestamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        self._append(
            "=== PROGRESS LOG ===\n"
            f"Project: {project}\n"
            f"Created: {timestamp}\n"
            "Read this file at the start of every iteration. Append what you did at the end.\n\n"
        )
        return True

    def read(self) -> str:
        if not self._path.exists():
            return ""
        return self._path.read_text(encoding="utf-8")

    def entry(
        self,
        kind: str,
        message: str,
        iteration: Optional[int] = None,
        total: Optional[int] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Append one timestamped entry.

        Args:
            kind: Entry type such as "iteration_start" or "retry".
            message: The entry text.
            iteration: Current iteration, if applicable.
            total: Total iterations, shown with the iteration.
            context: Extra data rendered as JSON after the message.
        """
        timestamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        tag = f"[{kind.upper().replace('_', ' ')}]"
        iteration_info = f"[Iteration {iteration}/{total}] " if iteration is not None else ""
        context_str = f" | {json.dumps(context, default=str)}" if context else ""
        self._append(f"{timestamp} {tag} {iteration_info}{message}{context_str}\n")

    def section(self, text: str) -> None:
        """Append a multi-line block followed by a blank line."""
        self._append(text.rstrip("\n") + "\n\n")

    def log_session_start(self, project: str, total_iterations: int, total_tasks: int, completed_tasks: int) -> None:
        self.entry(
            "session_start",
            f'Session started for project "{project}"',
            iteration=0,
            total=total_iterations,
            context={"totalTasks": total_tasks, "completedTasks": completed_tasks},
        )

    def log_session_resume(self, project: str, iteration: int, total_iterations: int) -> None:
        self.entry("session_resume", f'Session resumed for project "{project}"', iteration, total_iterations)

    def log_iteration_start(self, iteration: int, total: int, task_title: Optional[str]) -> None:
        self.entry("iteration_start", f"Working on: {task_title or 'next available task'}", iteration, total)

    def log_iteration_complete(self, iteration: int, total: int, success: bool, duration_ms: int) -> None:
        outcome = "succeeded" if success else "failed"
        self.entry(
            "iteration_complete",
            f"Iteration {outcome}",
            iteration,
            total,
            context={"durationMs": duration_ms},
        )

    def log_error(self, message: str, iteration: Optional[int] = None, total: Optional[int] = None) -> None:
        self.entry("error", message, iteration, total)

    def log_session_complete(self, stop_reason: str, iterations_run: int) -> None:
        self.entry(
            "session_complete",
            f"Session finished: {stop_reason}",
            context={"iterationsRun": iterations_run},
        )

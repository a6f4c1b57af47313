"""
Structured JSONL logging for taskloop.

Every component that accepts an optional ``logger`` writes through a
TaskloopLogger. Entries land in <data_dir>/logs/<project>-YYYY-MM-DD.jsonl,
one JSON object per line, and can be read back with read_entries (the
``taskloop logs`` command does exactly that).
"""

from __future__ import annotations

import json
import threading
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from taskloop.config import TaskloopConfig, load_config_or_default


class LogLevel:
    """Log level constants, lowest first."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    ORDER = (DEBUG, INFO, WARN, ERROR)

    @classmethod
    def rank(cls, level: str) -> int:
        try:
            return cls.ORDER.index(level)
        except ValueError:
            return cls.ORDER.index(cls.INFO)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


class TaskloopLogger:
    """
    JSONL event logger for one project.

    Entry fields: timestamp, level, event_type, project, data. Entries below
    min_level are dropped. Safe to share between the loop thread and
    parallel-mode workers.
    """

    def __init__(
        self,
        project: str,
        config: Optional[TaskloopConfig] = None,
        min_level: str = LogLevel.DEBUG,
    ) -> None:
        """
        Args:
            project: Project name, used in the file name and every entry.
            config: Config supplying the data directory. Loaded from
                taskloop.yaml (or defaults) on first use when omitted.
            min_level: Lowest level that is written.
        """
        self.project = project
        self.min_level = min_level
        self._config = config
        self._lock = threading.Lock()

    @property
    def config(self) -> TaskloopConfig:
        if self._config is None:
            self._config = load_config_or_default()
        return self._config

    @property
    def log_path(self) -> Path:
        """Today's log file."""
        return self.path_for(_today())

    def path_for(self, date: str) -> Path:
        # Project names come from the PRD and may contain path separators
        stem = "".join(c if c.isalnum() or c in "-_." else "-" for c in self.project) or "taskloop"
        return self.config.logs_path / f"{stem}-{date}.jsonl"

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
    ) -> None:
        """
        Append one entry.

        Args:
            event_type: Snake-case event name such as "iteration_start".
            data: Event payload; values that are not JSON types are
                written with str().
            level: debug, info, warn or error.
        """
        if LogLevel.rank(level) < LogLevel.rank(self.min_level):
            return
        line = json.dumps({
            "timestamp": _utc_timestamp(),
            "level": level,
            "event_type": event_type,
            "project": self.project,
            "data": data or {},
        }, default=str)

        path = self.log_path
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a") as f:
                f.write(line + "\n")

    def debug(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.DEBUG)

    def info(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.INFO)

    def warn(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.WARN)

    def error(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.ERROR)

    # Loop events

    def log_session_start(self, total_iterations: int, resumed: bool = False) -> None:
        self.info("session_start", {"total_iterations": total_iterations, "resumed": resumed})

    def log_iteration_start(self, iteration: int, total: int, task: Optional[str]) -> None:
        self.info("iteration_start", {"iteration": iteration, "total": total, "task": task})

    def log_iteration_complete(self, iteration: int, success: bool, duration_ms: int) -> None:
        self.info("iteration_complete", {
            "iteration": iteration,
            "success": success,
            "duration_ms": duration_ms,
        })

    def log_agent_start(self, task: Optional[str], attempt: int) -> None:
        self.debug("agent_start", {"task": task, "attempt": attempt})

    def log_agent_complete(self, task: Optional[str], exit_code: Optional[int], is_complete: bool) -> None:
        self.info("agent_complete", {"task": task, "exit_code": exit_code, "is_complete": is_complete})

    def log_agent_error(
        self,
        task: Optional[str],
        error: str,
        exit_code: Optional[int],
        is_fatal: bool,
    ) -> None:
        self.error("agent_error", {
            "task": task,
            "error": error,
            "exit_code": exit_code,
            "is_fatal": is_fatal,
        })

    def log_max_iterations_reached(self, total: int) -> None:
        self.warn("max_iterations_reached", {"total": total})

    def log_session_complete(self, stop_reason: str, iterations_run: int) -> None:
        self.info("session_complete", {"stop_reason": stop_reason, "iterations_run": iterations_run})

    # Reading

    def read_entries(
        self,
        date: Optional[str] = None,
        min_level: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Read entries from one day's file, oldest first.

        Args:
            date: YYYY-MM-DD; today when omitted.
            min_level: Keep entries at this level or above.
            event_type: Keep only this event type.
            limit: Keep only the last N matching entries.

        Returns:
            Matching entries. Lines that are not valid JSON are skipped.
        """
        path = self.path_for(date or _today())
        if not path.exists():
            return []

        floor = LogLevel.rank(min_level) if min_level else 0
        entries: deque[dict[str, Any]] = deque(maxlen=limit if limit else None)
        with open(path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(entry, dict):
                    continue
                if LogLevel.rank(entry.get("level", "")) < floor:
                    continue
                if event_type and entry.get("event_type") != event_type:
                    continue
                entries.append(entry)
        return list(entries)

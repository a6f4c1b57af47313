"""
Cross-session memory.

Lessons, successful patterns and approaches to avoid, collected by the
learning handler and kept in session-memory.json so later sessions (and the
`taskloop memory` command) can see what worked before. Each list is
deduplicated and capped, keeping the newest entries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from taskloop.guardrails import utc_now_iso
from taskloop.models import SessionMemory
from taskloop.state_store import SessionMemoryStore

logger = logging.getLogger(__name__)

DEFAULT_PROJECT_NAME = "Unknown Project"
MAX_LESSONS = 50
MAX_PATTERNS = 20
MAX_FAILED_APPROACHES = 20


@dataclass
class SessionMemoryStats:
    lessons_count: int = 0
    patterns_count: int = 0
    failed_approaches_count: int = 0
    task_notes_count: int = 0
    last_updated: Optional[str] = None


def _append_capped(items: list[str], item: str, limit: int) -> Optional[list[str]]:
    """items plus item, trimmed to the newest limit entries; None if already present."""
    if item in items:
        return None
    return (items + [item])[-limit:]


def export_as_markdown(memory: SessionMemory) -> str:
    lines = [f"# Session Memory: {memory.project_name}", "", f"Last updated: {memory.last_updated}", ""]
    sections = (
        ("Lessons Learned", memory.lessons_learned),
        ("Successful Patterns", memory.successful_patterns),
        ("Failed Approaches", memory.failed_approaches),
    )
    for heading, items in sections:
        if items:
            lines.extend([f"## {heading}", ""])
            lines.extend(f"- {item}" for item in items)
            lines.append("")
    if memory.task_notes:
        lines.extend(["## Task Notes", ""])
        for title, note in memory.task_notes.items():
            lines.extend([f"### {title}", "", note, ""])
    return "\n".join(lines)


class SessionMemoryManager:
    """Reads and appends to the session memory through a SessionMemoryStore."""

    def __init__(self, store: SessionMemoryStore, project_name: str = DEFAULT_PROJECT_NAME) -> None:
        self._store = store
        self.project_name = project_name
        self._cache: Optional[SessionMemory] = None

    def load(self) -> SessionMemory:
        """Read the memory from disk; an empty memory when missing or invalid."""
        result = self._store.reload()
        if result.error:
            logger.warning("Starting with empty session memory: %s", result.error)
        if result.value is None:
            return SessionMemory(project_name=self.project_name, last_updated=utc_now_iso())
        return result.value

    def get(self) -> SessionMemory:
        if self._cache is None:
            self._cache = self.load()
        return self._cache

    def save(self, memory: SessionMemory) -> None:
        memory.last_updated = utc_now_iso()
        self._store.save(memory)
        self._cache = memory

    def exists(self) -> bool:
        return self._store.exists()

    def initialize(self, project_name: str) -> SessionMemory:
        """Load the memory for project_name, creating the file when absent."""
        self.project_name = project_name
        self._cache = None
        memory = self.get()
        if not self.exists():
            self.save(memory)
        return memory

    def add_lesson(self, lesson: str) -> bool:
        return self._append("lessons_learned", lesson, MAX_LESSONS)

    def add_success_pattern(self, pattern: str) -> bool:
        return self._append("successful_patterns", pattern, MAX_PATTERNS)

    def add_failed_approach(self, approach: str) -> bool:
        return self._append("failed_approaches", approach, MAX_FAILED_APPROACHES)

    def _append(self, attribute: str, item: str, limit: int) -> bool:
        memory = self.get()
        updated = _append_capped(getattr(memory, attribute), item, limit)
        if updated is None:
            return False
        setattr(memory, attribute, updated)
        self.save(memory)
        return True

    def add_task_note(self, task_title: str, note: str) -> None:
        """Attach a note to a task; later notes go on new lines."""
        memory = self.get()
        existing = memory.task_notes.get(task_title)
        memory.task_notes[task_title] = f"{existing}\n{note}" if existing else note
        self.save(memory)

    def clear(self) -> SessionMemoryStats:
        """Empty every list, keeping the project name. Returns what was removed."""
        stats = self.get_stats()
        if self.exists():
            self.save(SessionMemory(project_name=self.get().project_name))
        return stats

    def get_stats(self) -> SessionMemoryStats:
        if not self.exists():
            return SessionMemoryStats()
        memory = self.get()
        return SessionMemoryStats(
            lessons_count=len(memory.lessons_learned),
            patterns_count=len(memory.successful_patterns),
            failed_approaches_count=len(memory.failed_approaches),
            task_notes_count=len(memory.task_notes),
            last_updated=memory.last_updated,
        )

    def export_as_markdown(self) -> str:
        return export_as_markdown(self.get())

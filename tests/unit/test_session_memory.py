"""Tests for cross-session memory."""
import json

import pytest

from taskloop.models import SessionMemory
from taskloop.session_memory import (
    MAX_PATTERNS,
    SessionMemoryManager,
    export_as_markdown,
)
from taskloop.state_store import SessionMemoryStore


@pytest.fixture
def manager(config):
    return SessionMemoryManager(SessionMemoryStore(config.session_memory_path), "demo")


def stored(config) -> dict:
    return json.loads(config.session_memory_path.read_text())


class TestSessionMemoryModel:
    """Tests for SessionMemory serialization."""

    def test_wire_keys(self):
        memory = SessionMemory(
            project_name="demo",
            lessons_learned=["a"],
            task_notes={"Parser": "use the tokenizer"},
            last_updated="2026-01-01T00:00:00Z",
        )
        data = memory.to_dict()
        assert data["projectName"] == "demo"
        assert data["lessonsLearned"] == ["a"]
        assert data["successfulPatterns"] == []
        assert data["taskNotes"] == {"Parser": "use the tokenizer"}
        assert SessionMemory.from_dict(data) == memory

    @pytest.mark.parametrize("field_name,value", [
        ("projectName", 3),
        ("lessonsLearned", "one lesson"),
        ("failedApproaches", [1, 2]),
        ("taskNotes", ["note"]),
        ("taskNotes", {"Parser": 5}),
        ("lastUpdated", None),
    ])
    def test_rejects_mistyped_fields(self, field_name, value):
        data = SessionMemory(project_name="demo", last_updated="x").to_dict()
        data[field_name] = value
        with pytest.raises(ValueError):
            SessionMemory.from_dict(data)


class TestSessionMemoryManager:
    """Tests for SessionMemoryManager."""

    def test_initialize_creates_file(self, manager, config):
        assert not manager.exists()
        memory = manager.initialize("demo")
        assert memory.project_name == "demo"
        assert stored(config)["projectName"] == "demo"
        assert stored(config)["lastUpdated"]

    def test_initialize_keeps_existing_memory(self, manager, config):
        manager.initialize("demo")
        manager.add_lesson("Run the linter first")

        fresh = SessionMemoryManager(SessionMemoryStore(config.session_memory_path))
        assert fresh.initialize("demo").lessons_learned == ["Run the linter first"]

    def test_entries_are_deduplicated(self, manager, config):
        assert manager.add_lesson("Check imports")
        assert not manager.add_lesson("Check imports")
        manager.add_failed_approach("Verification failed: test")
        assert stored(config)["lessonsLearned"] == ["Check imports"]
        assert stored(config)["failedApproaches"] == ["Verification failed: test"]

    def test_lists_are_capped_keeping_newest(self, manager, config):
        for n in range(MAX_PATTERNS + 5):
            manager.add_success_pattern(f"Completed task: {n}")
        patterns = stored(config)["successfulPatterns"]
        assert len(patterns) == MAX_PATTERNS
        assert patterns[0] == "Completed task: 5"
        assert patterns[-1] == f"Completed task: {MAX_PATTERNS + 4}"

    def test_task_notes_accumulate(self, manager, config):
        manager.add_task_note("Parser", "use the tokenizer")
        manager.add_task_note("Parser", "watch for unicode")
        assert stored(config)["taskNotes"] == {"Parser": "use the tokenizer\nwatch for unicode"}

    def test_invalid_file_starts_empty(self, manager, config):
        config.session_memory_path.write_text(json.dumps({"projectName": "demo", "lessonsLearned": 1}))
        memory = manager.get()
        assert memory.project_name == "demo"
        assert memory.lessons_learned == []

    def test_stats_and_clear(self, manager, config):
        assert manager.get_stats().lessons_count == 0
        assert manager.get_stats().last_updated is None

        manager.add_lesson("one")
        manager.add_success_pattern("two")
        manager.add_task_note("A", "three")

        removed = manager.clear()
        assert removed.lessons_count == 1
        assert removed.patterns_count == 1
        assert removed.task_notes_count == 1
        after = stored(config)
        assert after["projectName"] == "demo"
        assert after["lessonsLearned"] == []
        assert after["taskNotes"] == {}


class TestExportAsMarkdown:
    """Tests for the Markdown export."""

    def test_sections(self):
        memory = SessionMemory(
            project_name="demo",
            lessons_learned=["Check imports"],
            failed_approaches=["Verification failed: lint"],
            task_notes={"Parser": "use the tokenizer"},
            last_updated="2026-01-01T00:00:00Z",
        )
        text = export_as_markdown(memory)
        assert text.startswith("# Session Memory: demo")
        assert "## Lessons Learned\n\n- Check imports" in text
        assert "## Successful Patterns" not in text
        assert "## Failed Approaches\n\n- Verification failed: lint" in text
        assert "### Parser\n\nuse the tokenizer" in text

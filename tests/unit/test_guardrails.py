"""Tests for GuardrailManager."""
import json

import pytest

from taskloop.guardrails import GuardrailManager, format_guardrails_for_prompt
from taskloop.models import GuardrailCategory, GuardrailTrigger
from taskloop.state_store import GuardrailsStore


@pytest.fixture
def manager(config) -> GuardrailManager:
    return GuardrailManager(GuardrailsStore(config.guardrails_path))


class TestDefaults:
    """Tests for the built-in guardrails."""

    def test_defaults_when_file_missing(self, manager):
        ids = [g.id for g in manager.get()]
        assert ids == ["verify-before-commit", "read-existing-patterns", "fix-build-before-proceeding"]
        assert not manager.exists()

    def test_initialize_writes_defaults_once(self, manager, config):
        manager.initialize()
        data = json.loads(config.guardrails_path.read_text())
        assert len(data["guardrails"]) == 3

        manager.remove("verify-before-commit")
        manager.initialize()
        data = json.loads(config.guardrails_path.read_text())
        assert len(data["guardrails"]) == 2

    def test_corrupt_file_falls_back_to_defaults(self, manager, config):
        config.guardrails_path.write_text("{ not json")
        assert len(manager.load()) == 3

    def test_wrong_shape_falls_back_to_defaults(self, manager, config):
        config.guardrails_path.write_text(json.dumps([{"id": "x"}]))
        assert len(manager.load()) == 3


class TestEditing:
    """Tests for add/remove/toggle."""

    def test_add_persists(self, manager, config):
        guardrail = manager.add(
            "Never edit generated files",
            trigger=GuardrailTrigger.ON_ERROR,
            category=GuardrailCategory.SAFETY,
        )
        assert guardrail.id.startswith("guardrail-")

        reloaded = GuardrailManager(GuardrailsStore(config.guardrails_path))
        stored = reloaded.get_by_id(guardrail.id)
        assert stored.instruction == "Never edit generated files"
        assert stored.trigger == GuardrailTrigger.ON_ERROR
        assert stored.category == GuardrailCategory.SAFETY

    def test_toggle(self, manager):
        toggled = manager.toggle("verify-before-commit")
        assert toggled.enabled is False
        assert manager.toggle("verify-before-commit").enabled is True
        assert manager.toggle("missing") is None

    def test_remove(self, manager):
        assert manager.remove("read-existing-patterns") is True
        assert manager.remove("read-existing-patterns") is False
        assert manager.get_by_id("read-existing-patterns") is None


class TestPromptFormatting:
    """Tests for active-guardrail selection and prompt text."""

    def test_format_numbers_active_guardrails(self, manager):
        manager.toggle("read-existing-patterns")
        assert manager.format_for_prompt() == (
            "## Guardrails\n"
            "1. Verify changes work before committing\n"
            "2. If build fails, fix it before proceeding\n"
        )

    def test_trigger_filter_includes_always(self, manager):
        manager.add("Check the logs", trigger=GuardrailTrigger.ON_ERROR)
        manager.add("Follow naming", trigger=GuardrailTrigger.ON_TASK_TYPE)

        on_error = [g.instruction for g in manager.get_active(GuardrailTrigger.ON_ERROR)]
        assert "Check the logs" in on_error
        assert "Follow naming" not in on_error
        assert "Verify changes work before committing" in on_error

        everything = manager.get_active()
        assert len(everything) == 5

    def test_empty_list_formats_to_empty_string(self):
        assert format_guardrails_for_prompt([]) == ""

"""Tests for HandlerCoordinator."""
from unittest.mock import MagicMock

import pytest

from taskloop.events import EventBus
from taskloop.models import DecompositionRequest, DecompositionSubtask
from taskloop.orchestration import HandlerCallbacks, HandlerCoordinator, HandlerCoordinatorConfig
from taskloop.state_store import PrdStore


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def callbacks():
    return HandlerCallbacks(
        on_iteration_complete=MagicMock(),
        on_fatal_error=MagicMock(),
        on_restart_iteration=MagicMock(),
        on_decomposition_exhausted=MagicMock(),
        on_prd_update=MagicMock(),
    )


@pytest.fixture
def coordinator(bus, config, callbacks):
    coordinator = HandlerCoordinator(bus, PrdStore(config.prd_path))
    coordinator.initialize(HandlerCoordinatorConfig(config), callbacks)
    yield coordinator
    coordinator.cleanup()


def split_request(title: str = "Big") -> DecompositionRequest:
    return DecompositionRequest(title, "too big", [DecompositionSubtask("Small 1", "", []), DecompositionSubtask("Small 2", "", [])])


def report_of(callbacks):
    callbacks.on_iteration_complete.assert_called_once()
    return callbacks.on_iteration_complete.call_args[0][0]


class TestAgentComplete:
    """Tests for agent.complete handling."""

    def test_success_with_pending_tasks(self, bus, coordinator, callbacks, write_prd):
        write_prd([{"title": "A", "done": True}, {"title": "B"}])

        bus.emit_agent_complete("A", 1, 0, "did A", False, retry_count=2)

        report = report_of(callbacks)
        assert report.success
        assert not report.all_tasks_done
        assert report.has_pending_tasks
        assert report.retry_count == 2
        assert report.output == "did A"

    def test_all_done(self, bus, coordinator, callbacks, write_prd):
        write_prd([{"title": "A", "done": True}])
        bus.emit_agent_complete("A", 1, 0, "", True)
        assert report_of(callbacks).all_tasks_done

    def test_empty_prd_is_never_done(self, bus, coordinator, callbacks, write_prd):
        write_prd([])
        bus.emit_agent_complete(None, 1, 0, "", True)
        report = report_of(callbacks)
        assert not report.all_tasks_done
        assert not report.has_pending_tasks

    def test_decomposition_restarts_iteration(self, bus, coordinator, callbacks, write_prd, read_prd):
        write_prd([{"title": "Big"}, {"title": "Other"}])

        bus.emit_agent_complete("Big", 1, 0, "", False, decomposition_request=split_request())

        assert [t["title"] for t in read_prd()["tasks"]] == ["Small 1", "Small 2", "Other"]
        callbacks.on_restart_iteration.assert_called_once()
        callbacks.on_prd_update.assert_called_once()
        callbacks.on_iteration_complete.assert_not_called()

    def test_decomposition_limit_reports_exhausted(self, bus, config, callbacks, write_prd):
        config.learning.max_decompositions_per_task = 0
        coordinator = HandlerCoordinator(bus, PrdStore(config.prd_path))
        coordinator.initialize(HandlerCoordinatorConfig(config), callbacks)
        write_prd([{"title": "Big"}])

        bus.emit_agent_complete("Big", 1, 0, "", False, decomposition_request=split_request())

        callbacks.on_decomposition_exhausted.assert_called_once_with("Big")
        callbacks.on_iteration_complete.assert_not_called()

    def test_failed_decomposition_falls_through_to_report(self, bus, coordinator, callbacks, write_prd):
        write_prd([{"title": "Other"}])
        bus.emit_agent_complete("Big", 1, 0, "", False, decomposition_request=split_request())
        assert report_of(callbacks).success

    def test_verification_failure_turns_iteration_into_failure(self, bus, config, callbacks, write_prd):
        config.verification.enabled = True
        config.verification.test_command = "echo 'assert 1 == 2'; exit 1"
        coordinator = HandlerCoordinator(bus, PrdStore(config.prd_path))
        coordinator.initialize(HandlerCoordinatorConfig(config), callbacks)
        write_prd([{"title": "A"}])

        bus.emit_agent_complete("A", 1, 0, "", False)

        report = report_of(callbacks)
        assert not report.success
        assert report.error == "Verification failed: test"
        assert report.retry_context.startswith("## Verification Failed")
        assert "assert 1 == 2" in report.retry_context

    def test_verification_skipped(self, bus, config, callbacks, write_prd):
        config.verification.enabled = True
        config.verification.build_command = "exit 1"
        coordinator = HandlerCoordinator(bus, PrdStore(config.prd_path))
        coordinator.initialize(HandlerCoordinatorConfig(config, skip_verification=True), callbacks)
        write_prd([{"title": "A"}])

        bus.emit_agent_complete("A", 1, 0, "", False)

        report = report_of(callbacks)
        assert report.success
        assert report.verification is None

    def test_verification_not_run_when_all_done(self, bus, config, callbacks, write_prd):
        config.verification.enabled = True
        config.verification.build_command = "exit 1"
        coordinator = HandlerCoordinator(bus, PrdStore(config.prd_path))
        coordinator.initialize(HandlerCoordinatorConfig(config), callbacks)
        write_prd([{"title": "A", "done": True}])

        bus.emit_agent_complete("A", 1, 0, "", True)

        assert report_of(callbacks).all_tasks_done


class TestAgentError:
    """Tests for agent.error handling."""

    def test_fatal_error(self, bus, coordinator, callbacks):
        bus.emit_agent_error("A", 1, "Agent command not found: nope", 127, True, "not_found")
        callbacks.on_fatal_error.assert_called_once_with("Agent command not found: nope")
        callbacks.on_iteration_complete.assert_not_called()

    def test_recoverable_error_charges_iteration(self, bus, coordinator, callbacks, write_prd):
        write_prd([{"title": "A"}])
        bus.emit_agent_error("A", 1, "Max retries (3) exceeded. Last error: x", 1, False, "unknown", retry_count=3)

        report = report_of(callbacks)
        assert not report.success
        assert report.has_pending_tasks
        assert report.retry_count == 3
        assert report.error.startswith("Max retries")
        assert not report.failure_recorded

    def test_recorded_batch_failure_is_marked(self, bus, coordinator, callbacks, write_prd):
        write_prd([{"title": "A"}, {"title": "B"}])
        bus.emit_agent_error(
            "A, B", 1, "A: boom; B: boom", None, False, "unknown",
            task_id="a,b", already_recorded=True,
        )

        report = report_of(callbacks)
        assert not report.success
        assert report.task_title == "A, B"
        assert report.failure_recorded


class TestLifecycle:
    """Tests for initialize/cleanup."""

    def test_cleanup_unsubscribes(self, bus, coordinator, callbacks):
        coordinator.cleanup()
        coordinator.cleanup()
        assert not coordinator.is_initialized
        assert bus.handler_count() == 0

        bus.emit_agent_error("A", 1, "boom", 1, True, "unknown")
        callbacks.on_fatal_error.assert_not_called()

    def test_reinitialize_does_not_double_subscribe(self, bus, config, coordinator, callbacks):
        coordinator.initialize(HandlerCoordinatorConfig(config), callbacks)
        assert bus.handler_count() == 2

    def test_cleanup_before_initialize(self, bus, config):
        HandlerCoordinator(bus, PrdStore(config.prd_path)).cleanup()

"""
Reacts to agent notifications and reports the iteration's outcome.

Subscribes to agent.complete and agent.error on the orchestrator's own
EventBus. A completion goes through decomposition, then verification, and
ends in exactly one callback: on_iteration_complete, on_restart_iteration
(via the decomposition handler), on_decomposition_exhausted or
on_fatal_error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Optional

from taskloop.events.types import EventType, TaskloopEvent
from taskloop.handlers.decomposition import DecompositionHandler, DecompositionOutcome
from taskloop.handlers.verification import VerificationHandler, VerificationStateCallback
from taskloop.models import Prd, RetryContext
from taskloop.verification import VerificationResult, generate_verification_retry_context

if TYPE_CHECKING:
    from taskloop.config import TaskloopConfig
    from taskloop.events.bus import EventBus
    from taskloop.logger import TaskloopLogger
    from taskloop.progress import ProgressLog
    from taskloop.state_store import PrdStore

logger = logging.getLogger(__name__)


@dataclass
class IterationReport:
    """Outcome of one agent run after decomposition and verification."""
    success: bool
    all_tasks_done: bool
    has_pending_tasks: bool
    task_title: Optional[str] = None
    exit_code: Optional[int] = None
    output: str = ""
    error: Optional[str] = None
    retry_count: int = 0
    retry_contexts: list[RetryContext] = field(default_factory=list)
    verification: Optional[VerificationResult] = None
    # Failures already in the failure history
    failure_recorded: bool = False
    # Carried into the next iteration's prompt
    retry_context: Optional[str] = None


@dataclass
class HandlerCoordinatorConfig:
    config: TaskloopConfig
    skip_verification: bool = False


@dataclass
class HandlerCallbacks:
    on_iteration_complete: Callable[[IterationReport], None]
    on_fatal_error: Callable[[str], None]
    on_restart_iteration: Callable[[], None]
    on_decomposition_exhausted: Optional[Callable[[str], None]] = None
    on_prd_update: Optional[Callable[[Prd], None]] = None
    on_verification_state_change: Optional[VerificationStateCallback] = None


def _prd_flags(prd: Optional[Prd]) -> tuple[bool, bool]:
    """(all tasks done, has pending tasks). An empty PRD is never done."""
    if prd is None:
        return False, False
    return bool(prd.tasks) and prd.is_complete(), prd.has_pending_tasks()


class HandlerCoordinator:
    """
    Per-orchestrator dispatcher for agent notifications.

    cleanup() is idempotent and safe before initialize().
    """

    def __init__(
        self,
        bus: EventBus,
        prd_store: PrdStore,
        progress: Optional[ProgressLog] = None,
        logger: Optional[TaskloopLogger] = None,
    ) -> None:
        self._bus = bus
        self._prd_store = prd_store
        self._progress = progress
        self._logger = logger
        self._config: Optional[HandlerCoordinatorConfig] = None
        self._callbacks: Optional[HandlerCallbacks] = None
        self._decomposition: Optional[DecompositionHandler] = None
        self._verification: Optional[VerificationHandler] = None
        self._unsubscribers: list[Callable[[], None]] = []

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    @property
    def is_initialized(self) -> bool:
        return self._callbacks is not None

    @property
    def is_verifying(self) -> bool:
        return self._verification is not None and self._verification.is_running

    @property
    def decomposition_handler(self) -> Optional[DecompositionHandler]:
        return self._decomposition

    def initialize(self, config: HandlerCoordinatorConfig, callbacks: HandlerCallbacks) -> None:
        self.cleanup()
        self._config = config
        self._callbacks = callbacks
        self._decomposition = DecompositionHandler(
            self._prd_store,
            config.config.learning.max_decompositions_per_task,
            progress=self._progress,
            logger=self._logger,
            on_prd_update=callbacks.on_prd_update,
            on_restart_iteration=callbacks.on_restart_iteration,
        )
        self._verification = VerificationHandler(
            progress=self._progress,
            on_state_change=callbacks.on_verification_state_change,
        )
        self._unsubscribers = [
            self._bus.subscribe(EventType.AGENT_COMPLETE, self._on_agent_complete),
            self._bus.subscribe(EventType.AGENT_ERROR, self._on_agent_error),
        ]

    def cleanup(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        if self._decomposition:
            self._decomposition.reset()
        if self._verification:
            self._verification.reset()
        self._decomposition = None
        self._verification = None
        self._config = None
        self._callbacks = None

    def _reload_prd(self) -> Optional[Prd]:
        result = self._prd_store.reload()
        if result.error:
            self._log("prd_load_failed", {"error": result.error}, level="error")
        return result.value

    def _on_agent_complete(self, event: TaskloopEvent) -> None:
        try:
            self.handle_agent_complete(event)
        except Exception as e:
            logger.exception("Error handling agent completion")
            if self._callbacks:
                self._callbacks.on_iteration_complete(IterationReport(
                    success=False,
                    all_tasks_done=False,
                    has_pending_tasks=True,
                    task_title=event.task_title,
                    error=str(e),
                ))

    def _on_agent_error(self, event: TaskloopEvent) -> None:
        try:
            self.handle_agent_error(event)
        except Exception as e:
            logger.exception("Error handling agent error")
            if self._callbacks:
                self._callbacks.on_fatal_error(str(e))

    def handle_agent_complete(self, event: TaskloopEvent) -> None:
        if self._config is None or self._callbacks is None:
            return
        payload = event.payload
        prd = self._reload_prd()

        request = payload.get("decomposition_request")
        if request is not None and self._decomposition is not None:
            outcome = self._decomposition.handle(request, prd)
            if outcome == DecompositionOutcome.APPLIED:
                return
            if outcome == DecompositionOutcome.EXHAUSTED:
                task = prd.get_task_by_title(request.original_task_title) if prd else None
                if task is not None and not task.done and self._callbacks.on_decomposition_exhausted:
                    self._callbacks.on_decomposition_exhausted(request.original_task_title)
                    return

        all_done, has_pending = _prd_flags(prd)
        report = IterationReport(
            success=True,
            all_tasks_done=all_done,
            has_pending_tasks=has_pending,
            task_title=event.task_title,
            exit_code=payload.get("exit_code"),
            output=payload.get("output", ""),
            retry_count=payload.get("retry_count", 0),
            retry_contexts=list(payload.get("retry_contexts", [])),
        )

        verification_config = self._config.config.verification
        if (
            verification_config.enabled
            and not self._config.skip_verification
            and not all_done
            and self._verification is not None
        ):
            result = self._verification.run(verification_config, cwd=str(self._config.config.repo_root))
            report.verification = result
            if not result.passed:
                self._log("verification_failed", {
                    "failed_checks": result.failed_checks,
                    "iteration": event.iteration,
                }, level="warn")
                report.success = False
                report.all_tasks_done = False
                report.error = f"Verification failed: {', '.join(result.failed_checks)}"
                report.retry_context = generate_verification_retry_context(result)
        elif self._verification is not None:
            self._verification.reset()

        self._callbacks.on_iteration_complete(report)

    def handle_agent_error(self, event: TaskloopEvent) -> None:
        if self._callbacks is None:
            return
        payload = event.payload
        error = payload.get("error", "")

        if payload.get("is_fatal"):
            self._callbacks.on_fatal_error(error)
            return

        # Retries exhausted: the iteration is charged as a failure
        _, has_pending = _prd_flags(self._reload_prd())
        self._callbacks.on_iteration_complete(IterationReport(
            success=False,
            all_tasks_done=False,
            has_pending_tasks=has_pending,
            task_title=event.task_title,
            exit_code=payload.get("exit_code"),
            output=payload.get("output", ""),
            error=error,
            retry_count=payload.get("retry_count", 0),
            failure_recorded=payload.get("already_recorded", False),
        ))

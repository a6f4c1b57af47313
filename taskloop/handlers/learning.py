"""Feeds iteration outcomes into the failure history and session memory."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from taskloop.failure_patterns import PATTERN_THRESHOLD, FailureHistory
from taskloop.models import RetryContext

if TYPE_CHECKING:
    from taskloop.logger import TaskloopLogger
    from taskloop.session_memory import SessionMemoryManager


@dataclass
class IterationOutcome:
    iteration: int
    was_successful: bool
    task_title: str
    agent_error: Optional[str] = None
    output: str = ""
    exit_code: Optional[int] = None
    retry_count: int = 0
    retry_contexts: list[RetryContext] = field(default_factory=list)
    verification_failed: bool = False
    failed_checks: list[str] = field(default_factory=list)
    failure_recorded: bool = False


class LearningHandler:
    """
    Records failed iterations and reports recurring patterns.

    With a session memory attached it also keeps lessons from recoveries,
    completed tasks as success patterns and failed verification checks as
    approaches to avoid. Does nothing when learning is disabled.
    """

    def __init__(
        self,
        enabled: bool,
        failure_history: FailureHistory,
        logger: Optional[TaskloopLogger] = None,
        memory: Optional[SessionMemoryManager] = None,
    ) -> None:
        self.enabled = enabled
        self._history = failure_history
        self._logger = logger
        self._memory = memory

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def record_iteration_outcome(self, outcome: IterationOutcome) -> None:
        if not self.enabled:
            return

        if (outcome.agent_error or outcome.verification_failed) and not outcome.failure_recorded:
            error = outcome.agent_error
            if not error:
                error = "Verification failed"
                if outcome.failed_checks:
                    error += f": {', '.join(outcome.failed_checks)}"
            self._history.record_failure(
                error=error,
                output=outcome.output,
                task_title=outcome.task_title,
                exit_code=outcome.exit_code,
                iteration=outcome.iteration,
            )

            significant = [
                pattern for pattern in self._history.analyze_patterns()
                if pattern.occurrences >= PATTERN_THRESHOLD
            ]
            if significant:
                self._log("recurring_failure_patterns", {
                    "pattern_count": len(significant),
                    "top_pattern": significant[0].category.value,
                }, level="warn")

            if self._memory and outcome.verification_failed and outcome.failed_checks:
                self._memory.add_failed_approach(f"Verification failed: {', '.join(outcome.failed_checks)}")

        if outcome.was_successful and outcome.retry_count > 0 and outcome.retry_contexts:
            last = outcome.retry_contexts[-1]
            self._log("recovered_after_retry", {
                "task": outcome.task_title,
                "retry_count": outcome.retry_count,
                "failure_category": last.failure_category.value,
                "root_cause": last.root_cause,
            })
            if self._memory:
                self._memory.add_lesson(
                    f'Task "{outcome.task_title}" succeeded after retry: {last.root_cause} was resolved'
                )
                self._memory.add_success_pattern(
                    f"Recovered from {last.failure_category.value} by addressing: {last.root_cause}"
                )

        if self._memory and outcome.was_successful and outcome.task_title:
            self._memory.add_success_pattern(f"Completed task: {outcome.task_title}")

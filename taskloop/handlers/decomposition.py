"""Applies agent decomposition requests to the PRD, bounded per task."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from taskloop.decomposition import apply_decomposition, format_decomposition_for_progress
from taskloop.models import DecompositionRequest, Prd

if TYPE_CHECKING:
    from taskloop.logger import TaskloopLogger
    from taskloop.progress import ProgressLog
    from taskloop.state_store import PrdStore


class DecompositionOutcome(Enum):
    APPLIED = "applied"
    EXHAUSTED = "exhausted"     # Per-task limit reached
    FAILED = "failed"           # No PRD, unknown task, or task already done


class DecompositionHandler:
    """
    Replaces a task with its subtasks and persists the PRD.

    Decompositions are counted per task title (case-insensitive) for the
    lifetime of the handler, or until reset().
    """

    def __init__(
        self,
        prd_store: PrdStore,
        max_decompositions_per_task: int,
        progress: Optional[ProgressLog] = None,
        logger: Optional[TaskloopLogger] = None,
        on_prd_update: Optional[Callable[[Prd], None]] = None,
        on_restart_iteration: Optional[Callable[[], None]] = None,
    ) -> None:
        self._prd_store = prd_store
        self._max = max_decompositions_per_task
        self._progress = progress
        self._logger = logger
        self._on_prd_update = on_prd_update
        self._on_restart_iteration = on_restart_iteration
        self._counts: dict[str, int] = {}

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def reset(self) -> None:
        self._counts = {}

    def get_count(self, task_title: str) -> int:
        return self._counts.get(task_title.lower(), 0)

    def handle(self, request: DecompositionRequest, current_prd: Optional[Prd]) -> DecompositionOutcome:
        task_key = request.original_task_title.lower()
        current_count = self._counts.get(task_key, 0)

        if current_count >= self._max:
            self._log("decomposition_limit_reached", {
                "task": request.original_task_title,
                "max_decompositions": self._max,
                "current_count": current_count,
            }, level="warn")
            return DecompositionOutcome.EXHAUSTED

        if current_prd is None:
            self._log("decomposition_failed", {"error": "PRD not found"}, level="error")
            return DecompositionOutcome.FAILED

        result = apply_decomposition(current_prd, request)
        if not result.success or result.updated_prd is None:
            self._log("decomposition_failed", {"error": result.error}, level="error")
            return DecompositionOutcome.FAILED

        self._prd_store.save(result.updated_prd)
        self._counts[task_key] = current_count + 1

        self._log("task_decomposed", {
            "original_task": request.original_task_title,
            "subtasks_created": result.subtasks_created,
            "reason": request.reason,
        })
        if self._progress:
            self._progress.section(format_decomposition_for_progress(request))

        if self._on_prd_update:
            self._on_prd_update(result.updated_prd)
        if self._on_restart_iteration:
            self._on_restart_iteration()
        return DecompositionOutcome.APPLIED

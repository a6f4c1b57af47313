"""
Task decomposition.

An agent that judges its task too large prints DECOMPOSITION_MARKER and a
JSON request between the decomposition tags. The request replaces the
original task with its subtasks at the same position in the PRD.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass
from typing import Any, Optional

from taskloop.models import DecompositionRequest, DecompositionSubtask, Prd
from taskloop.prompt import (
    DECOMPOSITION_MARKER,
    DECOMPOSITION_OUTPUT_END,
    DECOMPOSITION_OUTPUT_START,
)


@dataclass
class DecompositionParseResult:
    detected: bool
    request: Optional[DecompositionRequest] = None
    error: Optional[str] = None


@dataclass
class ApplyDecompositionResult:
    success: bool
    updated_prd: Optional[Prd] = None
    subtasks_created: int = 0
    error: Optional[str] = None


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _parse_subtask(value: Any) -> Optional[DecompositionSubtask]:
    if not isinstance(value, dict):
        return None
    title = value.get("title")
    description = value.get("description")
    steps = value.get("steps")
    if not _non_empty_str(title) or not isinstance(description, str):
        return None
    if not isinstance(steps, list) or not all(isinstance(step, str) for step in steps):
        return None
    return DecompositionSubtask(title=title, description=description, steps=list(steps))


def _parse_request(value: Any) -> Optional[DecompositionRequest]:
    if not isinstance(value, dict):
        return None
    original = value.get("originalTaskTitle")
    reason = value.get("reason")
    raw_subtasks = value.get("suggestedSubtasks")
    if not _non_empty_str(original) or not _non_empty_str(reason):
        return None
    if not isinstance(raw_subtasks, list) or not raw_subtasks:
        return None

    subtasks = []
    for raw in raw_subtasks:
        subtask = _parse_subtask(raw)
        if subtask is None:
            return None
        subtasks.append(subtask)

    return DecompositionRequest(
        original_task_title=original,
        reason=reason,
        suggested_subtasks=subtasks,
    )


def parse_decomposition_request(output: str) -> DecompositionParseResult:
    """
    Look for a decomposition request in agent output.

    Returns detected=False when the marker is absent. A present marker with
    a missing or invalid payload is detected with an error.
    """
    if DECOMPOSITION_MARKER not in output:
        return DecompositionParseResult(detected=False)

    start = output.find(DECOMPOSITION_OUTPUT_START)
    end = output.find(DECOMPOSITION_OUTPUT_END)
    if start == -1 or end == -1 or start >= end:
        return DecompositionParseResult(
            detected=True,
            error="Decomposition marker found but JSON payload is missing or malformed",
        )

    payload = output[start + len(DECOMPOSITION_OUTPUT_START):end].strip()
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as e:
        return DecompositionParseResult(
            detected=True,
            error=f"Failed to parse decomposition JSON: {e}",
        )

    request = _parse_request(parsed)
    if request is None:
        return DecompositionParseResult(detected=True, error="Invalid decomposition request structure")
    return DecompositionParseResult(detected=True, request=request)


def apply_decomposition(prd: Prd, request: DecompositionRequest) -> ApplyDecompositionResult:
    """
    Replace the original task with the requested subtasks.

    The input PRD is not modified; the result carries an updated copy.
    """
    index = prd.find_task_index(request.original_task_title)
    if index == -1:
        return ApplyDecompositionResult(
            success=False,
            error=f'Original task "{request.original_task_title}" not found in PRD',
        )

    if prd.tasks[index].done:
        return ApplyDecompositionResult(
            success=False,
            error=f'Original task "{request.original_task_title}" is already marked as done',
        )

    new_tasks = [subtask.to_task() for subtask in request.suggested_subtasks]
    updated = copy.deepcopy(prd)
    updated.tasks[index:index + 1] = new_tasks

    return ApplyDecompositionResult(
        success=True,
        updated_prd=updated,
        subtasks_created=len(new_tasks),
    )


def format_decomposition_for_progress(request: DecompositionRequest) -> str:
    lines = [
        "=== Task Decomposition ===",
        f"Original task: {request.original_task_title}",
        f"Reason: {request.reason}",
        f"Subtasks created: {len(request.suggested_subtasks)}",
    ]
    for index, subtask in enumerate(request.suggested_subtasks, start=1):
        lines.append(f"  {index}. {subtask.title}")
    lines.append("")
    return "\n".join(lines)

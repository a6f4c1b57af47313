"""
Core data models for taskloop.

This module defines the foundational data structures used throughout the system:
- Tasks and the PRD (task list) document
- Session state, statistics and parallel-execution bookkeeping
- Failure history entries and mined failure patterns
- Prompt guardrails and cross-session memory
- Decomposition requests and retry context

Persisted models serialize to the camelCase JSON wire format through
to_dict/from_dict so on-disk documents stay resumable.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def _is_str_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


def _require_object(data: Any, kind: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"{kind} must be a JSON object, got {type(data).__name__}")
    return data


def _require_list(data: dict[str, Any], key: str, kind: str) -> list[Any]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ValueError(f"{kind}.{key} must be a list, got {type(value).__name__}")
    return value


# ---------------------------------------------------------------------------
# PRD
# ---------------------------------------------------------------------------


@dataclass
class Task:
    """
    A single unit of work in the PRD.

    Titles are unique case-insensitively within a PRD. Tasks that declare
    depends_on must carry an id so other tasks can reference them.
    """
    title: str
    description: str = ""
    steps: list[str] = field(default_factory=list)
    done: bool = False
    id: Optional[str] = None
    depends_on: Optional[list[str]] = None
    priority: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {
            "title": self.title,
            "description": self.description,
            "steps": list(self.steps),
            "done": self.done,
        }
        if self.id is not None:
            data["id"] = self.id
        if self.depends_on is not None:
            data["dependsOn"] = list(self.depends_on)
        if self.priority is not None:
            data["priority"] = self.priority
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        """
        Create from dictionary.

        Raises:
            ValueError: If required fields are missing or mistyped.
        """
        if not isinstance(data, dict):
            raise ValueError("Task must be an object")
        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            raise ValueError("Task title must be a non-empty string")
        description = data.get("description", "")
        if not isinstance(description, str):
            raise ValueError(f"Task '{title}': description must be a string")
        steps = data.get("steps", [])
        if not _is_str_list(steps):
            raise ValueError(f"Task '{title}': steps must be a list of strings")
        done = data.get("done", False)
        if not isinstance(done, bool):
            raise ValueError(f"Task '{title}': done must be a boolean")
        task_id = data.get("id")
        if task_id is not None and not isinstance(task_id, str):
            raise ValueError(f"Task '{title}': id must be a string")
        depends_on = data.get("dependsOn")
        if depends_on is not None and not _is_str_list(depends_on):
            raise ValueError(f"Task '{title}': dependsOn must be a list of strings")
        priority = data.get("priority")
        if priority is not None and (not isinstance(priority, (int, float)) or isinstance(priority, bool)):
            raise ValueError(f"Task '{title}': priority must be a number")

        return cls(
            title=title,
            description=description,
            steps=list(steps),
            done=done,
            id=task_id,
            depends_on=list(depends_on) if depends_on is not None else None,
            priority=priority,
        )


@dataclass
class Prd:
    """The persisted task list driving a session."""
    project: str
    tasks: list[Task] = field(default_factory=list)

    @classmethod
    def create_empty(cls, project: str) -> Prd:
        return cls(project=project, tasks=[])

    def is_complete(self) -> bool:
        """True when every task is done (vacuously true for an empty PRD)."""
        return all(task.done for task in self.tasks)

    def has_pending_tasks(self) -> bool:
        return any(not task.done for task in self.tasks)

    def pending_count(self) -> int:
        return sum(1 for task in self.tasks if not task.done)

    def find_task_index(self, title: str) -> int:
        """Index of the task with this title (case-insensitive), or -1."""
        normalized = title.lower()
        for index, task in enumerate(self.tasks):
            if task.title.lower() == normalized:
                return index
        return -1

    def get_task_by_title(self, title: str) -> Optional[Task]:
        index = self.find_task_index(title)
        return self.tasks[index] if index >= 0 else None

    def get_task_by_id(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def get_current_task_index(self) -> int:
        """Index of the first not-done task, or -1."""
        for index, task in enumerate(self.tasks):
            if not task.done:
                return index
        return -1

    def mark_task_done(self, title: str) -> bool:
        """Mark a task done by title. Returns False if no such task exists."""
        task = self.get_task_by_title(title)
        if task is None:
            return False
        task.done = True
        return True

    def add_task(self, task: Task) -> None:
        """
        Append a task.

        Raises:
            ValueError: If a task with the same title (case-insensitive) exists.
        """
        if self.find_task_index(task.title) >= 0:
            raise ValueError(f"Task '{task.title}' already exists")
        self.tasks.append(task)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "project": self.project,
            "tasks": [task.to_dict() for task in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Prd:
        """
        Create from dictionary.

        Raises:
            ValueError: If the document structure is invalid.
        """
        if not isinstance(data, dict):
            raise ValueError("PRD must be a JSON object")
        project = data.get("project")
        if not isinstance(project, str) or not project.strip():
            raise ValueError("PRD project must be a non-empty string")
        tasks = data.get("tasks")
        if not isinstance(tasks, list):
            raise ValueError("PRD tasks must be a list")
        return cls(project=project, tasks=[Task.from_dict(task) for task in tasks])


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class SessionStatus(Enum):
    """Lifecycle status of a session."""
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"


class ExecutionStatus(Enum):
    """Status of one task execution in parallel mode."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class IterationTiming:
    iteration: int
    start_time: int
    end_time: Optional[int] = None
    duration_ms: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "durationMs": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IterationTiming:
        _require_object(data, "IterationTiming")
        return cls(
            iteration=data["iteration"],
            start_time=data["startTime"],
            end_time=data.get("endTime"),
            duration_ms=data.get("durationMs"),
        )


@dataclass
class SessionStatistics:
    """Aggregate iteration counters for a session."""
    total_iterations: int = 0
    completed_iterations: int = 0
    failed_iterations: int = 0
    successful_iterations: int = 0
    total_duration_ms: float = 0
    average_duration_ms: float = 0
    success_rate: float = 0
    iteration_timings: list[IterationTiming] = field(default_factory=list)

    def get_timing(self, iteration: int) -> Optional[IterationTiming]:
        for timing in self.iteration_timings:
            if timing.iteration == iteration:
                return timing
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalIterations": self.total_iterations,
            "completedIterations": self.completed_iterations,
            "failedIterations": self.failed_iterations,
            "successfulIterations": self.successful_iterations,
            "totalDurationMs": self.total_duration_ms,
            "averageDurationMs": self.average_duration_ms,
            "successRate": self.success_rate,
            "iterationTimings": [timing.to_dict() for timing in self.iteration_timings],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionStatistics:
        _require_object(data, "SessionStatistics")
        return cls(
            total_iterations=data.get("totalIterations", 0),
            completed_iterations=data.get("completedIterations", 0),
            failed_iterations=data.get("failedIterations", 0),
            successful_iterations=data.get("successfulIterations", 0),
            total_duration_ms=data.get("totalDurationMs", 0),
            average_duration_ms=data.get("averageDurationMs", 0),
            success_rate=data.get("successRate", 0),
            iteration_timings=[
                IterationTiming.from_dict(timing)
                for timing in _require_list(data, "iterationTimings", "statistics")
            ],
        )


@dataclass
class ActiveTaskExecution:
    """One task running (or finished) within a parallel group."""
    task_id: str
    task_title: str
    task_index: int
    status: ExecutionStatus = ExecutionStatus.RUNNING
    start_time: int = field(default_factory=now_ms)
    end_time: Optional[int] = None
    process_id: str = ""
    retry_count: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "taskTitle": self.task_title,
            "taskIndex": self.task_index,
            "status": self.status.value,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "processId": self.process_id,
            "retryCount": self.retry_count,
            "lastError": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActiveTaskExecution:
        _require_object(data, "ActiveTaskExecution")
        return cls(
            task_id=data["taskId"],
            task_title=data["taskTitle"],
            task_index=data["taskIndex"],
            status=ExecutionStatus(data.get("status", "running")),
            start_time=data.get("startTime", 0),
            end_time=data.get("endTime"),
            process_id=data.get("processId", ""),
            retry_count=data.get("retryCount", 0),
            last_error=data.get("lastError"),
        )


@dataclass
class ParallelGroupState:
    """Persisted record of one parallel execution round."""
    group_index: int
    start_time: int = field(default_factory=now_ms)
    end_time: Optional[int] = None
    task_executions: list[ActiveTaskExecution] = field(default_factory=list)
    is_complete: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "groupIndex": self.group_index,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "taskExecutions": [execution.to_dict() for execution in self.task_executions],
            "isComplete": self.is_complete,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ParallelGroupState:
        _require_object(data, "ParallelGroupState")
        return cls(
            group_index=data["groupIndex"],
            start_time=data.get("startTime", 0),
            end_time=data.get("endTime"),
            task_executions=[
                ActiveTaskExecution.from_dict(execution)
                for execution in _require_list(data, "taskExecutions", "executionGroups[]")
            ],
            is_complete=data.get("isComplete", False),
        )


@dataclass
class ParallelSessionState:
    is_parallel_mode: bool = True
    current_group_index: int = -1
    execution_groups: list[ParallelGroupState] = field(default_factory=list)
    active_executions: list[ActiveTaskExecution] = field(default_factory=list)
    max_concurrent_tasks: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "isParallelMode": self.is_parallel_mode,
            "currentGroupIndex": self.current_group_index,
            "executionGroups": [group.to_dict() for group in self.execution_groups],
            "activeExecutions": [execution.to_dict() for execution in self.active_executions],
            "maxConcurrentTasks": self.max_concurrent_tasks,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ParallelSessionState:
        _require_object(data, "ParallelSessionState")
        return cls(
            is_parallel_mode=data.get("isParallelMode", True),
            current_group_index=data.get("currentGroupIndex", -1),
            execution_groups=[
                ParallelGroupState.from_dict(group)
                for group in _require_list(data, "executionGroups", "parallelState")
            ],
            active_executions=[
                ActiveTaskExecution.from_dict(execution)
                for execution in _require_list(data, "activeExecutions", "parallelState")
            ],
            max_concurrent_tasks=data.get("maxConcurrentTasks", 1),
        )


@dataclass
class Session:
    """
    Persisted state of one run of the iteration loop.

    Written at every iteration boundary; a session whose status is running,
    paused or stopped can be resumed from disk.
    """
    start_time: int
    last_update_time: int
    current_iteration: int
    total_iterations: int
    current_task_index: int
    status: SessionStatus = SessionStatus.RUNNING
    elapsed_time_seconds: int = 0
    statistics: SessionStatistics = field(default_factory=SessionStatistics)
    parallel_state: Optional[ParallelSessionState] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {
            "startTime": self.start_time,
            "lastUpdateTime": self.last_update_time,
            "currentIteration": self.current_iteration,
            "totalIterations": self.total_iterations,
            "currentTaskIndex": self.current_task_index,
            "status": self.status.value,
            "elapsedTimeSeconds": self.elapsed_time_seconds,
            "statistics": self.statistics.to_dict(),
        }
        if self.parallel_state is not None:
            data["parallelState"] = self.parallel_state.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        """
        Create from dictionary.

        Missing statistics are rebuilt from totalIterations.

        Raises:
            ValueError: If required fields are missing or the status is unknown.
        """
        if not isinstance(data, dict):
            raise ValueError("Session must be a JSON object")
        required = (
            "startTime", "lastUpdateTime", "currentIteration",
            "totalIterations", "currentTaskIndex", "status",
        )
        missing = [key for key in required if key not in data]
        if missing:
            raise ValueError(f"Session is missing fields: {', '.join(missing)}")
        try:
            status = SessionStatus(data["status"])
        except ValueError as e:
            raise ValueError(f"Unknown session status: {data['status']!r}") from e

        statistics_data = data.get("statistics")
        if statistics_data is None:
            statistics = SessionStatistics(total_iterations=data["totalIterations"])
        else:
            statistics = SessionStatistics.from_dict(statistics_data)

        parallel_data = data.get("parallelState")
        return cls(
            start_time=data["startTime"],
            last_update_time=data["lastUpdateTime"],
            current_iteration=data["currentIteration"],
            total_iterations=data["totalIterations"],
            current_task_index=data["currentTaskIndex"],
            status=status,
            elapsed_time_seconds=data.get("elapsedTimeSeconds", 0),
            statistics=statistics,
            parallel_state=ParallelSessionState.from_dict(parallel_data) if parallel_data is not None else None,
        )


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class FailureCategory(Enum):
    """Task-failure categories used to shape retry context."""
    BUILD_FAILURE = "build_failure"
    TEST_FAILURE = "test_failure"
    LINT_ERROR = "lint_error"
    PERMISSION_ERROR = "permission_error"
    TIMEOUT = "timeout"
    STUCK = "stuck"
    NETWORK_ERROR = "network_error"
    SYNTAX_ERROR = "syntax_error"
    DEPENDENCY_ERROR = "dependency_error"
    UNKNOWN = "unknown"

    @property
    def label(self) -> str:
        """Human-readable name (underscores replaced by spaces)."""
        return self.value.replace("_", " ")


@dataclass
class FailureHistoryEntry:
    timestamp: str
    error: str
    task_title: str
    category: FailureCategory
    root_cause: str
    exit_code: Optional[int] = None
    iteration: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "error": self.error,
            "taskTitle": self.task_title,
            "category": self.category.value,
            "rootCause": self.root_cause,
            "exitCode": self.exit_code,
            "iteration": self.iteration,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FailureHistoryEntry:
        _require_object(data, "FailureHistoryEntry")
        return cls(
            timestamp=data["timestamp"],
            error=data["error"],
            task_title=data["taskTitle"],
            category=FailureCategory(data["category"]),
            root_cause=data["rootCause"],
            exit_code=data.get("exitCode"),
            iteration=data.get("iteration", 0),
        )


@dataclass
class FailurePattern:
    """A cluster of similar failures mined from the history."""
    pattern: str
    category: FailureCategory
    occurrences: int
    first_seen: str
    last_seen: str
    affected_tasks: list[str] = field(default_factory=list)
    suggested_guardrail: Optional[str] = None
    resolved: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern": self.pattern,
            "category": self.category.value,
            "occurrences": self.occurrences,
            "firstSeen": self.first_seen,
            "lastSeen": self.last_seen,
            "affectedTasks": list(self.affected_tasks),
            "suggestedGuardrail": self.suggested_guardrail,
            "resolved": self.resolved,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FailurePattern:
        _require_object(data, "FailurePattern")
        return cls(
            pattern=data["pattern"],
            category=FailureCategory(data["category"]),
            occurrences=data["occurrences"],
            first_seen=data["firstSeen"],
            last_seen=data["lastSeen"],
            affected_tasks=list(data.get("affectedTasks", [])),
            suggested_guardrail=data.get("suggestedGuardrail"),
            resolved=data.get("resolved", False),
        )


@dataclass
class FailureHistoryDocument:
    """On-disk shape of failure-history.json."""
    entries: list[FailureHistoryEntry] = field(default_factory=list)
    patterns: list[FailurePattern] = field(default_factory=list)
    last_analyzed_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": [entry.to_dict() for entry in self.entries],
            "patterns": [pattern.to_dict() for pattern in self.patterns],
            "lastAnalyzedAt": self.last_analyzed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FailureHistoryDocument:
        if not isinstance(data, dict) or not isinstance(data.get("entries", []), list):
            raise ValueError("Failure history must be an object with an entries list")
        try:
            return cls(
                entries=[FailureHistoryEntry.from_dict(entry) for entry in data.get("entries", [])],
                patterns=[FailurePattern.from_dict(p) for p in data.get("patterns", [])],
                last_analyzed_at=data.get("lastAnalyzedAt"),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed failure history entry: {e}") from e


# ---------------------------------------------------------------------------
# Guardrails
# ---------------------------------------------------------------------------


class GuardrailTrigger(Enum):
    ALWAYS = "always"
    ON_ERROR = "on-error"
    ON_TASK_TYPE = "on-task-type"


class GuardrailCategory(Enum):
    SAFETY = "safety"
    QUALITY = "quality"
    STYLE = "style"
    PROCESS = "process"


@dataclass
class Guardrail:
    """An instruction injected into the agent prompt."""
    id: str
    instruction: str
    trigger: GuardrailTrigger = GuardrailTrigger.ALWAYS
    category: GuardrailCategory = GuardrailCategory.QUALITY
    enabled: bool = True
    added_at: str = ""
    added_after_failure: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "instruction": self.instruction,
            "trigger": self.trigger.value,
            "category": self.category.value,
            "enabled": self.enabled,
            "addedAt": self.added_at,
        }
        if self.added_after_failure is not None:
            data["addedAfterFailure"] = self.added_after_failure
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Guardrail:
        _require_object(data, "Guardrail")
        return cls(
            id=data["id"],
            instruction=data["instruction"],
            trigger=GuardrailTrigger(data.get("trigger", "always")),
            category=GuardrailCategory(data.get("category", "quality")),
            enabled=data.get("enabled", True),
            added_at=data.get("addedAt", ""),
            added_after_failure=data.get("addedAfterFailure"),
        )


# ---------------------------------------------------------------------------
# Session memory
# ---------------------------------------------------------------------------


@dataclass
class SessionMemory:
    """Lessons carried across sessions, kept in session-memory.json."""
    project_name: str
    lessons_learned: list[str] = field(default_factory=list)
    successful_patterns: list[str] = field(default_factory=list)
    failed_approaches: list[str] = field(default_factory=list)
    task_notes: dict[str, str] = field(default_factory=dict)
    last_updated: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "projectName": self.project_name,
            "lessonsLearned": list(self.lessons_learned),
            "successfulPatterns": list(self.successful_patterns),
            "failedApproaches": list(self.failed_approaches),
            "taskNotes": dict(self.task_notes),
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionMemory:
        """
        Create from dictionary.

        Raises:
            ValueError: If any field is missing or has the wrong type.
        """
        _require_object(data, "Session memory")
        project_name = data.get("projectName")
        if not isinstance(project_name, str):
            raise ValueError("Session memory projectName must be a string")
        for key in ("lessonsLearned", "successfulPatterns", "failedApproaches"):
            if not _is_str_list(data.get(key)):
                raise ValueError(f"Session memory {key} must be a list of strings")
        task_notes = data.get("taskNotes")
        if not isinstance(task_notes, dict) or not all(
            isinstance(note, str) for note in task_notes.values()
        ):
            raise ValueError("Session memory taskNotes must map task titles to strings")
        last_updated = data.get("lastUpdated")
        if not isinstance(last_updated, str):
            raise ValueError("Session memory lastUpdated must be a string")
        return cls(
            project_name=project_name,
            lessons_learned=list(data["lessonsLearned"]),
            successful_patterns=list(data["successfulPatterns"]),
            failed_approaches=list(data["failedApproaches"]),
            task_notes=dict(task_notes),
            last_updated=last_updated,
        )


# ---------------------------------------------------------------------------
# Decomposition and retries
# ---------------------------------------------------------------------------


@dataclass
class DecompositionSubtask:
    title: str
    description: str
    steps: list[str] = field(default_factory=list)

    def to_task(self) -> Task:
        return Task(title=self.title, description=self.description, steps=list(self.steps), done=False)


@dataclass
class DecompositionRequest:
    """An agent's request to replace a task with smaller subtasks."""
    original_task_title: str
    reason: str
    suggested_subtasks: list[DecompositionSubtask] = field(default_factory=list)


@dataclass
class RetryContext:
    attempt_number: int
    failure_category: FailureCategory
    root_cause: str

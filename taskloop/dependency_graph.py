"""
Dependency graph and scheduling over a PRD.

Every function here is pure: given the same Prd value it returns the same
result and never mutates its input. The graph is rebuilt on demand and
never stored.

Nodes are keyed by task id, or by a synthetic ``__index_{i}`` key for tasks
without one. Edges point from a task to each dependency that resolves to
an existing node; dangling ids never become edges and are reported by
validate_dependencies instead.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from typing import Optional

from taskloop.models import Prd, Task

MISSING_ID = "missing_id"
MISSING_DEPENDENCY = "missing_dependency"
SELF_REFERENCE = "self_reference"
CYCLE = "cycle"

# Missing priority sorts after every explicit one
_NO_PRIORITY = sys.maxsize


@dataclass
class TaskNode:
    task: Task
    index: int


@dataclass
class DependencyGraph:
    nodes: dict[str, TaskNode] = field(default_factory=dict)
    edges: dict[str, list[str]] = field(default_factory=dict)           # task -> dependencies
    reverse_edges: dict[str, list[str]] = field(default_factory=dict)   # task -> dependents


@dataclass
class DependencyError:
    type: str
    task_title: str
    details: str
    task_id: Optional[str] = None


@dataclass
class DependencyValidationResult:
    is_valid: bool
    errors: list[DependencyError] = field(default_factory=list)


@dataclass
class CycleDetectionResult:
    has_cycle: bool
    cycle_nodes: list[str] = field(default_factory=list)


@dataclass
class TaskWithDependencyInfo:
    task: Task
    index: int
    dependency_ids: list[str]
    is_ready: bool
    blocked_by: list[str]


@dataclass
class CanExecuteResult:
    can_execute: bool
    reason: Optional[str] = None


@dataclass
class ParallelExecutionPlan:
    """
    Sequential rounds of tasks that can run concurrently.

    unscheduled holds tasks no round could pick up (their dependencies can
    never be met). A non-empty unscheduled list is a scheduling failure.
    """
    groups: list[list[Task]] = field(default_factory=list)
    unscheduled: list[Task] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.unscheduled


def _node_key(task: Task, index: int) -> str:
    return task.id if task.id is not None else f"__index_{index}"


def _priority(task: Task) -> float:
    return task.priority if task.priority is not None else _NO_PRIORITY


def _build_task_id_index(tasks: list[Task]) -> dict[str, int]:
    return {task.id: index for index, task in enumerate(tasks) if task.id}


def build_dependency_graph(prd: Prd) -> DependencyGraph:
    """Build the graph of tasks and their resolvable dependencies."""
    graph = DependencyGraph()

    for index, task in enumerate(prd.tasks):
        key = _node_key(task, index)
        graph.nodes[key] = TaskNode(task=task, index=index)
        graph.edges[key] = []
        graph.reverse_edges[key] = []

    for index, task in enumerate(prd.tasks):
        if not task.depends_on:
            continue
        key = _node_key(task, index)
        for dependency_id in task.depends_on:
            if dependency_id in graph.nodes and dependency_id not in graph.edges[key]:
                graph.edges[key].append(dependency_id)
                graph.reverse_edges[dependency_id].append(key)

    return graph


def validate_dependencies(prd: Prd) -> DependencyValidationResult:
    """
    Check every dependency declaration, collecting all problems.

    Reports missing_id, missing_dependency, self_reference and at most one
    cycle witness. A self reference is not also reported as missing.
    """
    errors: list[DependencyError] = []
    task_ids = _build_task_id_index(prd.tasks)

    for task in prd.tasks:
        if not task.depends_on:
            continue

        if not task.id:
            errors.append(DependencyError(
                type=MISSING_ID,
                task_title=task.title,
                details="Task has dependencies but no id field",
            ))

        for dependency_id in task.depends_on:
            if task.id and dependency_id == task.id:
                errors.append(DependencyError(
                    type=SELF_REFERENCE,
                    task_id=task.id,
                    task_title=task.title,
                    details=f'Task "{task.title}" depends on itself',
                ))
                continue

            if dependency_id not in task_ids:
                errors.append(DependencyError(
                    type=MISSING_DEPENDENCY,
                    task_id=task.id,
                    task_title=task.title,
                    details=(
                        f'Task "{task.title}" depends on non-existent task '
                        f'with id "{dependency_id}"'
                    ),
                ))

    cycle = detect_cycles(prd)
    if cycle.has_cycle:
        errors.append(DependencyError(
            type=CYCLE,
            task_title=cycle.cycle_nodes[0] if cycle.cycle_nodes else "unknown",
            details=f"Dependency cycle detected: {' -> '.join(cycle.cycle_nodes)}",
        ))

    return DependencyValidationResult(is_valid=not errors, errors=errors)


def detect_cycles(prd: Prd) -> CycleDetectionResult:
    """
    Find one dependency cycle, if any.

    DFS with a recursion stack from every unvisited root. The witness path
    starts and ends with the same node, e.g. ``["a", "b", "a"]``.
    """
    graph = build_dependency_graph(prd)
    visited: set[str] = set()
    on_stack: set[str] = set()
    path: list[str] = []

    def dfs(node_id: str) -> Optional[list[str]]:
        visited.add(node_id)
        on_stack.add(node_id)
        path.append(node_id)

        for dependency_id in graph.edges[node_id]:
            if dependency_id not in visited:
                found = dfs(dependency_id)
                if found:
                    return found
            elif dependency_id in on_stack:
                start = path.index(dependency_id)
                return path[start:] + [dependency_id]

        path.pop()
        on_stack.discard(node_id)
        return None

    for node_id in graph.nodes:
        if node_id not in visited:
            found = dfs(node_id)
            if found:
                return CycleDetectionResult(has_cycle=True, cycle_nodes=found)

    return CycleDetectionResult(has_cycle=False)


def get_topological_order(prd: Prd) -> list[Task]:
    """All tasks, done ones included, with dependencies before dependents."""
    graph = build_dependency_graph(prd)
    visited: set[str] = set()
    ordered: list[Task] = []

    def visit(node_id: str) -> None:
        if node_id in visited:
            return
        visited.add(node_id)
        for dependency_id in graph.edges[node_id]:
            visit(dependency_id)
        ordered.append(graph.nodes[node_id].task)

    for node_id in graph.nodes:
        visit(node_id)

    return ordered


def get_execution_order(prd: Prd) -> list[Task]:
    """Topological order restricted to tasks that are not done."""
    return [task for task in get_topological_order(prd) if not task.done]


def _describe_node(graph: DependencyGraph, node_id: str) -> TaskWithDependencyInfo:
    node = graph.nodes[node_id]
    dependencies = graph.edges[node_id]
    blocked_by = [
        graph.nodes[dependency_id].task.title
        for dependency_id in dependencies
        if not graph.nodes[dependency_id].task.done
    ]
    return TaskWithDependencyInfo(
        task=node.task,
        index=node.index,
        dependency_ids=list(dependencies),
        is_ready=node.task.done or not blocked_by,
        blocked_by=blocked_by,
    )


def get_all_tasks_with_dependency_info(prd: Prd) -> list[TaskWithDependencyInfo]:
    """Dependency info for every task, in PRD order. Done tasks count as ready."""
    graph = build_dependency_graph(prd)
    infos = [_describe_node(graph, node_id) for node_id in graph.nodes]
    return sorted(infos, key=lambda info: info.index)


def get_ready_tasks(prd: Prd) -> list[TaskWithDependencyInfo]:
    """Not-done tasks whose dependencies are all done."""
    graph = build_dependency_graph(prd)
    ready = []
    for node_id, node in graph.nodes.items():
        if node.task.done:
            continue
        info = _describe_node(graph, node_id)
        if info.is_ready:
            ready.append(info)
    return ready


def get_blocked_tasks(prd: Prd) -> list[TaskWithDependencyInfo]:
    """Not-done tasks waiting on at least one unfinished dependency."""
    return [
        info for info in get_all_tasks_with_dependency_info(prd)
        if not info.task.done and not info.is_ready
    ]


def get_dependents(prd: Prd, task_id: str) -> list[Task]:
    """Tasks that depend directly on task_id."""
    graph = build_dependency_graph(prd)
    return [graph.nodes[key].task for key in graph.reverse_edges.get(task_id, [])]


def get_dependencies(prd: Prd, task_id: str) -> list[Task]:
    """Tasks that task_id depends on directly."""
    graph = build_dependency_graph(prd)
    return [graph.nodes[key].task for key in graph.edges.get(task_id, [])]


def get_next_ready_task(prd: Prd) -> Optional[TaskWithDependencyInfo]:
    """The ready task with the lowest priority number, ties broken by PRD order."""
    ready = get_ready_tasks(prd)
    if not ready:
        return None
    return min(ready, key=lambda info: (_priority(info.task), info.index))


def can_execute_task(prd: Prd, task_id: str) -> CanExecuteResult:
    graph = build_dependency_graph(prd)
    if task_id not in graph.nodes:
        return CanExecuteResult(False, f'Task with id "{task_id}" not found')

    info = _describe_node(graph, task_id)
    if info.task.done:
        return CanExecuteResult(False, "Task is already completed")
    if info.blocked_by:
        return CanExecuteResult(
            False,
            f"Task is blocked by incomplete dependencies: {', '.join(info.blocked_by)}",
        )
    return CanExecuteResult(True)


def get_parallel_execution_groups(prd: Prd) -> ParallelExecutionPlan:
    """
    Partition incomplete tasks into sequential rounds.

    Round N holds every remaining task whose dependencies are done or were
    scheduled in an earlier round, sorted by priority (missing last). An id
    that names no task never blocks. When a round finds nothing ready the
    remaining tasks are returned as unscheduled.
    """
    task_ids = _build_task_id_index(prd.tasks)
    completed = {task.id for task in prd.tasks if task.done and task.id}
    remaining = [task for task in prd.tasks if not task.done]
    plan = ParallelExecutionPlan()

    def is_met(dependency_id: str) -> bool:
        if dependency_id in completed:
            return True
        index = task_ids.get(dependency_id)
        if index is None:
            return True
        return prd.tasks[index].done

    while remaining:
        ready = [
            task for task in remaining
            if all(is_met(dependency_id) for dependency_id in (task.depends_on or []))
        ]
        if not ready:
            plan.unscheduled = list(remaining)
            break

        plan.groups.append(sorted(ready, key=_priority))

        for task in ready:
            if task.id:
                completed.add(task.id)

        ready_ids = {task.id for task in ready if task.id}
        ready_titles = {task.title for task in ready}
        remaining = [
            task for task in remaining
            if task.id not in ready_ids and task.title not in ready_titles
        ]

    return plan

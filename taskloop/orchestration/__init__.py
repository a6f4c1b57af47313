"""
Iteration loop orchestration.

Orchestrator is the entry point; the coordinators and controllers it wires
together are exported for tests and embedding.
"""

from taskloop.orchestration.handler_coordinator import (
    HandlerCallbacks,
    HandlerCoordinator,
    HandlerCoordinatorConfig,
    IterationReport,
)
from taskloop.orchestration.iteration import (
    IterationCallbacks,
    IterationContext,
    IterationController,
    IterationCoordinator,
    IterationTimer,
)
from taskloop.orchestration.orchestrator import Orchestrator, RunResult, StopReason
from taskloop.orchestration.parallel import ParallelExecutionManager

__all__ = [
    "HandlerCallbacks",
    "HandlerCoordinator",
    "HandlerCoordinatorConfig",
    "IterationCallbacks",
    "IterationContext",
    "IterationController",
    "IterationCoordinator",
    "IterationReport",
    "IterationTimer",
    "Orchestrator",
    "ParallelExecutionManager",
    "RunResult",
    "StopReason",
]

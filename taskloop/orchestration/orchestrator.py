"""
Top-level session orchestrator.

Wires the stores, process registry, event bus, agent runner, coordinators
and parallel manager for one session and drives the loop:

    iteration start -> agent run -> agent.complete / agent.error
        -> HandlerCoordinator -> IterationController -> delay -> next

Everything runs on the caller's thread except the agent's pipe readers and
parallel-mode workers. Each Orchestrator owns its own registry, bus and
controller, so several can run in one process without sharing state.
"""

from __future__ import annotations

import logging
import subprocess
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from taskloop.agent_runner import AgentRunner, AgentRunResult
from taskloop.config import TaskloopConfig
from taskloop.errors import SchedulingError
from taskloop.events.bus import EventBus
from taskloop.failure_patterns import FailureHistory
from taskloop.guardrails import GuardrailManager
from taskloop.handlers.learning import IterationOutcome, LearningHandler
from taskloop.logger import TaskloopLogger
from taskloop.models import Prd, Session, Task
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
)
from taskloop.orchestration.parallel import ParallelExecutionManager, task_key
from taskloop.process_manager import AgentProcessManager
from taskloop.progress import ProgressLog
from taskloop.session_manager import SessionManager
from taskloop.session_memory import SessionMemoryManager
from taskloop.state_store import Stores
from taskloop.utils.fs import ensure_dir

logger = logging.getLogger(__name__)

PAUSE_POLL_SECONDS = 0.1


class StopReason(Enum):
    """Why a session ended. Each maps to its own CLI exit code."""

    ALL_COMPLETE = "all_complete"
    MAX_ITERATIONS = "max_iterations"
    MAX_RUNTIME = "max_runtime"
    FATAL_ERROR = "fatal_error"
    DECOMPOSITION_EXHAUSTED = "decomposition_exhausted"
    ABORTED = "aborted"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    StopReason.ALL_COMPLETE: 0,
    StopReason.FATAL_ERROR: 1,
    StopReason.MAX_ITERATIONS: 2,
    StopReason.MAX_RUNTIME: 3,
    StopReason.DECOMPOSITION_EXHAUSTED: 4,
    StopReason.ABORTED: 130,
}


@dataclass
class RunResult:
    stop_reason: StopReason
    iterations_run: int
    error: Optional[str] = None
    session: Optional[Session] = None

    @property
    def success(self) -> bool:
        return self.stop_reason == StopReason.ALL_COMPLETE


class Orchestrator:
    """Runs one session of the iteration loop against the project's PRD."""

    def __init__(
        self,
        config: TaskloopConfig,
        logger: Optional[TaskloopLogger] = None,
        stores: Optional[Stores] = None,
        progress: Optional[ProgressLog] = None,
        process_manager: Optional[AgentProcessManager] = None,
        bus: Optional[EventBus] = None,
        popen: Callable[..., Any] = subprocess.Popen,
        on_output: Optional[Callable[[str], None]] = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            config: Loaded configuration.
            logger: Optional structured logger.
            stores: Document stores; built from config when omitted.
            progress: Progress journal; defaults to config.progress_path.
            process_manager: Process registry; a private one when omitted.
            bus: Event bus; a private one when omitted.
            popen: Process factory passed to agent runners.
            on_output: Called with each line of parsed agent text.
        """
        self.config = config
        self.logger = logger
        self.stores = stores or Stores.from_config(config, logger)
        self.progress = progress or ProgressLog(config.progress_path)
        self.process_manager = process_manager or AgentProcessManager()
        self.bus = bus or EventBus()
        self._popen = popen
        self._on_output = on_output

        self.session_manager = SessionManager(self.stores.session, self.progress, logger)
        self.guardrails = GuardrailManager(self.stores.guardrails)
        self.failure_history = FailureHistory(self.stores.failure_history)
        self.memory = SessionMemoryManager(self.stores.session_memory)
        self.learning = LearningHandler(config.learning.enabled, self.failure_history, logger, memory=self.memory)
        self.iteration_coordinator = IterationCoordinator(
            self.stores.prd, self.session_manager, self.progress, self.learning, logger,
        )
        self.handler_coordinator = HandlerCoordinator(self.bus, self.stores.prd, self.progress, logger)
        self.controller = IterationController(
            total=config.iterations.iterations,
            delay_ms=config.iterations.delay_ms,
            max_runtime_ms=config.iterations.max_runtime_ms,
            full_mode=config.iterations.full_mode,
        )
        self.parallel = ParallelExecutionManager(
            config.parallel,
            get_session=lambda: self.iteration_coordinator.session,
            set_session=self._set_session,
            progress=self.progress,
            logger=logger,
        )
        self.runner = AgentRunner(
            config,
            self.process_manager,
            bus=self.bus,
            logger=logger,
            progress=self.progress,
            on_output=on_output,
            popen=popen,
        )

        self._abort_event = threading.Event()
        self._stop_reason: Optional[StopReason] = None
        self._error: Optional[str] = None
        self._pending_iteration: Optional[int] = None
        self._context: Optional[IterationContext] = None
        self._carry_over_context: Optional[str] = None
        self._iterations_started: set[int] = set()

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self.logger:
            self.logger.log(event_type, data, level=level)

    def _set_session(self, session: Session) -> None:
        self.iteration_coordinator.session = session
        self.session_manager.save(session)

    @property
    def session(self) -> Optional[Session]:
        return self.iteration_coordinator.session

    # Public API

    def abort(self) -> None:
        """Stop the loop and terminate every agent process. Safe from any thread."""
        self._abort_event.set()
        self.process_manager.kill_all()
        self.controller.timer.cancel()

    def run(
        self,
        iterations: Optional[int] = None,
        resume: bool = False,
        skip_verification: bool = False,
    ) -> RunResult:
        """
        Run the session until a stop condition.

        Args:
            iterations: Iteration budget; defaults to the configured one.
            resume: Continue a persisted running/paused/stopped session.
            skip_verification: Skip verification even when enabled.

        Returns:
            RunResult with a distinct stop_reason for every way the loop ends.
        """
        self._reset_run_state()
        ensure_dir(self.config.data_path)

        prd_result = self.stores.prd.reload()
        prd = prd_result.value
        if prd is None:
            error = prd_result.error or f"No PRD found at {self.config.prd_path}"
            return self._early_exit(StopReason.FATAL_ERROR, error)
        if not prd.tasks:
            return self._early_exit(StopReason.FATAL_ERROR, "PRD has no tasks")
        if prd.is_complete():
            return self._early_exit(StopReason.ALL_COMPLETE, None)

        self.guardrails.initialize()
        if self.config.learning.enabled:
            self.memory.initialize(prd.project)
        total = iterations if iterations is not None else self.config.iterations.iterations
        start_iteration = self._open_session(prd, total, resume)

        if self.config.parallel.enabled:
            try:
                self.parallel.initialize(prd)
            except SchedulingError as e:
                self._fatal(str(e))
                return self._result()

        self.handler_coordinator.initialize(
            HandlerCoordinatorConfig(self.config, skip_verification=skip_verification),
            HandlerCallbacks(
                on_iteration_complete=self._on_iteration_report,
                on_fatal_error=self._fatal,
                on_restart_iteration=self.controller.restart_current_iteration,
                on_decomposition_exhausted=self._on_decomposition_exhausted,
                on_prd_update=self._on_prd_update,
            ),
        )
        self.controller.set_callbacks(IterationCallbacks(
            on_iteration_start=self._on_iteration_start,
            on_all_complete=self._on_all_complete,
            on_max_iterations=self._on_max_iterations,
            on_max_runtime=self._on_max_runtime,
        ))

        try:
            self.controller.start_from_iteration(start_iteration)
            self._loop()
        except KeyboardInterrupt:
            self.abort()
            self._stop(StopReason.ABORTED, "Interrupted")
        finally:
            self.handler_coordinator.cleanup()
            self.controller.stop()
            self.process_manager.clear_pending_kill_timeouts()

        return self._result()

    # Loop

    def _reset_run_state(self) -> None:
        self._abort_event.clear()
        self.process_manager.reset()
        self.controller.reset()
        self.controller.full_mode = self.config.iterations.full_mode
        self.parallel.reset()
        self._stop_reason = None
        self._error = None
        self._pending_iteration = None
        self._context = None
        self._carry_over_context = None
        self._iterations_started = set()

    def _open_session(self, prd: Prd, total: int, resume: bool) -> int:
        """Start or resume the persisted session. Returns the first iteration to run."""
        pending = self.session_manager.load_pending() if resume else None
        if pending is None:
            started = self.session_manager.start(prd, total)
            self.controller.set_total(total)
            self.iteration_coordinator.attach_session(started.session, total)
            return 1

        resumed = self.session_manager.resume(pending, prd)
        session = resumed.session
        start = max(session.current_iteration, 1)
        timing = session.statistics.get_timing(session.current_iteration)
        if timing is not None and timing.end_time is not None:
            start += 1
        resumed_total = max(session.total_iterations, start + resumed.remaining_iterations - 1)
        self.controller.set_total(resumed_total)
        self.iteration_coordinator.attach_session(session, resumed_total)
        return start

    def _loop(self) -> None:
        while self.controller.is_running:
            if self._abort_event.is_set():
                self._stop(StopReason.ABORTED, "Aborted")
                break
            if self._pending_iteration is not None:
                iteration = self._pending_iteration
                self._pending_iteration = None
                self._execute_iteration(iteration)
            elif self.controller.timer.is_pending():
                self.controller.timer.run_pending(self._abort_event.wait)
            elif self.controller.is_paused:
                self._abort_event.wait(PAUSE_POLL_SECONDS)
            else:
                if self._abort_event.is_set():
                    continue
                self._fatal("Iteration finished without reporting an outcome")

        if self._abort_event.is_set() and self._stop_reason is None:
            self._stop(StopReason.ABORTED, "Aborted")

    def _execute_iteration(self, iteration: int) -> None:
        self._iterations_started.add(iteration)
        context = self.iteration_coordinator.handle_iteration_start(iteration, self.controller.total)
        self._context = context

        if context.prd is None:
            self._fatal("PRD could not be loaded")
            return

        if self.config.parallel.enabled:
            self._execute_parallel(context)
            return

        if context.task is None and context.prd.has_pending_tasks():
            self._fatal("No task is ready: every pending task is blocked by unfinished dependencies")
            return

        retry_context = self._carry_over_context
        self._carry_over_context = None
        self.runner.run(
            context.task,
            iteration,
            guardrails=self.guardrails.format_for_prompt(),
            retry_context=retry_context,
        )

    # Parallel mode

    def _execute_parallel(self, context: IterationContext) -> None:
        prd = context.prd
        started = self.parallel.start_next_group(prd)
        if not started.started and prd.has_pending_tasks():
            # Tasks added since the rounds were computed
            try:
                self.parallel.initialize(prd)
            except SchedulingError as e:
                self._fatal(str(e))
                return
            started = self.parallel.start_next_group(prd)
        if not started.started:
            self._on_iteration_report(IterationReport(
                success=True,
                all_tasks_done=prd.is_complete(),
                has_pending_tasks=prd.has_pending_tasks(),
            ))
            return

        guardrails = self.guardrails.format_for_prompt()
        jobs = []
        for task in started.tasks:
            index = prd.find_task_index(task.title)
            key = task_key(task, index)
            self.parallel.record_task_start(task, index, key)
            jobs.append((task, key))

        with ThreadPoolExecutor(max_workers=len(jobs), thread_name_prefix="taskloop-agent") as pool:
            futures = [
                (task, key, pool.submit(self._run_parallel_task, task, key, context.iteration, guardrails))
                for task, key in jobs
            ]
            results = [(task, key, future.result()) for task, key, future in futures]

        if self._abort_event.is_set():
            return

        fatal = None
        for task, key, result in results:
            self.parallel.record_task_complete(key, task.title, result.success, result.error)
            if result.is_fatal and fatal is None:
                fatal = result.error
            if not result.success:
                self.learning.record_iteration_outcome(IterationOutcome(
                    iteration=context.iteration,
                    was_successful=False,
                    task_title=task.title,
                    agent_error=result.error,
                    output=result.output,
                    exit_code=result.exit_code,
                    retry_count=result.retry_count,
                ))

        reloaded = self.iteration_coordinator.load_prd() or prd
        self.parallel.finish_batch(reloaded)

        if fatal is not None:
            self.bus.emit_agent_error(None, context.iteration, fatal, None, True, "unknown")
            return

        succeeded = [result for _, _, result in results if result.success]
        if not succeeded:
            # Each task's failure was recorded above; the aggregate only charges the iteration
            errors = "; ".join(f"{task.title}: {result.error}" for task, _, result in results)
            self.bus.emit_agent_error(
                ", ".join(task.title for task, _, _ in results),
                context.iteration,
                errors,
                None,
                False,
                "unknown",
                retry_count=max(result.retry_count for _, _, result in results),
                task_id=",".join(key for _, key, _ in results),
                already_recorded=True,
            )
            return

        self.bus.emit_agent_complete(
            ", ".join(task.title for task, _, _ in results),
            context.iteration,
            0,
            "\n".join(result.output for result in succeeded),
            any(result.is_complete for result in succeeded),
            retry_count=max(result.retry_count for result in succeeded),
        )

    def _run_parallel_task(self, task: Task, key: str, iteration: int, guardrails: str) -> AgentRunResult:
        runner = AgentRunner(
            self.config,
            self.process_manager,
            bus=None,
            logger=self.logger,
            progress=self.progress,
            process_id=key,
            on_output=self._on_output,
            popen=self._popen,
            allow_decomposition=False,
        )
        try:
            return runner.run(task, iteration, guardrails=guardrails)
        finally:
            self.process_manager.unregister_process(key)

    # Controller callbacks

    def _on_iteration_start(self, iteration: int) -> None:
        self._pending_iteration = iteration

    def _on_all_complete(self) -> None:
        self._stop_reason = StopReason.ALL_COMPLETE
        self.iteration_coordinator.handle_all_complete()

    def _on_max_iterations(self) -> None:
        self._stop_reason = StopReason.MAX_ITERATIONS
        self.iteration_coordinator.handle_max_iterations()

    def _on_max_runtime(self) -> None:
        self._stop_reason = StopReason.MAX_RUNTIME
        self.iteration_coordinator.handle_max_runtime()

    # Handler callbacks

    def _on_iteration_report(self, report: IterationReport) -> None:
        iteration = self.controller.current
        verification_failed = report.verification is not None and not report.verification.passed
        self.iteration_coordinator.handle_iteration_complete(iteration, IterationOutcome(
            iteration=iteration,
            was_successful=report.success,
            task_title=report.task_title or "",
            agent_error=None if verification_failed else report.error,
            output=report.output,
            exit_code=report.exit_code,
            retry_count=report.retry_count,
            retry_contexts=report.retry_contexts,
            verification_failed=verification_failed,
            failed_checks=report.verification.failed_checks if report.verification else [],
            failure_recorded=report.failure_recorded,
        ))
        self._carry_over_context = report.retry_context
        self.controller.mark_iteration_complete(report.all_tasks_done, report.has_pending_tasks)

    def _on_prd_update(self, prd: Prd) -> None:
        self._log("prd_updated", {"task_count": len(prd.tasks), "pending": prd.pending_count()})

    def _on_decomposition_exhausted(self, task_title: str) -> None:
        self._stop(
            StopReason.DECOMPOSITION_EXHAUSTED,
            f'Task "{task_title}" reached the decomposition limit '
            f"({self.config.learning.max_decompositions_per_task}) and is still not done",
        )

    def _fatal(self, error: str) -> None:
        if self._stop_reason is not None:
            return
        self._stop_reason = StopReason.FATAL_ERROR
        self._error = error
        self.controller.stop()
        self.process_manager.kill_all()
        result = self.session_manager.handle_fatal_error(
            error,
            self.iteration_coordinator.session,
            iteration=self.controller.current or None,
        )
        self.iteration_coordinator.session = result.session

    def _stop(self, reason: StopReason, error: Optional[str]) -> None:
        if self._stop_reason is not None:
            return
        self._stop_reason = reason
        self._error = error
        self.controller.stop()
        self.iteration_coordinator.handle_stopped(reason.value)

    # Results

    def _early_exit(self, reason: StopReason, error: Optional[str]) -> RunResult:
        self._stop_reason = reason
        self._error = error
        if error:
            self._log("session_not_started", {"reason": reason.value, "error": error}, level="error")
        return self._result()

    def _result(self) -> RunResult:
        reason = self._stop_reason or StopReason.ABORTED
        iterations_run = len(self._iterations_started)
        if self.logger:
            self.logger.log_session_complete(reason.value, iterations_run)
        if self._iterations_started:
            self.progress.log_session_complete(reason.value, iterations_run)
        return RunResult(
            stop_reason=reason,
            iterations_run=iterations_run,
            error=self._error,
            session=self.iteration_coordinator.session,
        )

"""
Iteration loop state machine and per-iteration bookkeeping.

IterationController owns the counters and stop conditions. It never sleeps
or recurses: delays are parked in an IterationTimer and the orchestrator's
loop runs them with run_pending(), so a long session is a flat loop.

IterationCoordinator does the work that happens at iteration boundaries:
reloading the PRD, choosing the task, session timing and statistics,
learning and the progress journal.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from taskloop import session as session_ops
from taskloop.dependency_graph import get_next_ready_task
from taskloop.handlers.learning import IterationOutcome, LearningHandler
from taskloop.models import Prd, Session, SessionStatus, Task

if TYPE_CHECKING:
    from taskloop.logger import TaskloopLogger
    from taskloop.progress import ProgressLog
    from taskloop.session_manager import SessionManager
    from taskloop.state_store import PrdStore

logger = logging.getLogger(__name__)


class IterationTimer:
    """
    A single cancellable delayed callback.

    Scheduling replaces any pending callback. Nothing fires on its own;
    run_pending() waits out the delay and invokes the callback.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: Optional[tuple[float, Callable[[], None]]] = None

    def schedule_next(self, delay_ms: float, callback: Callable[[], None]) -> None:
        with self._lock:
            self._pending = (time.monotonic() + max(delay_ms, 0) / 1000, callback)

    def cancel(self) -> None:
        with self._lock:
            self._pending = None

    def is_pending(self) -> bool:
        with self._lock:
            return self._pending is not None

    def run_pending(self, wait: Callable[[float], bool]) -> bool:
        """
        Wait for the pending callback's deadline, then run it.

        Args:
            wait: Blocks for up to the given seconds; returns True when the
                wait was interrupted (threading.Event.wait fits).

        Returns:
            True if a callback ran.
        """
        with self._lock:
            pending = self._pending
        if pending is None:
            return False

        deadline, callback = pending
        remaining = deadline - time.monotonic()
        if remaining > 0 and wait(remaining):
            return False

        with self._lock:
            # Cancelled or rescheduled while waiting
            if self._pending is not pending:
                return False
            self._pending = None
        callback()
        return True


@dataclass
class IterationCallbacks:
    on_iteration_start: Optional[Callable[[int], None]] = None
    on_iteration_complete: Optional[Callable[[int], None]] = None
    on_all_complete: Optional[Callable[[], None]] = None
    on_max_iterations: Optional[Callable[[], None]] = None
    on_max_runtime: Optional[Callable[[], None]] = None


class IterationController:
    """Iteration counters, pause/stop flags, full mode and the runtime ceiling."""

    def __init__(
        self,
        total: int = 10,
        delay_ms: int = 2000,
        max_runtime_ms: int = 0,
        full_mode: bool = False,
        timer: Optional[IterationTimer] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.timer = timer or IterationTimer()
        self.callbacks = IterationCallbacks()
        self._clock = clock
        self._initial_total = total
        self.current = 0
        self.total = total
        self.delay_ms = delay_ms
        self.max_runtime_ms = max_runtime_ms
        self.full_mode = full_mode
        self.start_time: Optional[float] = None
        self.is_running = False
        self.is_paused = False
        self.is_delaying = False
        self._awaiting_resume = False

    def set_callbacks(self, callbacks: IterationCallbacks) -> None:
        self.callbacks = callbacks

    def set_total(self, total: int) -> None:
        self.total = total

    def _elapsed_ms(self) -> float:
        if self.start_time is None:
            return 0
        return (self._clock() - self.start_time) * 1000

    def get_time_remaining(self) -> Optional[float]:
        """Milliseconds left before the runtime ceiling, or None without one."""
        if not self.max_runtime_ms or self.start_time is None:
            return None
        return max(self.max_runtime_ms - self._elapsed_ms(), 0)

    def is_max_runtime_reached(self) -> bool:
        if not self.max_runtime_ms or self.start_time is None:
            return False
        return self._elapsed_ms() >= self.max_runtime_ms

    def _begin(self, iteration: int) -> None:
        if self.start_time is None:
            self.start_time = self._clock()
        self.current = iteration
        self.is_running = True
        self.is_delaying = False
        self.is_paused = False
        self._awaiting_resume = False
        if self.callbacks.on_iteration_start:
            self.callbacks.on_iteration_start(iteration)

    def start(self) -> None:
        self._begin(1)

    def start_from_iteration(self, iteration: int) -> None:
        self._begin(iteration)

    def pause(self) -> None:
        if self.is_delaying:
            self.timer.cancel()
            self._awaiting_resume = True
        self.is_paused = True
        self.is_delaying = False

    def resume(self) -> None:
        """Unpause; if a delay was skipped while paused, advance now."""
        if not self.is_paused:
            return
        self.is_paused = False
        if self._awaiting_resume and self.is_running:
            self._awaiting_resume = False
            self._schedule(self.next, delay_ms=0)

    def stop(self) -> None:
        self.timer.cancel()
        self.is_running = False
        self.is_delaying = False
        self.is_paused = False
        self._awaiting_resume = False

    def _finish(self, callback: Optional[Callable[[], None]]) -> None:
        self.stop()
        if callback:
            callback()

    def _schedule(self, callback: Callable[[], None], delay_ms: Optional[int] = None) -> None:
        if self.is_paused:
            self._awaiting_resume = True
            return
        self.is_delaying = True
        self.timer.schedule_next(self.delay_ms if delay_ms is None else delay_ms, callback)

    def next(self) -> None:
        """Advance to the next iteration unless a ceiling has been reached."""
        if not self.is_running:
            return
        if self.current >= self.total:
            self._finish(self.callbacks.on_max_iterations)
            return
        if self.is_max_runtime_reached():
            self._finish(self.callbacks.on_max_runtime)
            return
        self.is_delaying = False
        self.current += 1
        if self.callbacks.on_iteration_start:
            self.callbacks.on_iteration_start(self.current)

    def mark_iteration_complete(self, all_tasks_done: bool, has_pending_tasks: bool) -> None:
        """
        Decide what follows a finished iteration.

        All tasks done stops with on_all_complete. At the iteration ceiling,
        full mode with pending tasks extends the total by one and continues;
        otherwise on_max_iterations stops the loop. Below the ceiling the
        next iteration is scheduled after delay_ms.
        """
        if not self.is_running:
            return
        if self.callbacks.on_iteration_complete:
            self.callbacks.on_iteration_complete(self.current)

        if all_tasks_done:
            self._finish(self.callbacks.on_all_complete)
            return

        if self.current >= self.total:
            if self.full_mode and has_pending_tasks:
                self.total += 1
                logger.debug("Full mode: extended iteration total to %d", self.total)
            else:
                self._finish(self.callbacks.on_max_iterations)
                return

        self._schedule(self.next)

    def restart_current_iteration(self) -> None:
        """Run the current iteration again after the delay, without charging the budget."""
        if not self.is_running:
            return

        def restart() -> None:
            self.is_delaying = False
            if self.callbacks.on_iteration_start:
                self.callbacks.on_iteration_start(self.current)

        self._schedule(restart)

    def reset(self) -> None:
        self.stop()
        self.current = 0
        self.total = self._initial_total
        self.full_mode = False
        self.start_time = None


@dataclass
class IterationContext:
    """What an iteration works on, fixed at iteration start."""
    iteration: int
    prd: Optional[Prd]
    task: Optional[Task]
    task_index: int


class IterationCoordinator:
    """Bookkeeping at iteration boundaries, shared by sequential and parallel mode."""

    def __init__(
        self,
        prd_store: PrdStore,
        session_manager: SessionManager,
        progress: ProgressLog,
        learning: LearningHandler,
        logger: Optional[TaskloopLogger] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._prd_store = prd_store
        self._session_manager = session_manager
        self._progress = progress
        self.learning = learning
        self._logger = logger
        self._clock = clock
        self.session: Optional[Session] = None
        self.total = 0
        self._run_start: Optional[float] = None

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def attach_session(self, session: Session, total: int) -> None:
        self.session = session
        self.total = total
        self._run_start = self._clock() - session.elapsed_time_seconds

    def _elapsed_seconds(self) -> int:
        if self._run_start is None:
            return 0
        return int(self._clock() - self._run_start)

    def _save(self) -> None:
        if self.session is not None:
            self._session_manager.save(self.session)

    def load_prd(self) -> Optional[Prd]:
        result = self._prd_store.reload()
        if result.error:
            self._log("prd_load_failed", {"error": result.error}, level="error")
        return result.value

    def handle_iteration_start(self, iteration: int, total: int) -> IterationContext:
        """Reload the PRD, choose the next ready task and stamp the session."""
        self.total = total
        prd = self.load_prd()
        task: Optional[Task] = None
        task_index = 0
        if prd is not None:
            ready = get_next_ready_task(prd)
            if ready is not None:
                task, task_index = ready.task, ready.index
            else:
                task_index = prd.get_current_task_index()

        if self.session is not None:
            updated = session_ops.record_iteration_start(self.session, iteration)
            updated = session_ops.update_iteration(updated, iteration, task_index, self._elapsed_seconds())
            if updated.total_iterations != total:
                updated = session_ops.set_total_iterations(updated, total)
            self.session = updated
            self._save()

        title = task.title if task else None
        if self._logger:
            self._logger.log_iteration_start(iteration, total, title)
        self._progress.log_iteration_start(iteration, total, title)
        return IterationContext(iteration=iteration, prd=prd, task=task, task_index=task_index)

    def handle_iteration_complete(self, iteration: int, outcome: IterationOutcome) -> None:
        """Fold the iteration into session statistics, learning and the journal."""
        duration_ms = 0
        if self.session is not None:
            updated = session_ops.record_iteration_end(self.session, iteration, outcome.was_successful)
            timing = updated.statistics.get_timing(iteration)
            duration_ms = (timing.duration_ms or 0) if timing else 0
            self.session = session_ops.update_iteration(
                updated,
                iteration,
                updated.current_task_index,
                self._elapsed_seconds(),
            )
            self._save()

        self.learning.record_iteration_outcome(outcome)

        if self._logger:
            self._logger.log_iteration_complete(iteration, outcome.was_successful, duration_ms)
        self._progress.log_iteration_complete(iteration, self.total, outcome.was_successful, duration_ms)
        if outcome.agent_error:
            self._progress.log_error(outcome.agent_error, iteration, self.total)

    def _finish_session(self, status: SessionStatus, message: str) -> None:
        self._progress.entry(
            "session_complete" if status == SessionStatus.COMPLETED else "session_stopped",
            message,
        )
        if self.session is None:
            return
        if status == SessionStatus.COMPLETED:
            self.session = self._session_manager.complete(self.session)
        else:
            self.session = self._session_manager.stop(self.session)

    def handle_all_complete(self) -> None:
        self._log("all_tasks_complete", {"iteration": self.session.current_iteration if self.session else None})
        self._finish_session(SessionStatus.COMPLETED, "All tasks complete")

    def handle_max_iterations(self) -> None:
        if self._logger:
            self._logger.log_max_iterations_reached(self.total)
        self._progress.entry("max_iterations", f"Reached maximum of {self.total} iterations")
        self._finish_session(SessionStatus.STOPPED, "Stopped at iteration limit")

    def handle_max_runtime(self) -> None:
        self._log("max_runtime_reached", {"elapsed_seconds": self._elapsed_seconds()}, level="warn")
        self._finish_session(SessionStatus.STOPPED, "Stopped at runtime limit")

    def handle_stopped(self, reason: str) -> None:
        self._finish_session(SessionStatus.STOPPED, f"Session stopped: {reason}")

"""
Session lifecycle: starting, resuming and failing a session.

Wraps the SessionStore with the bookkeeping that happens at those three
points (structured log entry, progress journal, persisted status).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from taskloop import session as session_ops
from taskloop.logger import TaskloopLogger
from taskloop.models import Prd, Session, SessionStatus
from taskloop.progress import ProgressLog
from taskloop.state_store import SessionStore


@dataclass
class StartSessionResult:
    session: Session
    task_index: int


@dataclass
class ResumeSessionResult:
    session: Session
    remaining_iterations: int


@dataclass
class FatalErrorResult:
    session: Optional[Session]
    was_handled: bool = True


class SessionManager:
    """Starts, resumes and terminates sessions against one SessionStore."""

    def __init__(
        self,
        store: SessionStore,
        progress: ProgressLog,
        logger: Optional[TaskloopLogger] = None,
    ) -> None:
        self._store = store
        self._progress = progress
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def load_pending(self) -> Optional[Session]:
        """Return the persisted session if it can be resumed, else None."""
        result = self._store.load()
        if result.error:
            self._log("session_load_failed", {"error": result.error}, level="warn")
        if session_ops.is_resumable(result.value):
            return result.value
        return None

    def start(self, prd: Optional[Prd], total_iterations: int) -> StartSessionResult:
        """Create and persist a fresh session pointing at the first pending task."""
        task_index = prd.get_current_task_index() if prd else 0
        session = session_ops.create_session(total_iterations, task_index)
        self._store.save(session)

        if self._logger:
            self._logger.log_session_start(total_iterations, resumed=False)
        project = prd.project if prd else "Unknown Project"
        self._progress.initialize(project)
        self._progress.log_session_start(
            project,
            total_iterations,
            total_tasks=len(prd.tasks) if prd else 0,
            completed_tasks=(len(prd.tasks) - prd.pending_count()) if prd else 0,
        )
        return StartSessionResult(session=session, task_index=task_index)

    def resume(self, pending: Session, prd: Optional[Prd] = None) -> ResumeSessionResult:
        """
        Mark a persisted session running again.

        Remaining iterations are total minus current, never less than 1.
        """
        remaining = pending.total_iterations - pending.current_iteration
        session = session_ops.update_status(pending, SessionStatus.RUNNING)
        self._store.save(session)

        if self._logger:
            self._logger.log_session_start(pending.total_iterations, resumed=True)
        self._log(
            "session_resume",
            {
                "current_iteration": pending.current_iteration,
                "total_iterations": pending.total_iterations,
                "elapsed_time_seconds": pending.elapsed_time_seconds,
            },
        )
        self._progress.log_session_resume(
            prd.project if prd else "Unknown Project",
            pending.current_iteration,
            pending.total_iterations,
        )
        return ResumeSessionResult(session=session, remaining_iterations=max(remaining, 1))

    def save(self, session: Session) -> None:
        self._store.save(session)

    def complete(self, session: Session) -> Session:
        completed = session_ops.update_status(session, SessionStatus.COMPLETED)
        self._store.save(completed)
        return completed

    def stop(self, session: Session) -> Session:
        stopped = session_ops.update_status(session, SessionStatus.STOPPED)
        self._store.save(stopped)
        return stopped

    def handle_fatal_error(
        self,
        error: str,
        current_session: Optional[Session],
        iteration: Optional[int] = None,
    ) -> FatalErrorResult:
        """
        Record a fatal error and persist the session as stopped.

        Returns:
            FatalErrorResult with the stopped session, or None when no
            session was active.
        """
        self._log("fatal_error", {"error": error, "iteration": iteration}, level="error")
        self._progress.log_error(f"Fatal error: {error}", iteration)

        if current_session is None:
            return FatalErrorResult(session=None)
        return FatalErrorResult(session=self.stop(current_session))

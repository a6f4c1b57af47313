"""
Agent process lifecycle registry.

One AgentProcessManager is owned by each orchestrator. It is the single
source of truth for which agent processes are running, keyed by an
arbitrary id: DEFAULT_PROCESS_ID covers the one-at-a-time loop, parallel
mode keys records by task id. Every operation takes the same small RLock,
so it can be queried from the iteration loop, reader threads and timer
callbacks alike.

Handles follow the subprocess.Popen protocol (pid, poll(), returncode,
terminate(), kill()).
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_PROCESS_ID = "default"
FORCE_KILL_TIMEOUT_SECONDS = 5.0


@dataclass
class ProcessRecord:
    """Per-key state: handle, retry counter and abort flag."""
    process_id: str
    handle: Optional[Any] = None
    retry_count: int = 0
    aborted: bool = False


@dataclass
class ProcessStateValidation:
    is_valid: bool
    issues: list[str] = field(default_factory=list)


def _is_alive(handle: Optional[Any]) -> bool:
    return handle is not None and handle.poll() is None


class AgentProcessManager:
    """Registry of spawned agent processes keyed by id."""

    def __init__(self, force_kill_timeout: float = FORCE_KILL_TIMEOUT_SECONDS) -> None:
        self.force_kill_timeout = force_kill_timeout
        self._records: dict[str, ProcessRecord] = {}
        self._force_kill_timers: dict[str, tuple[threading.Timer, Any]] = {}
        self._global_aborted = False
        self._lock = threading.RLock()

    def _record(self, process_id: str) -> ProcessRecord:
        record = self._records.get(process_id)
        if record is None:
            record = ProcessRecord(process_id=process_id)
            self._records[process_id] = record
        return record

    # Handles

    def get_process(self, process_id: str = DEFAULT_PROCESS_ID) -> Optional[Any]:
        with self._lock:
            record = self._records.get(process_id)
            return record.handle if record else None

    def set_process(self, handle: Optional[Any], process_id: str = DEFAULT_PROCESS_ID) -> None:
        """Replace the handle for a key. The retry counter is kept."""
        with self._lock:
            self._record(process_id).handle = handle

    def register_process(self, process_id: str, handle: Any) -> None:
        self.set_process(handle, process_id)

    def unregister_process(self, process_id: str) -> None:
        with self._lock:
            self._records.pop(process_id, None)

    def get_process_ids(self) -> list[str]:
        with self._lock:
            return list(self._records)

    # Liveness

    def is_process_alive(self, process_id: str = DEFAULT_PROCESS_ID) -> bool:
        """True iff a handle is registered and has not exited."""
        with self._lock:
            record = self._records.get(process_id)
            return record is not None and _is_alive(record.handle)

    def is_running(self, process_id: str = DEFAULT_PROCESS_ID) -> bool:
        return self.is_process_alive(process_id)

    def is_any_running(self) -> bool:
        return self.get_active_process_count() > 0

    def get_active_process_count(self) -> int:
        with self._lock:
            return sum(1 for record in self._records.values() if _is_alive(record.handle))

    # Abort flags

    def is_aborted(self, process_id: Optional[str] = None) -> bool:
        """True if the global flag is set, or the key's own flag when an id is given."""
        with self._lock:
            if self._global_aborted:
                return True
            if process_id is None:
                return False
            record = self._records.get(process_id)
            return record is not None and record.aborted

    def set_aborted(self, value: bool, process_id: Optional[str] = None) -> None:
        """Without an id only the global flag changes; with one only that key's."""
        with self._lock:
            if process_id is None:
                self._global_aborted = value
            else:
                self._record(process_id).aborted = value

    # Retries

    def get_retry_count(self, process_id: str = DEFAULT_PROCESS_ID) -> int:
        with self._lock:
            record = self._records.get(process_id)
            return record.retry_count if record else 0

    def increment_retry(self, process_id: str = DEFAULT_PROCESS_ID) -> int:
        with self._lock:
            record = self._record(process_id)
            record.retry_count += 1
            return record.retry_count

    def reset_retry(self, process_id: str = DEFAULT_PROCESS_ID) -> None:
        with self._lock:
            record = self._records.get(process_id)
            if record:
                record.retry_count = 0

    # Termination

    def kill(self, process_id: str = DEFAULT_PROCESS_ID) -> None:
        """
        Terminate one process and remove its entry.

        Sends SIGTERM and schedules a SIGKILL escalation unless the process
        exits within force_kill_timeout seconds.
        """
        with self._lock:
            record = self._records.pop(process_id, None)
            self.clear_force_kill_timeout(process_id)
            if record is not None and record.handle is not None:
                self._terminate(process_id, record.handle)

    def kill_all(self) -> None:
        """Terminate every process, clear the registry and set the global abort flag."""
        with self._lock:
            self._global_aborted = True
            records = list(self._records.values())
            self._records.clear()
            for record in records:
                self.clear_force_kill_timeout(record.process_id)
                if record.handle is not None:
                    self._terminate(record.process_id, record.handle)

    def reset_all(self) -> None:
        """Clear every entry and timer, and set the global abort flag."""
        with self._lock:
            self.clear_all_force_kill_timeouts()
            self._records.clear()
            self._global_aborted = True

    def reset(self, process_id: Optional[str] = None) -> None:
        """
        Clear one entry (or all entries and the global flag) without killing.

        Unlike kill_all this never sets the global abort flag.
        """
        with self._lock:
            if process_id is None:
                self.clear_all_force_kill_timeouts()
                self._records.clear()
                self._global_aborted = False
            else:
                self.clear_force_kill_timeout(process_id)
                self._records.pop(process_id, None)

    def _terminate(self, process_id: str, handle: Any) -> None:
        if handle.poll() is not None:
            return
        try:
            handle.terminate()
        except OSError as e:
            # Exited between poll() and terminate()
            logger.debug("terminate(%s) failed: %s", process_id, e)
            return
        self.schedule_force_kill(process_id, handle, self.force_kill_timeout)

    # Force-kill timers

    def schedule_force_kill(self, process_id: str, handle: Any, timeout_seconds: float) -> None:
        """Escalate to SIGKILL after timeout_seconds if the process is still alive."""
        with self._lock:
            self.clear_force_kill_timeout(process_id)
            timer = threading.Timer(timeout_seconds, self._force_kill, args=(process_id, handle))
            timer.daemon = True
            self._force_kill_timers[process_id] = (timer, handle)
            timer.start()

    def _force_kill(self, process_id: str, handle: Any) -> None:
        with self._lock:
            entry = self._force_kill_timers.get(process_id)
            if entry is None or entry[1] is not handle:
                return
            del self._force_kill_timers[process_id]
            record = self._records.get(process_id)
            if record is not None and record.handle is handle:
                record.handle = None

        if handle.poll() is None:
            logger.warning("Process %s ignored SIGTERM; sending SIGKILL", process_id)
            try:
                handle.kill()
            except OSError as e:
                logger.debug("kill(%s) failed: %s", process_id, e)

    def has_force_kill_timeout(self, process_id: str = DEFAULT_PROCESS_ID) -> bool:
        with self._lock:
            return process_id in self._force_kill_timers

    def clear_force_kill_timeout(self, process_id: str = DEFAULT_PROCESS_ID) -> None:
        with self._lock:
            entry = self._force_kill_timers.pop(process_id, None)
            if entry is not None:
                entry[0].cancel()

    def clear_all_force_kill_timeouts(self) -> None:
        with self._lock:
            for timer, _ in self._force_kill_timers.values():
                timer.cancel()
            self._force_kill_timers.clear()

    def clear_pending_kill_timeouts(self) -> int:
        """Cancel escalation timers whose process has already exited. Returns the count."""
        with self._lock:
            exited = [
                process_id
                for process_id, (_, handle) in self._force_kill_timers.items()
                if handle.poll() is not None
            ]
            for process_id in exited:
                self.clear_force_kill_timeout(process_id)
            return len(exited)

    # Consistency

    def validate_process_state(self, process_id: Optional[str] = None) -> ProcessStateValidation:
        """
        Check that registered handles are consistent with liveness.

        A key with no record is valid. A registered handle that has already
        exited is reported as stale.
        """
        with self._lock:
            if process_id is not None:
                record = self._records.get(process_id)
                records = [record] if record is not None else []
            else:
                records = list(self._records.values())

            issues = []
            for record in records:
                if record.handle is not None and not _is_alive(record.handle):
                    issues.append(
                        f"Process '{record.process_id}' exited with code "
                        f"{record.handle.returncode} but is still registered"
                    )
                if record.retry_count < 0:
                    issues.append(f"Process '{record.process_id}' has a negative retry count")

            return ProcessStateValidation(is_valid=not issues, issues=issues)

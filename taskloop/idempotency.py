"""
Idempotent persistence primitives.

This module provides:
- Stable content hashing for change detection
- Atomic and hash-short-circuited file writes
- An operation tracker giving at-most-once execution per process lifetime
- A debounced writer coalescing rapid writes per path
- A batched updater composing queued transforms into one load/save cycle
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Generic, Optional, TypeVar, Union

from taskloop.utils.fs import safe_write

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
T = TypeVar("T")

DEFAULT_DEBOUNCE_MS = 100
DEFAULT_OPERATION_TTL_MS = 5 * 60 * 1000

REASON_NEW_FILE = "new_file"
REASON_UNCHANGED = "unchanged"
REASON_CHANGED = "changed"


def compute_content_hash(content: str) -> str:
    """First 16 hex characters of the SHA-256 of the UTF-8 encoded content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


def compute_file_hash(path: PathLike) -> Optional[str]:
    """Content hash of a file, or None when it is absent or unreadable."""
    path = Path(path)
    if not path.is_file():
        return None
    try:
        return compute_content_hash(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError):
        return None


def write_file_atomic(path: PathLike, content: str) -> None:
    """
    Write content via a same-directory temp file and an atomic rename.

    Raises:
        FileSystemError: If the write fails. The destination is untouched
            and the temp file is removed.
    """
    safe_write(path, content)


@dataclass
class IdempotentWriteResult:
    written: bool
    reason: str
    content_hash: str


def write_file_idempotent(path: PathLike, content: str) -> IdempotentWriteResult:
    """
    Write content only if it differs from what is on disk.

    When the existing file hashes to the same digest nothing is touched,
    so the file's mtime does not change.
    """
    new_hash = compute_content_hash(content)
    path = Path(path)

    if not path.exists():
        write_file_atomic(path, content)
        return IdempotentWriteResult(True, REASON_NEW_FILE, new_hash)

    if compute_file_hash(path) == new_hash:
        return IdempotentWriteResult(False, REASON_UNCHANGED, new_hash)

    write_file_atomic(path, content)
    return IdempotentWriteResult(True, REASON_CHANGED, new_hash)


def create_operation_id(*parts: Union[str, int, None]) -> str:
    """Join parts with ':' after dropping None (0 and "" are kept)."""
    return ":".join(str(part) for part in parts if part is not None)


@dataclass
class OperationEntry:
    operation_id: str
    timestamp: float  # epoch milliseconds
    content_hash: Optional[str] = None


class OperationTracker:
    """
    Records operation ids so a side effect runs at most once.

    The guarantee holds for the lifetime of this instance only; nothing is
    persisted.
    """

    def __init__(self) -> None:
        self._operations: dict[str, OperationEntry] = {}
        self._lock = threading.Lock()

    def track(self, operation_id: str, content_hash: Optional[str] = None) -> bool:
        """Record an operation. Returns True only the first time an id is seen."""
        with self._lock:
            if operation_id in self._operations:
                return False
            self._operations[operation_id] = OperationEntry(
                operation_id=operation_id,
                timestamp=time.time() * 1000,
                content_hash=content_hash,
            )
            return True

    def is_tracked(self, operation_id: str) -> bool:
        with self._lock:
            return operation_id in self._operations

    def get_entry(self, operation_id: str) -> Optional[OperationEntry]:
        with self._lock:
            return self._operations.get(operation_id)

    def clear(self) -> None:
        with self._lock:
            self._operations.clear()

    def clear_stale(self, max_age_ms: float = DEFAULT_OPERATION_TTL_MS) -> int:
        """Evict entries older than max_age_ms. Returns the number evicted."""
        now = time.time() * 1000
        with self._lock:
            stale = [
                operation_id
                for operation_id, entry in self._operations.items()
                if now - entry.timestamp > max_age_ms
            ]
            for operation_id in stale:
                del self._operations[operation_id]
        return len(stale)

    def size(self) -> int:
        with self._lock:
            return len(self._operations)


class _PendingWrite:
    __slots__ = ("content", "timer")

    def __init__(self, content: str, timer: threading.Timer) -> None:
        self.content = content
        self.timer = timer


class DebouncedWriter:
    """
    Coalesces rapid writes to the same path.

    Each path has its own quiet window; scheduling again for a path restarts
    only that path's timer and replaces its pending content.
    """

    def __init__(
        self,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        write_function: Callable[[PathLike, str], object] = write_file_idempotent,
    ) -> None:
        self.debounce_ms = debounce_ms
        self._write = write_function
        self._pending: dict[str, _PendingWrite] = {}
        self._lock = threading.Lock()

    def schedule_write(self, path: PathLike, content: str) -> None:
        key = str(path)
        with self._lock:
            existing = self._pending.get(key)
            if existing is not None:
                existing.timer.cancel()

            timer = threading.Timer(self.debounce_ms / 1000, self._on_timer, args=(key,))
            timer.daemon = True
            pending = _PendingWrite(content, timer)
            self._pending[key] = pending
            timer.start()

    def _on_timer(self, key: str) -> None:
        with self._lock:
            pending = self._pending.get(key)
            # A cancelled timer can still fire if it was already running
            if pending is None or pending.timer is not threading.current_thread():
                return
            del self._pending[key]

        try:
            self._write(key, pending.content)
        except Exception:
            logger.exception("Debounced write to %s failed", key)

    def flush(self) -> None:
        """Write all pending content immediately, in scheduling order."""
        with self._lock:
            pending_items = list(self._pending.items())
            self._pending.clear()
            for _, pending in pending_items:
                pending.timer.cancel()

        for key, pending in pending_items:
            self._write(key, pending.content)

    def cancel(self, path: PathLike) -> None:
        with self._lock:
            pending = self._pending.pop(str(path), None)
            if pending is not None:
                pending.timer.cancel()

    def cancel_all(self) -> None:
        with self._lock:
            for pending in self._pending.values():
                pending.timer.cancel()
            self._pending.clear()

    def has_pending(self, path: PathLike) -> bool:
        with self._lock:
            return str(path) in self._pending

    def get_pending_count(self) -> int:
        with self._lock:
            return len(self._pending)


class BatchedUpdater(Generic[T]):
    """
    Composes queued transforms against one load() and commits with one save().

    Transforms apply in FIFO order. load and save each run at most once per
    batch, after the debounce window or on flush().
    """

    def __init__(
        self,
        load: Callable[[], T],
        save: Callable[[T], object],
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
    ) -> None:
        self._load = load
        self._save = save
        self.debounce_ms = debounce_ms
        self._updaters: list[Callable[[T], T]] = []
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    def update(self, updater: Callable[[T], T]) -> None:
        with self._lock:
            self._updaters.append(updater)
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_ms / 1000, self._on_timer)
            self._timer.daemon = True
            self._timer.start()

    def _take_batch(self) -> list[Callable[[T], T]]:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            updaters = self._updaters
            self._updaters = []
        return updaters

    def _apply(self, updaters: list[Callable[[T], T]]) -> None:
        if not updaters:
            return
        current = self._load()
        for updater in updaters:
            current = updater(current)
        self._save(current)

    def _on_timer(self) -> None:
        with self._lock:
            if self._timer is not threading.current_thread():
                return
            self._timer = None
            updaters = self._updaters
            self._updaters = []

        try:
            self._apply(updaters)
        except Exception:
            logger.exception("Batched update failed")

    def flush(self) -> None:
        """Apply and save all queued transforms now."""
        self._apply(self._take_batch())

    def cancel(self) -> None:
        """Discard queued transforms without loading or saving."""
        self._take_batch()

    def has_pending(self) -> bool:
        with self._lock:
            return bool(self._updaters)

"""
State persistence for taskloop.

This module handles:
- Loading and saving the JSON documents under the project data directory
  (prd.json, session.json, failure-history.json, guardrails.json,
  session-memory.json)
- Idempotent atomic writes so unchanged documents are never rewritten
- Writes serialized across processes by a sibling <name>.lock file
- Graceful handling of missing or corrupted documents: loads return a
  LoadResult carrying either a value or a diagnostic, and never raise
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Generic, Optional, TypeVar

from filelock import FileLock, Timeout

from taskloop.errors import TaskloopError
from taskloop.idempotency import write_file_idempotent
from taskloop.models import FailureHistoryDocument, Guardrail, Prd, Session, SessionMemory
from taskloop.utils.fs import FileSystemError, ensure_dir, file_exists, read_file, remove_file

if TYPE_CHECKING:
    from taskloop.config import TaskloopConfig
    from taskloop.logger import TaskloopLogger

T = TypeVar("T")

DEFAULT_LOCK_TIMEOUT_SECONDS = 10.0


class StateStoreError(TaskloopError):
    """Raised when state store writes fail."""
    pass


@dataclass
class LoadResult(Generic[T]):
    """Outcome of loading a document: a value, or None plus a diagnostic."""
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.value is not None


class JsonDocumentStore(Generic[T]):
    """
    A single JSON document on disk, decoded into a model.

    Successful loads are cached until invalidate() or save().
    """

    def __init__(
        self,
        path: Path,
        decode: Callable[[Any], T],
        encode: Callable[[T], Any],
        indent: Any = 2,
        logger: Optional[TaskloopLogger] = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
    ) -> None:
        """
        Initialize the store.

        Args:
            path: Location of the JSON document.
            decode: Converts parsed JSON into the model. Raises ValueError,
                    KeyError or TypeError on invalid structure.
            encode: Converts the model into JSON-serializable data.
            indent: json.dumps indentation.
            logger: Optional logger for recording operations.
            lock_timeout: Seconds to wait for the file lock before a save
                or delete fails.
        """
        self.path = Path(path)
        self._decode = decode
        self._encode = encode
        self._indent = indent
        self._logger = logger
        self._lock_timeout = lock_timeout
        self._cache: Optional[T] = None
        self._lock = threading.RLock()

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(f"{self.path.name}.lock")

    def _file_lock(self) -> FileLock:
        ensure_dir(self.path.parent)
        return FileLock(str(self.lock_path), timeout=self._lock_timeout)

    def exists(self) -> bool:
        return file_exists(self.path)

    def load(self) -> LoadResult[T]:
        """
        Load the document from disk (or the cache).

        Returns:
            LoadResult with the decoded value. A missing file yields an empty
            result with no error; parse or validation failures yield an
            empty result with a diagnostic.
        """
        with self._lock:
            if self._cache is not None:
                return LoadResult(value=self._cache)

            if not file_exists(self.path):
                self._log("state_load_miss", {"path": str(self.path)}, level="debug")
                return LoadResult()

            try:
                data = json.loads(read_file(self.path))
                value = self._decode(data)
            except json.JSONDecodeError as e:
                error = f"Failed to parse {self.path.name}: {e}"
                self._log("state_corrupted", {"path": str(self.path), "error": str(e)}, level="error")
                return LoadResult(error=error)
            except (KeyError, ValueError, TypeError, AttributeError) as e:
                error = f"{self.path.name} has invalid structure: {e}"
                self._log("state_invalid", {"path": str(self.path), "error": str(e)}, level="error")
                return LoadResult(error=error)
            except FileSystemError as e:
                self._log("state_read_error", {"path": str(self.path), "error": str(e)}, level="error")
                return LoadResult(error=str(e))

            self._cache = value
            return LoadResult(value=value)

    def reload(self) -> LoadResult[T]:
        self.invalidate()
        return self.load()

    def save(self, value: T) -> None:
        """
        Save the document atomically, skipping the write when unchanged.

        Raises:
            StateStoreError: If the write fails or the lock is not acquired
                within lock_timeout.
        """
        with self._lock:
            content = json.dumps(self._encode(value), indent=self._indent, ensure_ascii=False)
            try:
                with self._file_lock():
                    result = write_file_idempotent(self.path, content)
            except Timeout as e:
                self._log("state_lock_timeout", {"path": str(self.lock_path)}, level="error")
                raise StateStoreError(f"Timed out waiting for {self.lock_path.name}") from e
            except FileSystemError as e:
                self._log("state_save_error", {"path": str(self.path), "error": str(e)}, level="error")
                raise StateStoreError(f"Failed to save {self.path.name}: {e}") from e

            self._cache = None
            if result.written:
                self._log("state_saved", {"path": str(self.path), "reason": result.reason}, level="debug")

    def invalidate(self) -> None:
        """Drop the cached value so the next load re-reads the file."""
        with self._lock:
            self._cache = None

    def delete(self) -> bool:
        """
        Delete the document.

        Returns:
            True if it was deleted, False if it didn't exist.

        Raises:
            StateStoreError: If removal fails.
        """
        with self._lock:
            self._cache = None
            try:
                with self._file_lock():
                    return remove_file(self.path)
            except Timeout as e:
                raise StateStoreError(f"Timed out waiting for {self.lock_path.name}") from e
            except FileSystemError as e:
                raise StateStoreError(f"Failed to delete {self.path.name}: {e}") from e


def _decode_guardrails(data: Any) -> list[Guardrail]:
    if not isinstance(data, dict) or not isinstance(data.get("guardrails"), list):
        raise ValueError("guardrails.json must contain a 'guardrails' list")
    return [Guardrail.from_dict(item) for item in data["guardrails"]]


class PrdStore(JsonDocumentStore[Prd]):
    def __init__(self, path: Path, logger: Optional[TaskloopLogger] = None) -> None:
        super().__init__(path, Prd.from_dict, Prd.to_dict, indent="\t", logger=logger)


class SessionStore(JsonDocumentStore[Session]):
    def __init__(self, path: Path, logger: Optional[TaskloopLogger] = None) -> None:
        super().__init__(path, Session.from_dict, Session.to_dict, indent=2, logger=logger)


class FailureHistoryStore(JsonDocumentStore[FailureHistoryDocument]):
    def __init__(self, path: Path, logger: Optional[TaskloopLogger] = None) -> None:
        super().__init__(
            path,
            FailureHistoryDocument.from_dict,
            FailureHistoryDocument.to_dict,
            indent="\t",
            logger=logger,
        )


class GuardrailsStore(JsonDocumentStore[list[Guardrail]]):
    def __init__(self, path: Path, logger: Optional[TaskloopLogger] = None) -> None:
        super().__init__(
            path,
            _decode_guardrails,
            lambda guardrails: {"guardrails": [g.to_dict() for g in guardrails]},
            indent="\t",
            logger=logger,
        )


class SessionMemoryStore(JsonDocumentStore[SessionMemory]):
    def __init__(self, path: Path, logger: Optional[TaskloopLogger] = None) -> None:
        super().__init__(path, SessionMemory.from_dict, SessionMemory.to_dict, indent="\t", logger=logger)


@dataclass
class Stores:
    """The project documents, bundled for wiring."""
    prd: PrdStore
    session: SessionStore
    failure_history: FailureHistoryStore
    guardrails: GuardrailsStore
    session_memory: SessionMemoryStore

    @classmethod
    def from_config(cls, config: TaskloopConfig, logger: Optional[TaskloopLogger] = None) -> Stores:
        return cls(
            prd=PrdStore(config.prd_path, logger),
            session=SessionStore(config.session_path, logger),
            failure_history=FailureHistoryStore(config.failure_history_path, logger),
            guardrails=GuardrailsStore(config.guardrails_path, logger),
            session_memory=SessionMemoryStore(config.session_memory_path, logger),
        )

"""
File helpers for the .taskloop data directory.

Every failure surfaces as FileSystemError with the path in the message, so
callers handle one exception type regardless of the underlying OSError.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Union

PathLike = Union[str, Path]


class FileSystemError(Exception):
    """Raised when a file system operation fails."""
    pass


def ensure_dir(path: PathLike) -> Path:
    """mkdir -p; returns the directory as a Path."""
    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FileSystemError(f"Failed to create directory {path}: {e}") from e
    return path


def safe_write(path: PathLike, content: str, encoding: str = "utf-8") -> None:
    """
    Replace a file's contents atomically.

    The content goes to a hidden temp file next to the destination, is
    flushed to disk, then renamed over it. Readers see either the old or the
    new document; a failed write leaves the old one in place.

    Raises:
        FileSystemError: If the write or rename fails.
    """
    path = Path(path)
    ensure_dir(path.parent)
    try:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    except OSError as e:
        raise FileSystemError(f"Failed to write file {path}: {e}") from e

    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException as e:
        Path(tmp_name).unlink(missing_ok=True)
        if isinstance(e, OSError):
            raise FileSystemError(f"Failed to write file {path}: {e}") from e
        raise


def append_file(path: PathLike, content: str, encoding: str = "utf-8") -> None:
    """Append to a file, creating it and its parents when missing."""
    path = Path(path)
    ensure_dir(path.parent)
    try:
        with open(path, "a", encoding=encoding) as f:
            f.write(content)
    except OSError as e:
        raise FileSystemError(f"Failed to append to file {path}: {e}") from e


def file_exists(path: PathLike) -> bool:
    return Path(path).is_file()


def read_file(path: PathLike, encoding: str = "utf-8") -> str:
    """
    Read a whole text file.

    Raises:
        FileSystemError: If the path is missing, is not a regular file, or
            cannot be decoded.
    """
    path = Path(path)
    if not path.is_file():
        reason = "Not a file" if path.exists() else "File not found"
        raise FileSystemError(f"{reason}: {path}")
    try:
        return path.read_text(encoding=encoding)
    except UnicodeDecodeError as e:
        raise FileSystemError(f"Failed to decode file {path} as {encoding}: {e}") from e
    except OSError as e:
        raise FileSystemError(f"Failed to read file {path}: {e}") from e


def remove_file(path: PathLike) -> bool:
    """Delete a file. Returns False when there was nothing to delete."""
    path = Path(path)
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        raise FileSystemError(f"Failed to remove file {path}: {e}") from e
    return True


def rotate_file(path: PathLike, max_backups: int) -> None:
    """
    Shift path to path.1, path.1 to path.2, ... keeping max_backups copies.

    With max_backups == 0 the file is simply deleted. A missing file is a
    no-op.
    """
    path = Path(path)
    if not path.exists():
        return
    try:
        if max_backups <= 0:
            path.unlink()
            return
        for index in range(max_backups - 1, 0, -1):
            older = path.with_name(f"{path.name}.{index}")
            if older.exists():
                os.replace(older, path.with_name(f"{path.name}.{index + 1}"))
        os.replace(path, path.with_name(f"{path.name}.1"))
    except OSError as e:
        raise FileSystemError(f"Failed to rotate {path}: {e}") from e

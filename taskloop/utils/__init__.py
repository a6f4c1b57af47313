"""Utility modules for taskloop."""

from taskloop.utils.fs import (
    FileSystemError,
    append_file,
    ensure_dir,
    file_exists,
    read_file,
    remove_file,
    rotate_file,
    safe_write,
)

__all__ = [
    "FileSystemError",
    "append_file",
    "ensure_dir",
    "file_exists",
    "read_file",
    "remove_file",
    "rotate_file",
    "safe_write",
]

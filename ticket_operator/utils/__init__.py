"""Utility modules for the ticket operator."""

from ticket_operator.utils.fs import (
    FileSystemError,
    ensure_dir,
    read_file,
    read_json,
    safe_write,
    write_json,
)

__all__ = [
    "FileSystemError",
    "ensure_dir",
    "read_file",
    "read_json",
    "safe_write",
    "write_json",
]

"""
File system utilities for the ticket operator.

This module provides safe file operations including:
- Atomic writes (write to temp file, then rename)
- Directory creation
- JSON read/write helpers built on the atomic writer
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any


class FileSystemError(Exception):
    """Raised when a file system operation fails."""
    pass


def ensure_dir(path: str | Path) -> Path:
    """
    Create a directory if it does not exist.

    Args:
        path: Path to the directory to create.

    Returns:
        Path: The path object for the created/existing directory.

    Raises:
        FileSystemError: If directory creation fails.
    """
    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
        return path
    except OSError as e:
        raise FileSystemError(f"Failed to create directory {path}: {e}")


def safe_write(path: str | Path, content: str, encoding: str = "utf-8") -> None:
    """
    Write content to a file atomically.

    The temp file lives in the target directory so the final rename
    stays on one filesystem. Readers never observe a partial file.

    Raises:
        FileSystemError: If write operation fails.
    """
    path = Path(path)
    ensure_dir(path.parent)

    try:
        fd, temp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding=encoding) as f:
                f.write(content)
            shutil.move(temp_path, path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise
    except OSError as e:
        raise FileSystemError(f"Failed to write file {path}: {e}")


def read_file(path: str | Path, encoding: str = "utf-8") -> str:
    """
    Read a text file.

    Raises:
        FileSystemError: If the file is missing or unreadable.
    """
    path = Path(path)
    try:
        return path.read_text(encoding=encoding)
    except FileNotFoundError:
        raise FileSystemError(f"File not found: {path}")
    except OSError as e:
        raise FileSystemError(f"Failed to read file {path}: {e}")


def write_json(path: str | Path, data: Any) -> None:
    """Atomically write data as pretty-printed JSON."""
    safe_write(path, json.dumps(data, indent=2, default=str) + "\n")


def read_json(path: str | Path) -> Any:
    """
    Read JSON from a file.

    Raises:
        FileSystemError: If the file is missing or not valid JSON.
    """
    content = read_file(path)
    try:
        return json.loads(content)
    except json.JSONDecodeError as e:
        raise FileSystemError(f"Invalid JSON in {path}: {e}")

"""
File system helpers for autobuild.

Checkpoints, their backups and history records are the only state autobuild
persists, so every write here either replaces a whole file atomically (temp
file in the same directory, fsync, rename) or appends one complete line.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator


class FileSystemError(Exception):
    """Raised when a file system operation fails."""


@contextmanager
def _reraise(action: str, path: Path) -> Iterator[None]:
    try:
        yield
    except UnicodeDecodeError as e:
        raise FileSystemError(f"Failed to {action} {path}: not valid text ({e.reason})")
    except OSError as e:
        raise FileSystemError(f"Failed to {action} {path}: {e.strerror or e}")


@contextmanager
def _replacing(path: Path, mode: str = "w", encoding: str | None = "utf-8") -> Iterator[IO]:
    """
    Yield a temp file beside path; on clean exit it is fsynced and renamed over path.

    On any error the temp file is removed and path is untouched.
    """
    ensure_dir(path.parent)
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, mode, encoding=encoding) as handle:
            yield handle
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


def ensure_dir(path: str | Path) -> Path:
    """Create a directory and its parents if missing; return it as a Path."""
    path = Path(path)
    with _reraise("create directory", path):
        path.mkdir(parents=True, exist_ok=True)
    return path


def safe_write(path: str | Path, content: str, encoding: str = "utf-8") -> None:
    """
    Replace a file's contents atomically.

    Readers see either the old document or the new one, never a partial
    write, even if the process is killed mid-write.

    Raises:
        FileSystemError: If the write or rename fails.
    """
    path = Path(path)
    with _reraise("write", path), _replacing(path, encoding=encoding) as f:
        f.write(content)


def append_line(path: str | Path, line: str, encoding: str = "utf-8") -> None:
    """
    Append one line to a file, creating it if needed.

    Raises:
        FileSystemError: If line contains a newline or the append fails.
    """
    path = Path(path)
    if "\n" in line:
        raise FileSystemError("append_line expects a single line")
    ensure_dir(path.parent)
    with _reraise("append to", path), open(path, "a", encoding=encoding) as f:
        f.write(line + "\n")
        f.flush()
        os.fsync(f.fileno())


def file_exists(path: str | Path) -> bool:
    return Path(path).is_file()


def read_file(path: str | Path, encoding: str = "utf-8") -> str:
    """
    Read a text file.

    Raises:
        FileSystemError: If the file is missing or cannot be decoded.
    """
    path = Path(path)
    if not path.is_file():
        raise FileSystemError(f"File not found: {path}")
    with _reraise("read", path):
        return path.read_text(encoding=encoding)


def list_files(directory: str | Path, pattern: str = "*") -> list[Path]:
    """Files in directory matching pattern, sorted by name; [] if it is missing."""
    directory = Path(directory)
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.glob(pattern) if p.is_file())


def remove_file(path: str | Path) -> bool:
    """
    Remove a file if present.

    Returns:
        True if a file was removed, False if there was nothing to remove.
    """
    path = Path(path)
    if not path.exists():
        return False
    if not path.is_file():
        raise FileSystemError(f"Not a file: {path}")
    with _reraise("remove", path):
        path.unlink()
    return True


def copy_file(src: str | Path, dst: str | Path) -> Path:
    """
    Copy src over dst atomically, so a crash never leaves a half-written dst.

    Raises:
        FileSystemError: If the source is missing or the copy fails.
    """
    src, dst = Path(src), Path(dst)
    if not src.is_file():
        raise FileSystemError(f"Source file not found: {src}")
    with _reraise("copy to", dst), open(src, "rb") as source, \
            _replacing(dst, mode="wb", encoding=None) as target:
        shutil.copyfileobj(source, target)
    return dst

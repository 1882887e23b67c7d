"""Utility modules for autobuild."""

from autobuild.utils.fs import (
    FileSystemError,
    append_line,
    copy_file,
    ensure_dir,
    file_exists,
    list_files,
    read_file,
    remove_file,
    safe_write,
)

__all__ = [
    "FileSystemError",
    "append_line",
    "copy_file",
    "ensure_dir",
    "file_exists",
    "list_files",
    "read_file",
    "remove_file",
    "safe_write",
]

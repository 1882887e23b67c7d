"""
Structured JSONL logging for autobuild.

Every component writes events through a BuildLogger, one JSON object per
line in .autobuild/logs/<project>-YYYY-MM-DD.jsonl. The logs double as the
audit trail for reconciliation deltas, quarantined tests, disclosed
coverage gaps and operator approvals, so entries are appended and fsynced
one at a time and never rewritten.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import partialmethod
from pathlib import Path
from typing import Any, Iterator, Optional

from autobuild.config import BuildConfig, get_config
from autobuild.utils.fs import append_line


class LogLevel:
    """Log levels, least to most severe."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    ORDER = (DEBUG, INFO, WARN, ERROR)

    @classmethod
    def rank(cls, level: str) -> int:
        """Severity rank; unknown levels sort with info."""
        try:
            return cls.ORDER.index(level)
        except ValueError:
            return cls.ORDER.index(cls.INFO)


def _log_day(moment: Optional[datetime] = None) -> str:
    return (moment or datetime.now(timezone.utc)).strftime("%Y-%m-%d")


class BuildLogger:
    """
    JSONL event logger for one project.

    Entry shape:
        {"timestamp": ..., "level": ..., "event_type": ..., "project": ...,
         "data": {...}, "session_id": ...}

    session_id is only present for entries written inside session_context().
    """

    def __init__(self, project: str, config: Optional[BuildConfig] = None) -> None:
        self.project = project
        self._config = config
        self._session_id: Optional[str] = None

    @property
    def config(self) -> BuildConfig:
        if self._config is None:
            self._config = get_config()
        return self._config

    def log_path(self, date: Optional[str] = None) -> Path:
        """File holding one UTC day of this project's events."""
        return self.config.logs_path / f"{self.project}-{date or _log_day()}.jsonl"

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
    ) -> None:
        """
        Append one event.

        Args:
            event_type: What happened, snake_case (e.g. "reconciliation_delta").
            data: Event payload; values that are not JSON types are stringified.
            level: One of the LogLevel constants.
        """
        now = datetime.now(timezone.utc)
        entry: dict[str, Any] = {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "level": level,
            "event_type": event_type,
            "project": self.project,
            "data": data or {},
        }
        if self._session_id:
            entry["session_id"] = self._session_id
        append_line(self.log_path(_log_day(now)), json.dumps(entry, default=str))

    debug = partialmethod(log, level=LogLevel.DEBUG)
    info = partialmethod(log, level=LogLevel.INFO)
    warn = partialmethod(log, level=LogLevel.WARN)
    error = partialmethod(log, level=LogLevel.ERROR)

    @contextmanager
    def session_context(self, session_id: str) -> Iterator[BuildLogger]:
        """
        Tag every entry written inside the block with session_id.

        The block is bracketed by session_opened and session_closed events,
        which are tagged too. Contexts nest; the outer id is restored on exit.
        """
        outer = self._session_id
        self._session_id = session_id
        self.log("session_opened", {"session_id": session_id})
        try:
            yield self
        finally:
            self.log("session_closed", {"session_id": session_id})
            self._session_id = outer

    def _entries(self, path: Path) -> Iterator[dict[str, Any]]:
        with open(path, "r", encoding="utf-8") as f:
            for raw in f:
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    yield json.loads(raw)
                except json.JSONDecodeError:
                    # A torn final line from a killed process.
                    continue

    def read_logs(
        self,
        date: Optional[str] = None,
        level: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Read one day's entries, oldest first.

        Args:
            date: YYYY-MM-DD (UTC); defaults to today.
            level: Minimum severity; "warn" returns warn and error entries.
            event_type: Only entries of this type.
            limit: Stop after this many matches.
        """
        path = self.log_path(date)
        if not path.is_file():
            return []

        floor = LogLevel.rank(level) if level else None
        matched: list[dict[str, Any]] = []
        for entry in self._entries(path):
            if floor is not None and LogLevel.rank(entry.get("level", "")) < floor:
                continue
            if event_type and entry.get("event_type") != event_type:
                continue
            matched.append(entry)
            if limit and len(matched) >= limit:
                break
        return matched


_logger_cache: dict[str, BuildLogger] = {}


def get_logger(project: str, config: Optional[BuildConfig] = None) -> BuildLogger:
    """Get or create the logger for a project."""
    if project not in _logger_cache:
        _logger_cache[project] = BuildLogger(project, config)
    return _logger_cache[project]


def clear_logger_cache() -> None:
    """Clear the logger cache. Useful for testing."""
    _logger_cache.clear()

"""
Historical project records for the threshold optimizer.

One ProjectRecord per finished project, appended as a line of JSON to
.autobuild/history/projects.jsonl. The orchestration core only ever
appends (from the learning phase); the optimizer reads the whole file in
batch.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from autobuild.models import ProjectRecord, model_to_json
from autobuild.utils.fs import append_line

if TYPE_CHECKING:
    from autobuild.logger import BuildLogger


class HistoryStore:
    """Append-only JSONL store of ProjectRecords."""

    def __init__(self, path: Path, logger: Optional[BuildLogger] = None) -> None:
        """
        Initialize the store.

        Args:
            path: Path to the JSONL file (created on first append).
            logger: Optional logger for recording operations.
        """
        self.path = Path(path)
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            log_data = {"component": "history"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def append(self, record: ProjectRecord) -> bool:
        """
        Append a record unless one for the same run is already stored.

        A run is identified by (project, started_at), so re-running the
        learning phase after a crash does not duplicate the row.

        Returns:
            True if the record was written.
        """
        if self.has_record(record.project, record.started_at):
            self._log("history_record_exists", {"project": record.project}, level="debug")
            return False
        append_line(self.path, model_to_json(record.to_dict()))
        self._log("history_record_appended", {
            "project": record.project,
            "outcome": record.outcome,
            "items": len(record.items),
        })
        return True

    def has_record(self, project: str, started_at: str) -> bool:
        return any(
            r.project == project and r.started_at == started_at
            for r in self.load()
        )

    def load(self, limit: Optional[int] = None) -> list[ProjectRecord]:
        """
        Read stored records, oldest first.

        Malformed lines are skipped and logged; history is advisory input
        and one bad row must not hide the rest.

        Args:
            limit: If set, return only the most recent N records.
        """
        if not self.path.exists():
            return []

        records: list[ProjectRecord] = []
        with self.path.open("r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    records.append(ProjectRecord.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                    self._log("history_record_skipped", {"line": lineno, "error": str(e)}, level="warn")

        if limit is not None:
            records = records[-limit:]
        return records

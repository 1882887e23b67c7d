"""
Work item tracking for autobuild.

The orchestrator depends only on the narrow WorkItemTracker interface
(create / close / reopen / list / comment). Two backends ship:

- GhIssueTracker: GitHub issues through the `gh` CLI
- LocalIssueTracker: a JSON file under .autobuild/, for offline runs

The tracker is a second, independently mutable source of truth: agents
may close or open items as a side effect, so the checkpoint reconciles
against it on every resume.
"""

from __future__ import annotations

import json
import re
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from autobuild.errors import ExternalCapabilityFailure
from autobuild.models import ItemState, item_sort_key, utc_now
from autobuild.utils.fs import FileSystemError, file_exists, read_file, safe_write

if TYPE_CHECKING:
    from autobuild.config import BuildConfig
    from autobuild.logger import BuildLogger


@dataclass
class ItemSummary:
    """What the tracker reports about one item."""
    id: str
    title: str
    state: ItemState
    labels: list[str] = field(default_factory=list)
    body: str = ""


class WorkItemTracker(ABC):
    """Interface every tracker backend satisfies."""

    @abstractmethod
    def create_item(self, title: str, body: str, labels: list[str]) -> str:
        """Create an item and return its id."""

    @abstractmethod
    def close_item(self, item_id: str, evidence: str) -> None:
        """Close an item, recording what closed it."""

    @abstractmethod
    def reopen_item(self, item_id: str) -> None:
        """Reopen a closed item."""

    @abstractmethod
    def list_items(
        self,
        state: Optional[ItemState] = None,
        labels: Optional[list[str]] = None,
    ) -> list[ItemSummary]:
        """List items, optionally filtered by state and by labels (all must match)."""

    @abstractmethod
    def comment(self, item_id: str, body: str) -> None:
        """Add a comment to an item."""


class GhIssueTracker(WorkItemTracker):
    """
    GitHub issues via the gh CLI.

    Any gh failure (missing binary, auth, network, timeout) raises
    ExternalCapabilityFailure so the state machine suspends at its last
    checkpoint instead of continuing with a stale view of the tracker.
    """

    _ISSUE_URL = re.compile(r"/issues/(\d+)\s*$")

    def __init__(self, config: BuildConfig, logger: Optional[BuildLogger] = None) -> None:
        self.config = config
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            log_data = {"component": "gh_tracker"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _run_gh(self, args: list[str]) -> str:
        cmd = ["gh"] + args
        if self.config.tracker.repo:
            cmd += ["--repo", self.config.tracker.repo]
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.config.repo_root),
                capture_output=True,
                text=True,
                timeout=self.config.tracker.timeout_seconds,
            )
        except FileNotFoundError as e:
            self._log("gh_not_found", level="error")
            raise ExternalCapabilityFailure("gh CLI not found", source="tracker", cause=e)
        except subprocess.TimeoutExpired as e:
            self._log("gh_timeout", {"args": args[:2]}, level="error")
            raise ExternalCapabilityFailure(
                f"gh {' '.join(args[:2])} timed out", source="tracker", cause=e
            )

        if result.returncode != 0:
            stderr = (result.stderr or "")[:500]
            self._log("gh_command_failed", {"args": args[:2], "stderr": stderr}, level="error")
            raise ExternalCapabilityFailure(
                f"gh {' '.join(args[:2])} failed: {stderr.strip()}", source="tracker"
            )
        return result.stdout

    def create_item(self, title: str, body: str, labels: list[str]) -> str:
        args = ["issue", "create", "--title", title, "--body", body]
        for label in labels:
            args += ["--label", label]
        stdout = self._run_gh(args)
        match = self._ISSUE_URL.search(stdout.strip())
        if not match:
            raise ExternalCapabilityFailure(
                f"Could not parse issue number from gh output: {stdout.strip()[:200]}",
                source="tracker",
            )
        item_id = match.group(1)
        self._log("item_created", {"item_id": item_id, "title": title})
        return item_id

    def close_item(self, item_id: str, evidence: str) -> None:
        self._run_gh(["issue", "close", item_id, "--comment", evidence])
        self._log("item_closed", {"item_id": item_id})

    def reopen_item(self, item_id: str) -> None:
        self._run_gh(["issue", "reopen", item_id])
        self._log("item_reopened", {"item_id": item_id})

    def list_items(
        self,
        state: Optional[ItemState] = None,
        labels: Optional[list[str]] = None,
    ) -> list[ItemSummary]:
        gh_state = {None: "all", ItemState.OPEN: "open", ItemState.CLOSED: "closed"}[state]
        args = [
            "issue", "list",
            "--state", gh_state,
            "--limit", "1000",
            "--json", "number,title,state,labels,body",
        ]
        for label in labels or []:
            args += ["--label", label]
        stdout = self._run_gh(args)
        try:
            raw = json.loads(stdout or "[]")
        except json.JSONDecodeError as e:
            raise ExternalCapabilityFailure(f"gh issue list returned invalid JSON: {e}", source="tracker")

        items = []
        for issue in raw:
            items.append(ItemSummary(
                id=str(issue["number"]),
                title=issue.get("title", ""),
                state=ItemState.CLOSED if issue.get("state", "").upper() == "CLOSED" else ItemState.OPEN,
                labels=[label["name"] for label in issue.get("labels", [])],
                body=issue.get("body", "") or "",
            ))
        return sorted(items, key=lambda i: item_sort_key(i.id))

    def comment(self, item_id: str, body: str) -> None:
        self._run_gh(["issue", "comment", item_id, "--body", body])


class LocalIssueTracker(WorkItemTracker):
    """
    File-backed tracker at .autobuild/tracker/items.json.

    Ids are sequential integers rendered as strings, matching what the gh
    backend returns. delete_item() exists so external deletion can be
    simulated; the orchestrator itself never deletes.
    """

    def __init__(self, path: Path, logger: Optional[BuildLogger] = None) -> None:
        self.path = Path(path)
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            log_data = {"component": "local_tracker"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _read(self) -> dict[str, Any]:
        if not file_exists(self.path):
            return {"next_id": 1, "items": {}}
        try:
            return json.loads(read_file(self.path))
        except (FileSystemError, json.JSONDecodeError) as e:
            raise ExternalCapabilityFailure(f"Local tracker file is unreadable: {e}", source="tracker")

    def _write(self, data: dict[str, Any]) -> None:
        try:
            safe_write(self.path, json.dumps(data, indent=2))
        except FileSystemError as e:
            raise ExternalCapabilityFailure(f"Local tracker file is unwritable: {e}", source="tracker")

    def _get(self, data: dict[str, Any], item_id: str) -> dict[str, Any]:
        try:
            return data["items"][item_id]
        except KeyError:
            raise ExternalCapabilityFailure(f"Item {item_id} not found", source="tracker")

    def create_item(self, title: str, body: str, labels: list[str]) -> str:
        data = self._read()
        item_id = str(data["next_id"])
        data["next_id"] += 1
        data["items"][item_id] = {
            "title": title,
            "body": body,
            "labels": list(labels),
            "state": ItemState.OPEN.name,
            "comments": [],
            "created_at": utc_now(),
        }
        self._write(data)
        self._log("item_created", {"item_id": item_id, "title": title})
        return item_id

    def close_item(self, item_id: str, evidence: str) -> None:
        data = self._read()
        item = self._get(data, item_id)
        item["state"] = ItemState.CLOSED.name
        item["comments"].append({"body": evidence, "at": utc_now()})
        self._write(data)
        self._log("item_closed", {"item_id": item_id})

    def reopen_item(self, item_id: str) -> None:
        data = self._read()
        self._get(data, item_id)["state"] = ItemState.OPEN.name
        self._write(data)
        self._log("item_reopened", {"item_id": item_id})

    def delete_item(self, item_id: str) -> None:
        data = self._read()
        data["items"].pop(item_id, None)
        self._write(data)

    def list_items(
        self,
        state: Optional[ItemState] = None,
        labels: Optional[list[str]] = None,
    ) -> list[ItemSummary]:
        data = self._read()
        wanted = set(labels or [])
        items = []
        for item_id, raw in data["items"].items():
            item_state = ItemState[raw["state"]]
            if state is not None and item_state != state:
                continue
            if not wanted.issubset(raw.get("labels", [])):
                continue
            items.append(ItemSummary(
                id=item_id,
                title=raw["title"],
                state=item_state,
                labels=list(raw.get("labels", [])),
                body=raw.get("body", ""),
            ))
        return sorted(items, key=lambda i: item_sort_key(i.id))

    def comment(self, item_id: str, body: str) -> None:
        data = self._read()
        self._get(data, item_id)["comments"].append({"body": body, "at": utc_now()})
        self._write(data)

    def comments(self, item_id: str) -> list[str]:
        """Comment bodies on an item, oldest first."""
        data = self._read()
        return [c["body"] for c in self._get(data, item_id)["comments"]]


def create_tracker(config: BuildConfig, logger: Optional[BuildLogger] = None) -> WorkItemTracker:
    """Build the tracker backend named in configuration."""
    if config.tracker.backend == "github":
        return GhIssueTracker(config, logger)
    return LocalIssueTracker(config.tracker_path, logger)

"""Tests for the work item tracker backends."""

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from autobuild.config import BuildConfig, TrackerConfig
from autobuild.errors import ExternalCapabilityFailure
from autobuild.models import ItemState
from autobuild.tracker import GhIssueTracker, LocalIssueTracker, create_tracker


class TestLocalIssueTracker:
    def test_ids_are_sequential_strings(self, tracker):
        assert tracker.create_item("a", "", []) == "1"
        assert tracker.create_item("b", "", []) == "2"

    def test_close_and_reopen(self, tracker):
        item_id = tracker.create_item("a", "", ["autobuild"])
        tracker.close_item(item_id, "commit abc123")
        assert tracker.list_items(state=ItemState.CLOSED)[0].id == item_id
        assert tracker.comments(item_id) == ["commit abc123"]

        tracker.reopen_item(item_id)
        assert tracker.list_items(state=ItemState.CLOSED) == []
        assert tracker.list_items(state=ItemState.OPEN)[0].id == item_id

    def test_label_filter_requires_every_label(self, tracker):
        tracker.create_item("both", "", ["autobuild", "autobuild:demo"])
        tracker.create_item("one", "", ["autobuild"])
        titles = [i.title for i in tracker.list_items(labels=["autobuild", "autobuild:demo"])]
        assert titles == ["both"]

    def test_list_is_sorted_numerically(self, tracker):
        for n in range(11):
            tracker.create_item(f"item {n}", "", [])
        ids = [i.id for i in tracker.list_items()]
        assert ids[:3] == ["1", "2", "3"]
        assert ids[-1] == "11"

    def test_unknown_item_is_external_failure(self, tracker):
        with pytest.raises(ExternalCapabilityFailure, match="not found"):
            tracker.close_item("99", "x")

    def test_unreadable_file_is_external_failure(self, tracker):
        tracker.path.parent.mkdir(parents=True)
        tracker.path.write_text("{broken")
        with pytest.raises(ExternalCapabilityFailure):
            tracker.list_items()

    def test_delete_item(self, tracker):
        item_id = tracker.create_item("a", "", [])
        tracker.delete_item(item_id)
        assert tracker.list_items() == []


def _completed(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestGhIssueTracker:
    @pytest.fixture
    def gh(self, tmp_path):
        config = BuildConfig(repo_root=str(tmp_path), tracker=TrackerConfig(backend="github", repo="acme/app"))
        return GhIssueTracker(config)

    def test_create_parses_issue_number(self, gh):
        with patch("autobuild.tracker.subprocess.run") as run:
            run.return_value = _completed("https://github.com/acme/app/issues/42\n")
            assert gh.create_item("Add login", "body", ["autobuild"]) == "42"
        cmd = run.call_args[0][0]
        assert cmd[:3] == ["gh", "issue", "create"]
        assert cmd[-2:] == ["--repo", "acme/app"]
        assert "--label" in cmd

    def test_unparseable_create_output(self, gh):
        with patch("autobuild.tracker.subprocess.run", return_value=_completed("ok")):
            with pytest.raises(ExternalCapabilityFailure, match="Could not parse"):
                gh.create_item("x", "", [])

    def test_list_maps_state_and_labels(self, gh):
        issues = [
            {"number": 10, "title": "b", "state": "CLOSED", "labels": [{"name": "autobuild"}], "body": ""},
            {"number": 9, "title": "a", "state": "OPEN", "labels": [], "body": None},
        ]
        with patch("autobuild.tracker.subprocess.run", return_value=_completed(json.dumps(issues))):
            items = gh.list_items()
        assert [i.id for i in items] == ["9", "10"]
        assert items[1].state == ItemState.CLOSED
        assert items[1].labels == ["autobuild"]
        assert items[0].body == ""

    def test_nonzero_exit_raises(self, gh):
        with patch("autobuild.tracker.subprocess.run", return_value=_completed(returncode=1, stderr="auth required")):
            with pytest.raises(ExternalCapabilityFailure, match="auth required"):
                gh.close_item("1", "done")

    def test_missing_binary_raises(self, gh):
        with patch("autobuild.tracker.subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(ExternalCapabilityFailure, match="not found"):
                gh.reopen_item("1")

    def test_timeout_raises(self, gh):
        with patch("autobuild.tracker.subprocess.run", side_effect=subprocess.TimeoutExpired("gh", 30)):
            with pytest.raises(ExternalCapabilityFailure, match="timed out"):
                gh.list_items()

    def test_failures_are_logged(self, tmp_path):
        config = BuildConfig(repo_root=str(tmp_path), tracker=TrackerConfig(backend="github", repo="acme/app"))
        logger = MagicMock()
        gh = GhIssueTracker(config, logger)
        with patch("autobuild.tracker.subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(ExternalCapabilityFailure):
                gh.comment("1", "hi")
        assert logger.log.call_args[0][0] == "gh_not_found"


def test_create_tracker_selects_backend(tmp_path):
    local = create_tracker(BuildConfig(repo_root=str(tmp_path)))
    assert isinstance(local, LocalIssueTracker)
    github = create_tracker(BuildConfig(repo_root=str(tmp_path), tracker=TrackerConfig(backend="github", repo="a/b")))
    assert isinstance(github, GhIssueTracker)

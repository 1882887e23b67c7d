"""Tests for the admin command group."""

import json
from unittest.mock import patch

import pytest

from autobuild.checkpoint_store import CheckpointStore
from autobuild.cli import app
from autobuild.config import BuildConfig
from autobuild.models import utc_now

from conftest import ScriptedAgent


@pytest.fixture
def invoke(cli_runner, tmp_path):
    def _invoke(*args, **kwargs):
        return cli_runner.invoke(app, ["--project", str(tmp_path), *args], **kwargs)
    return _invoke


@pytest.fixture
def finished(invoke):
    with patch("autobuild.cli.build.create_agent", return_value=ScriptedAgent()):
        result = invoke("run", "demo", "--request", "A todo API")
    assert result.exit_code == 0, result.output


def store_for(tmp_path):
    return CheckpointStore(BuildConfig(repo_root=str(tmp_path)), "demo")


class TestUnlock:
    def test_no_lock(self, invoke):
        result = invoke("admin", "unlock", "demo")
        assert result.exit_code == 0
        assert "No lock found" in result.output

    def test_force_removes_lock(self, invoke, tmp_path):
        store = store_for(tmp_path)
        store.lock_path.parent.mkdir(parents=True)
        store.lock_path.write_text(json.dumps({"pid": 1, "acquired_at": utc_now()}))

        result = invoke("admin", "unlock", "demo", "--force")

        assert result.exit_code == 0
        assert "Lock removed" in result.output
        assert not store.lock_path.exists()

    def test_declined_keeps_lock(self, invoke, tmp_path):
        store = store_for(tmp_path)
        store.lock_path.parent.mkdir(parents=True)
        store.lock_path.write_text("{}")
        result = invoke("admin", "unlock", "demo", input="n\n")
        assert "stale" in result.output
        assert "Cancelled." in result.output
        assert store.lock_path.exists()


class TestRestore:
    def test_restores_previous_write(self, invoke, tmp_path, finished):
        store = store_for(tmp_path)
        store.path.write_text("{ truncated")

        result = invoke("admin", "restore", "demo", "--yes")

        assert result.exit_code == 0, result.output
        assert "Restored" in result.output
        assert store.load() is not None

    def test_no_backup(self, invoke):
        result = invoke("admin", "restore", "demo", "--yes")
        assert result.exit_code == 1
        assert "No backup" in result.output


class TestLogs:
    def test_no_entries(self, invoke):
        result = invoke("admin", "logs", "demo")
        assert result.exit_code == 0
        assert "No log entries" in result.output

    def test_shows_events(self, invoke, finished):
        result = invoke("admin", "logs", "demo", "--event", "phase_completed", "--limit", "3")
        assert result.exit_code == 0
        assert "Events for demo" in result.output

    def test_filter_without_matches(self, invoke, finished):
        result = invoke("admin", "logs", "demo", "--event", "no_such_event")
        assert "No log entries" in result.output

"""Tests for CheckpointStore persistence and the run lock."""

import json
import os
import threading

import pytest
from filelock import FileLock

from autobuild.checkpoint_store import CheckpointStore, list_projects
from autobuild.errors import CheckpointLocked, CheckpointNotFound, CorruptState, InvalidTransition
from autobuild.models import PhaseId, PhaseState, ProjectIdentity, WorkItem, utc_now


@pytest.fixture
def initialized(store):
    store.initialize(ProjectIdentity(name="demo", request="Build a todo API"))
    return store


class TestLoad:
    def test_missing_checkpoint_is_none(self, store):
        assert store.load() is None
        assert not store.exists()

    def test_initialize_copies_limits_from_config(self, config, initialized):
        checkpoint = initialized.load()
        assert checkpoint.phase.current == PhaseId.PHASE0_INFRA
        assert checkpoint.resource_tracking.budget == config.budget.session_budget
        assert checkpoint.verification.max_attempts == config.verification.max_attempts
        assert checkpoint.project.request == "Build a todo API"

    def test_initialize_refuses_existing_without_overwrite(self, initialized):
        with pytest.raises(InvalidTransition):
            initialized.initialize(ProjectIdentity(name="demo"))

    def test_invalid_json_is_corrupt_and_left_in_place(self, initialized):
        initialized.path.write_text("{not json")
        with pytest.raises(CorruptState) as exc_info:
            initialized.load()
        assert exc_info.value.path == str(initialized.path)
        assert initialized.path.read_text() == "{not json"

    def test_missing_fields_are_corrupt(self, initialized):
        initialized.path.write_text(json.dumps({"version": 2}))
        with pytest.raises(CorruptState, match="malformed"):
            initialized.load()

    def test_future_schema_version_is_corrupt(self, initialized):
        data = json.loads(initialized.path.read_text())
        data["version"] = 99
        initialized.path.write_text(json.dumps(data))
        with pytest.raises(CorruptState):
            initialized.load()

    def test_version_one_document_is_upgraded(self, initialized):
        data = json.loads(initialized.path.read_text())
        data["version"] = 1
        for key in ("work_items", "phase_extensions", "pending_approval"):
            data.pop(key)
        initialized.path.write_text(json.dumps(data))
        checkpoint = initialized.load()
        assert checkpoint.version == 2
        assert checkpoint.work_items == {}


class TestMutate:
    def test_mutate_persists_and_keeps_backup(self, initialized):
        before = initialized.path.read_text()
        initialized.mutate(lambda cp: cp.upsert_item(WorkItem(id="1", title="a")))
        assert initialized.load().work_progress.open_items == {"1"}
        assert initialized.backup_path.read_text() == before

    def test_mutate_may_return_replacement(self, initialized):
        def replace(cp):
            cp.phase = PhaseState(current=PhaseId.PHASE2_ARCHITECTURE)
            return cp

        assert initialized.mutate(replace).phase.current == PhaseId.PHASE2_ARCHITECTURE

    def test_invariant_violation_writes_nothing(self, initialized):
        before = initialized.path.read_text()

        def break_it(cp):
            cp.verification.attempt_count = cp.verification.max_attempts + 1

        with pytest.raises(ValueError):
            initialized.mutate(break_it)
        assert initialized.path.read_text() == before

    def test_mutate_without_checkpoint(self, store):
        with pytest.raises(CheckpointNotFound):
            store.mutate(lambda cp: None)

    def test_mutate_refreshes_resume_hint(self, initialized):
        checkpoint = initialized.mutate(lambda cp: None)
        assert checkpoint.resume_hint == "Infrastructure: not_started"
        assert json.loads(initialized.path.read_text())["resume_hint"] == checkpoint.resume_hint

    def test_concurrent_mutations_are_not_lost(self, initialized):
        errors = []

        def add(item_id):
            try:
                initialized.mutate(lambda cp: cp.upsert_item(WorkItem(id=item_id, title=item_id)))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=add, args=(str(n),)) for n in range(1, 9)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert initialized.load().work_progress.open_items == {str(n) for n in range(1, 9)}

    def test_held_write_lock_times_out_as_locked(self, config, initialized):
        config.sessions.write_lock_timeout = 0.2
        before = initialized.path.read_text()

        with FileLock(initialized.write_lock_path):
            with pytest.raises(CheckpointLocked):
                initialized.mutate(lambda cp: cp.upsert_item(WorkItem(id="1", title="a")))

        assert initialized.path.read_text() == before
        initialized.mutate(lambda cp: cp.upsert_item(WorkItem(id="1", title="a")))
        assert initialized.load().work_progress.open_items == {"1"}

    def test_write_lock_is_not_listed_as_a_project(self, config, initialized):
        initialized.mutate(lambda cp: None)
        assert list_projects(config) == ["demo"]


class TestDeleteAndRestore:
    def test_delete_corrupt_requires_force(self, initialized):
        initialized.path.write_text("garbage")
        with pytest.raises(CorruptState):
            initialized.delete()
        assert initialized.delete(force=True)
        assert not initialized.exists()

    def test_delete_missing_returns_false(self, store):
        assert store.delete() is False

    def test_restore_backup_recovers_previous_document(self, initialized):
        initialized.mutate(lambda cp: cp.upsert_item(WorkItem(id="1", title="a")))
        initialized.path.write_text("garbage")
        restored = initialized.restore_backup()
        assert restored.project.name == "demo"
        assert initialized.load() is not None

    def test_restore_without_backup(self, store):
        with pytest.raises(CheckpointNotFound):
            store.restore_backup()


class TestRunLock:
    def test_hold_acquires_and_releases(self, store):
        with store.hold():
            assert store.is_locked()
        assert not store.is_locked()

    def test_live_foreign_lock_blocks(self, config, store):
        config.locks_path.mkdir(parents=True)
        store.lock_path.write_text(json.dumps({"pid": os.getpid() + 1, "acquired_at": utc_now()}))
        with pytest.raises(CheckpointLocked) as exc_info:
            store.acquire_lock()
        assert exc_info.value.holder["pid"] == os.getpid() + 1

    def test_stale_lock_is_replaced(self, config, store):
        config.locks_path.mkdir(parents=True)
        store.lock_path.write_text(json.dumps({"pid": os.getpid() + 1, "acquired_at": "2000-01-01T00:00:00Z"}))
        store.acquire_lock()
        assert json.loads(store.lock_path.read_text())["pid"] == os.getpid()
        store.release_lock()

    def test_release_leaves_foreign_lock(self, config, store):
        config.locks_path.mkdir(parents=True)
        store.lock_path.write_text(json.dumps({"pid": os.getpid() + 1, "acquired_at": utc_now()}))
        store.release_lock()
        assert store.lock_path.exists()


def test_list_projects(config):
    assert list_projects(config) == []
    for name in ("beta", "alpha"):
        CheckpointStore(config, name).initialize(ProjectIdentity(name=name))
    assert list_projects(config) == ["alpha", "beta"]

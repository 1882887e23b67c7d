"""Tests for resume reconciliation and phase re-entry."""

import pytest

from autobuild.errors import CorruptState, InvalidTransition
from autobuild.history import HistoryStore
from autobuild.models import (
    Checkpoint,
    ItemState,
    PendingApproval,
    PhaseId,
    PhaseStatus,
    ProjectIdentity,
)
from autobuild.resume import ResumeController, compute_reconciliation
from autobuild.state_machine import project_label
from autobuild.tracker import ItemSummary


@pytest.fixture
def controller(config, store, tracker, logger):
    return ResumeController(config, store, tracker, logger)


@pytest.fixture
def labels(config):
    return [config.tracker.label, project_label(config, "demo")]


def test_new_project(controller):
    point = controller.resume()
    assert point.is_new
    assert point.phase is None


def test_compute_reconciliation_diff():
    checkpoint = Checkpoint(project=ProjectIdentity(name="demo"))
    checkpoint.work_progress.completed_items = {"1"}
    checkpoint.work_progress.open_items = {"2", "3"}
    checkpoint.work_progress.in_progress_item = "2"
    summaries = [
        ItemSummary(id="1", title="a", state=ItemState.CLOSED),
        ItemSummary(id="2", title="b", state=ItemState.CLOSED),
        ItemSummary(id="4", title="d", state=ItemState.OPEN),
    ]
    result = compute_reconciliation(checkpoint, summaries)
    assert result.newly_closed == ["2"]
    assert result.newly_opened == ["4"]
    assert result.removed == ["3"]
    assert result.cleared_in_progress == "2"
    assert result.delta == {"2", "3", "4"}


class TestReconciliation:
    def test_agreeing_tracker_changes_nothing(self, controller, seed):
        seed(PhaseId.PHASE3_IMPLEMENTATION, closed=["1"])
        point = controller.resume()
        assert not point.reconciliation.has_changes
        assert point.phase == PhaseId.PHASE3_IMPLEMENTATION

    def test_externally_opened_item_rewinds_to_implementation(self, config, controller, store, tracker, labels, seed):
        seed(PhaseId.PHASE5_VERIFICATION, closed=["1", "2", "3"])
        tracker.create_item("Handle unicode titles", "", labels + ["bug"])

        point = controller.resume()

        assert point.reconciliation.delta == {"4"}
        assert point.phase == PhaseId.PHASE3_IMPLEMENTATION
        checkpoint = store.load()
        assert checkpoint.work_progress.open_items == {"4"}
        assert checkpoint.work_items["4"].is_scored
        assert checkpoint.work_items["4"].kind.name == "BUG"
        assert any("reconciliation" in p.name for p in config.reports_path.iterdir())

    def test_items_from_other_projects_are_ignored(self, controller, tracker, config, seed):
        seed(PhaseId.PHASE3_IMPLEMENTATION)
        tracker.create_item("Someone else's", "", [config.tracker.label])
        assert not controller.resume().reconciliation.has_changes

    def test_externally_closed_items_complete_the_phase(self, controller, store, tracker, seed):
        seed(PhaseId.PHASE3_IMPLEMENTATION)
        for item_id in ("1", "2", "3"):
            tracker.close_item(item_id, "closed by agent")

        point = controller.resume()

        assert point.reconciliation.newly_closed == ["1", "2", "3"]
        assert point.phase == PhaseId.PHASE4_QA
        assert PhaseId.PHASE3_IMPLEMENTATION in store.load().phases_completed

    def test_reopened_item_rewinds_qa(self, controller, tracker, seed):
        seed(PhaseId.PHASE4_QA, closed=["1", "2", "3"])
        tracker.reopen_item("2")

        point = controller.resume()

        assert point.reconciliation.newly_opened == ["2"]
        assert point.phase == PhaseId.PHASE3_IMPLEMENTATION

    def test_deleted_item_is_forgotten(self, controller, store, tracker, seed):
        seed(PhaseId.PHASE3_IMPLEMENTATION)
        tracker.delete_item("3")

        point = controller.resume()

        assert point.reconciliation.removed == ["3"]
        checkpoint = store.load()
        assert "3" not in checkpoint.work_items
        assert checkpoint.work_progress.open_items == {"1", "2"}

    def test_closed_in_progress_item_is_cleared(self, controller, store, tracker, seed):
        seed(PhaseId.PHASE3_IMPLEMENTATION, status=PhaseStatus.IN_PROGRESS)
        store.mutate(lambda cp: cp.work_progress.start("2"))
        tracker.close_item("2", "done elsewhere")

        point = controller.resume()

        assert point.reconciliation.cleared_in_progress == "2"
        assert point.item_id is None
        assert store.load().work_progress.in_progress_item is None

    def test_in_progress_item_is_reported(self, controller, store, seed):
        seed(PhaseId.PHASE3_IMPLEMENTATION, status=PhaseStatus.IN_PROGRESS)
        store.mutate(lambda cp: cp.work_progress.start("2"))
        point = controller.resume()
        assert point.item_id == "2"

    def test_replay_is_idempotent(self, controller, store, tracker, seed):
        seed(PhaseId.PHASE3_IMPLEMENTATION)
        tracker.close_item("1", "x")
        controller.resume()
        first = store.load().work_progress
        assert not controller.resume().reconciliation.has_changes
        assert store.load().work_progress == first


class TestResumptionPoint:
    def test_verification_attempt_is_next_attempt(self, controller, store, seed):
        seed(PhaseId.PHASE5_VERIFICATION, closed=["1", "2", "3"])
        store.mutate(lambda cp: setattr(cp.verification, "attempt_count", 1))
        point = controller.resume()
        assert point.phase == PhaseId.PHASE5_VERIFICATION
        assert point.verification_attempt == 2

    def test_pending_approval_is_left_in_place(self, controller, store, tracker, seed):
        seed(PhaseId.PHASE5_VERIFICATION, closed=["1", "2", "3"])

        def park(cp):
            cp.pending_approval = PendingApproval(kind="time_budget", phase="PHASE5_VERIFICATION", reason="slow")

        store.mutate(park)
        tracker.reopen_item("1")
        point = controller.resume()
        assert point.awaiting_approval
        assert point.phase == PhaseId.PHASE5_VERIFICATION


class TestSessions:
    def test_resume_in_place_keeps_usage(self, controller, store, seed):
        seed()
        store.mutate(lambda cp: cp.resource_tracking.track(5_000))
        controller.resume()
        assert store.load().resource_tracking.used == 5_000

    def test_new_session_resets_gating_usage(self, controller, store, seed):
        seed()
        store.mutate(lambda cp: cp.resource_tracking.track(5_000))
        controller.resume(new_session=True)
        rt = store.load().resource_tracking
        assert rt.used == 0
        assert rt.cumulative_used == 5_000
        assert rt.session_id.startswith("sess_")


class TestStartNew:
    def test_fresh_project(self, controller):
        checkpoint = controller.start_new(ProjectIdentity(name="demo", request="Build it"))
        assert checkpoint.phase.current == PhaseId.PHASE0_INFRA
        assert checkpoint.resource_tracking.session_id

    def test_unfinished_run_is_refused(self, controller, seed):
        seed(PhaseId.PHASE3_IMPLEMENTATION)
        with pytest.raises(InvalidTransition, match="run in progress"):
            controller.start_new(ProjectIdentity(name="demo", request="again"))

    def test_force_records_abandoned_run(self, config, controller, store, seed):
        seed(PhaseId.PHASE3_IMPLEMENTATION)
        controller.start_new(ProjectIdentity(name="demo", request="again"), force=True)
        assert store.load().project.request == "again"
        assert HistoryStore(config.history_path).load()[0].outcome == "abandoned"

    def test_finished_run_may_be_replaced(self, controller, store, seed):
        seed(PhaseId.DONE)
        controller.start_new(ProjectIdentity(name="demo", request="v2"))
        assert store.load().phase.current == PhaseId.PHASE0_INFRA

    def test_corrupt_checkpoint(self, controller, store, seed):
        seed()
        store.path.write_text("{")
        with pytest.raises(CorruptState):
            controller.resume()
        with pytest.raises(CorruptState):
            controller.start_new(ProjectIdentity(name="demo"))
        controller.start_new(ProjectIdentity(name="demo"), force=True)
        assert store.load() is not None

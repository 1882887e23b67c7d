"""End-to-end scenarios: crash and resume, divergence, reconciliation, tuning."""

import pytest

from autobuild.agents.base import AgentResult, PhaseCapability
from autobuild.checkpoint_store import CheckpointStore
from autobuild.complexity import ComplexityAnalyzer
from autobuild.errors import (
    ExternalCapabilityFailure,
    ResourceCeilingExceeded,
    VerificationDivergence,
)
from autobuild.history import HistoryStore
from autobuild.logger import BuildLogger
from autobuild.models import Category, ItemState, PhaseId, PhaseStatus, ProjectIdentity, WorkItem
from autobuild.optimizer import OptimizationStatus, ThresholdOptimizer
from autobuild.resume import ResumeController
from autobuild.state_machine import PhaseStateMachine, project_label

from conftest import ScriptedAgent, verification_failure

pytestmark = pytest.mark.integration


def three_items():
    return AgentResult.success_result({
        "artifacts": ["prd.md"],
        "items": [
            {"title": "Models", "files_estimate": 1, "loc_estimate": 100},
            {"title": "Storage", "files_estimate": 1, "loc_estimate": 100},
            {"title": "Handlers", "files_estimate": 1, "loc_estimate": 100},
        ],
    }, cost=1000)


class Project:
    """Store, logger, resume controller and state machine for one project."""

    def __init__(self, config, tracker, agent, name="demo"):
        self.logger = BuildLogger(name, config)
        self.store = CheckpointStore(config, name, self.logger)
        self.controller = ResumeController(config, self.store, tracker, self.logger)
        self.machine = PhaseStateMachine(config, self.store, tracker, agent, self.logger)

    def start(self, request="Build a todo API"):
        self.controller.start_new(ProjectIdentity(name=self.store.project, request=request))
        return self.machine.run()


def test_complexity_categories_and_ladder(config, machine):
    analyzer = ComplexityAnalyzer(config.complexity)
    shapes = {"200": (1, 100, 0), "900": (5, 400, 0), "1800": (5, 1200, 2)}
    items = {}
    for item_id, (files, loc, deps) in shapes.items():
        item = WorkItem(id=item_id, title=item_id, files_estimate=files, loc_estimate=loc, dependency_count=deps)
        analyzer.score_item(item)
        items[item_id] = item

    assert [i.complexity_score for i in items.values()] == [200, 900, 1800]
    assert [i.complexity_category for i in items.values()] == [Category.SIMPLE, Category.MEDIUM, Category.COMPLEX]
    assert items["200"].estimated_resource == 22_250
    assert machine.plan_sub_units(items["200"]) == 1
    with pytest.raises(ResourceCeilingExceeded):
        machine.plan_sub_units(items["1800"])


def test_crash_mid_implementation_then_resume(config, tracker):
    agent = ScriptedAgent()
    agent.queue(
        PhaseCapability.IMPLEMENTATION,
        AgentResult.success_result({"artifacts": ["src"], "done": True}, cost=1000),
        ExternalCapabilityFailure("process killed", source="agent"),
    )
    project = Project(config, tracker, agent)

    with pytest.raises(ExternalCapabilityFailure):
        project.start()

    # A fresh process picks the run up from disk.
    agent2 = ScriptedAgent()
    restarted = Project(config, tracker, agent2)
    point = restarted.controller.resume()
    assert point.phase == PhaseId.PHASE3_IMPLEMENTATION
    assert not point.reconciliation.has_changes
    progress = restarted.store.load().work_progress
    assert progress.completed_items == {"1"}
    assert progress.open_items == {"2"}

    checkpoint = restarted.machine.run()

    assert checkpoint.phase.current == PhaseId.DONE
    assert [p["item"]["id"] for p in agent2.calls_for(PhaseCapability.IMPLEMENTATION)] == ["2"]
    assert agent2.calls_for(PhaseCapability.DEFINITION) == []
    assert {s.id: s.state for s in tracker.list_items()} == {"1": ItemState.CLOSED, "2": ItemState.CLOSED}


def test_scored_build_crash_resume_and_divergence(config, tracker):
    """Scored items, a crash inside item 2, resume, then three failed verifications."""
    agent = ScriptedAgent()
    agent.queue(PhaseCapability.DEFINITION, AgentResult.success_result({
        "artifacts": ["prd.md"],
        "items": [
            {"title": "Models", "files_estimate": 1, "loc_estimate": 100},
            {"title": "Storage", "files_estimate": 5, "loc_estimate": 400},
            {"title": "Sync engine", "files_estimate": 5, "loc_estimate": 1200, "dependency_count": 2},
        ],
    }, cost=1000))
    agent.queue(PhaseCapability.DECOMPOSITION, AgentResult.success_result({
        "children": [
            {"title": "Sync core", "files_estimate": 3, "loc_estimate": 600},
            {"title": "Sync conflicts", "files_estimate": 2, "loc_estimate": 600, "blocked_by": [0]},
        ],
    }, cost=2000))
    agent.queue(
        PhaseCapability.IMPLEMENTATION,
        AgentResult.success_result({"artifacts": ["src"], "done": True}, cost=1000),
        ExternalCapabilityFailure("process killed", source="agent"),
    )
    project = Project(config, tracker, agent, name="x")

    with pytest.raises(ExternalCapabilityFailure):
        project.start()

    checkpoint = project.store.load()
    items = checkpoint.work_items
    assert [items[i].complexity_score for i in ("1", "2", "3")] == [200, 900, 1800]
    assert [items[i].complexity_category for i in ("1", "2", "3")] == [
        Category.SIMPLE, Category.MEDIUM, Category.COMPLEX,
    ]
    with pytest.raises(ResourceCeilingExceeded):
        project.machine.plan_sub_units(items["3"])
    assert items["3"].required_split
    assert [items[c].parent_id for c in ("4", "5")] == ["3", "3"]

    # A fresh process picks the run up from disk.
    agent2 = ScriptedAgent()
    agent2.queue(
        PhaseCapability.VERIFICATION,
        verification_failure(["test_sync"]),
        verification_failure(["test_merge"]),
        verification_failure(["test_models"]),
    )
    restarted = Project(config, tracker, agent2, name="x")
    point = restarted.controller.resume()

    assert point.phase == PhaseId.PHASE3_IMPLEMENTATION
    assert point.item_id == "2"
    progress = restarted.store.load().work_progress
    assert "1" in progress.completed_items
    assert "2" in progress.open_items
    assert "2" not in progress.completed_items

    with pytest.raises(VerificationDivergence):
        restarted.machine.run()

    checkpoint = restarted.store.load()
    assert checkpoint.phase.current == PhaseId.DIVERGENCE
    assert checkpoint.phase.status == PhaseStatus.DIVERGENCE
    assert checkpoint.pending_approval.kind == "divergence"
    assert checkpoint.verification.attempt_count == 3
    implemented = [p["item"]["id"] for p in agent.calls_for(PhaseCapability.IMPLEMENTATION)]
    implemented += [p["item"]["id"] for p in agent2.calls_for(PhaseCapability.IMPLEMENTATION)]
    assert implemented[:4] == ["1", "2", "2", "4"]
    assert "3" not in implemented


def test_repeated_verification_failure_diverges(config, tracker):
    agent = ScriptedAgent()
    agent.queue(
        PhaseCapability.VERIFICATION,
        verification_failure(["test_create"]),
        verification_failure(["test_delete"]),
        verification_failure(["test_update"]),
    )
    project = Project(config, tracker, agent)

    with pytest.raises(VerificationDivergence):
        project.start()

    checkpoint = project.store.load()
    assert checkpoint.verification.attempt_count == 3
    assert len(checkpoint.verification.failure_history) == 3
    assert checkpoint.pending_approval is not None
    assert len(agent.calls_for(PhaseCapability.VERIFICATION)) == 3
    assert any("divergence" in p.name for p in config.reports_path.iterdir())


def test_external_item_is_reconciled_on_resume(config, tracker):
    agent = ScriptedAgent()
    agent.queue(PhaseCapability.DEFINITION, three_items())
    agent.queue(PhaseCapability.VERIFICATION, ExternalCapabilityFailure("runner crashed", source="agent"))
    project = Project(config, tracker, agent)
    with pytest.raises(ExternalCapabilityFailure):
        project.start()
    assert project.store.load().work_progress.completed_items == {"1", "2", "3"}

    tracker.create_item(
        "Reject empty titles", "", [config.tracker.label, project_label(config, "demo")]
    )
    point = project.controller.resume()

    assert point.reconciliation.delta == {"4"}
    assert point.phase == PhaseId.PHASE3_IMPLEMENTATION

    checkpoint = project.machine.run()
    assert checkpoint.phase.current == PhaseId.DONE
    assert checkpoint.work_progress.completed_items == {"1", "2", "3", "4"}


def test_externally_closed_item_joins_completed_set(config, tracker):
    agent = ScriptedAgent()
    agent.queue(PhaseCapability.DEFINITION, three_items())
    agent.queue(PhaseCapability.VERIFICATION, ExternalCapabilityFailure("runner crashed", source="agent"))
    project = Project(config, tracker, agent)
    with pytest.raises(ExternalCapabilityFailure):
        project.start()

    extra = tracker.create_item(
        "Docs", "", [config.tracker.label, project_label(config, "demo")]
    )
    tracker.close_item(extra, "written by hand")
    point = project.controller.resume()

    assert point.reconciliation.delta == {"4"}
    assert project.store.load().work_progress.completed_items == {"1", "2", "3", "4"}
    log = project.logger.read_logs(event_type="reconciliation_delta")
    assert log and log[-1]["data"]["newly_closed"] == ["4"]


def test_optimizer_waits_for_five_projects(config, tracker):
    optimizer = ThresholdOptimizer(config)
    history = HistoryStore(config.history_path)

    for n in range(4):
        assert Project(config, tracker, ScriptedAgent(), name=f"svc-{n}").start().phase.current == PhaseId.DONE
    assert optimizer.analyze(history.load()).status == OptimizationStatus.INSUFFICIENT_SAMPLE

    Project(config, tracker, ScriptedAgent(), name="svc-4").start()
    result = optimizer.analyze(history.load())

    assert result.status == OptimizationStatus.OK
    assert result.sample_size == 5
    assert result.recommendations == []

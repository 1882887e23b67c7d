"""Shared fixtures for autobuild tests."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

import pytest
from typer.testing import CliRunner

from autobuild.agents.base import AgentCapability, AgentResult, PhaseCapability
from autobuild.checkpoint_store import CheckpointStore
from autobuild.cli.common import set_project_dir
from autobuild.complexity import ComplexityAnalyzer
from autobuild.config import BuildConfig, clear_config_cache
from autobuild.logger import BuildLogger, clear_logger_cache
from autobuild.models import (
    Checkpoint,
    ItemState,
    PhaseId,
    PhaseState,
    PhaseStatus,
    ProjectIdentity,
    WorkItem,
)
from autobuild.state_machine import PhaseStateMachine, project_label
from autobuild.tracker import LocalIssueTracker

PROJECT = "demo"

Scripted = Union[AgentResult, Exception, Callable[[dict[str, Any]], AgentResult]]


def default_results() -> dict[PhaseCapability, AgentResult]:
    """What each capability returns when a test has not queued anything."""
    return {
        PhaseCapability.INFRA: AgentResult.success_result({"artifacts": ["scaffold"]}, cost=1000),
        PhaseCapability.DEFINITION: AgentResult.success_result({
            "artifacts": ["prd.md"],
            "items": [
                {"title": "Storage layer", "files_estimate": 1, "loc_estimate": 100},
                {"title": "HTTP handlers", "files_estimate": 1, "loc_estimate": 50},
            ],
        }, cost=1000),
        PhaseCapability.ARCHITECTURE: AgentResult.success_result({"artifacts": ["architecture.md"]}, cost=1000),
        PhaseCapability.IMPLEMENTATION: AgentResult.success_result(
            {"artifacts": ["src"], "done": True, "commits": 1}, cost=1000
        ),
        PhaseCapability.QA: AgentResult.success_result({"artifacts": ["qa.md"], "bugs": []}, cost=1000),
        PhaseCapability.VERIFICATION: AgentResult.success_result(
            {"passed": True, "failed_tests": [], "coverage": 90.0}, cost=1000
        ),
        PhaseCapability.LEARNING: AgentResult.success_result({}, cost=100),
    }


class ScriptedAgent(AgentCapability):
    """
    Agent capability that replays queued results per capability.

    Queued entries may be an AgentResult, an exception to raise, or a
    callable taking the payload. When a capability's queue is empty the
    default result is returned.
    """

    def __init__(self) -> None:
        self.queues: dict[PhaseCapability, list[Scripted]] = {}
        self.defaults = default_results()
        self.calls: list[tuple[PhaseCapability, dict[str, Any]]] = []

    def queue(self, capability: PhaseCapability, *results: Scripted) -> "ScriptedAgent":
        self.queues.setdefault(capability, []).extend(results)
        return self

    def calls_for(self, capability: PhaseCapability) -> list[dict[str, Any]]:
        return [payload for cap, payload in self.calls if cap == capability]

    def invoke(self, capability: PhaseCapability, payload: dict[str, Any]) -> AgentResult:
        self.calls.append((capability, payload))
        queued = self.queues.get(capability)
        result: Optional[Scripted] = queued.pop(0) if queued else self.defaults.get(capability)
        if result is None:
            raise AssertionError(f"No result scripted for {capability.value}")
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return result(payload)
        return result


def verification_failure(tests: list[str], items: Optional[list[str]] = None, coverage: float = 90.0) -> AgentResult:
    return AgentResult.success_result({
        "passed": False,
        "failed_tests": tests,
        "coverage": coverage,
        "message": f"{len(tests)} test(s) failing",
        "failing_items": items or [],
    }, cost=1000)


class FixedClock:
    """Settable clock for time-budget tests."""

    def __init__(self, now: Optional[datetime] = None) -> None:
        self.now = now or datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture(autouse=True)
def _reset_caches():
    """Config and logger caches are module-level; isolate every test."""
    clear_config_cache()
    clear_logger_cache()
    set_project_dir(None)
    yield
    clear_config_cache()
    clear_logger_cache()
    set_project_dir(None)


@pytest.fixture
def config(tmp_path) -> BuildConfig:
    return BuildConfig(repo_root=str(tmp_path))


@pytest.fixture
def logger(config) -> BuildLogger:
    return BuildLogger(PROJECT, config)


@pytest.fixture
def store(config, logger) -> CheckpointStore:
    return CheckpointStore(config, PROJECT, logger)


@pytest.fixture
def tracker(config) -> LocalIssueTracker:
    return LocalIssueTracker(config.tracker_path)


@pytest.fixture
def agent() -> ScriptedAgent:
    return ScriptedAgent()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def machine(config, store, tracker, agent, logger, clock) -> PhaseStateMachine:
    return PhaseStateMachine(config, store, tracker, agent, logger, clock=clock)


@pytest.fixture
def cli_runner() -> CliRunner:
    """Typer CLI test runner."""
    return CliRunner()


@pytest.fixture
def seed(config, store, tracker):
    """
    Build a checkpoint positioned at a given phase.

    Items are created in the tracker with the project's labels, scored,
    and recorded in the checkpoint. Artifacts for every earlier phase are
    recorded so those phases' predicates hold.

    Usage:
        checkpoint = seed(PhaseId.PHASE3_IMPLEMENTATION, items=[(1, 100), (3, 500, 2)], closed=["1"])
    """
    analyzer = ComplexityAnalyzer(config.complexity)
    labels = [config.tracker.label, project_label(config, PROJECT)]

    def _seed(
        phase: PhaseId = PhaseId.PHASE3_IMPLEMENTATION,
        items: Optional[list[tuple]] = None,
        closed: Optional[list[str]] = None,
        status: PhaseStatus = PhaseStatus.NOT_STARTED,
    ) -> Checkpoint:
        shapes = items if items is not None else [(1, 100), (1, 100), (1, 100)]
        closed_ids = set(closed or [])
        store.initialize(ProjectIdentity(name=PROJECT, request="Build a todo API"), overwrite=True)

        work_items = []
        for index, shape in enumerate(shapes, start=1):
            files, loc = shape[0], shape[1]
            deps = shape[2] if len(shape) > 2 else 0
            title = f"Item {index}"
            item_id = tracker.create_item(title, "", labels)
            item = WorkItem(
                id=item_id,
                title=title,
                files_estimate=files,
                loc_estimate=loc,
                dependency_count=deps,
            )
            analyzer.score_item(item)
            if item_id in closed_ids:
                tracker.close_item(item_id, "done")
                item.state = ItemState.CLOSED
            work_items.append(item)

        order = [
            PhaseId.PHASE0_INFRA, PhaseId.PHASE1_DEFINITION, PhaseId.PHASE1_5_DECOMPOSITION,
            PhaseId.PHASE2_ARCHITECTURE, PhaseId.PHASE3_IMPLEMENTATION, PhaseId.PHASE4_QA,
            PhaseId.PHASE5_VERIFICATION, PhaseId.PHASE6_LEARNING,
        ]
        artifacts = {
            PhaseId.PHASE0_INFRA: "infra:scaffold",
            PhaseId.PHASE1_DEFINITION: "prd:prd.md",
            PhaseId.PHASE2_ARCHITECTURE: "architecture:architecture.md",
            PhaseId.PHASE4_QA: "qa_report:qa.md",
        }

        def apply(cp: Checkpoint) -> None:
            for item in work_items:
                cp.upsert_item(item)
            for earlier in order[:order.index(phase)] if phase in order else order:
                cp.mark_phase_completed(earlier)
                if earlier in artifacts:
                    cp.add_artifact(artifacts[earlier])
            cp.phase = PhaseState(
                current=phase,
                status=status,
                started_at="2026-10-16T12:00:00Z" if status == PhaseStatus.IN_PROGRESS else None,
            )

        return store.mutate(apply)

    return _seed

"""
Phase state machine for autobuild.

This module handles:
- Sequencing the build phases and their completion predicates
- Invoking the agent capability that does each phase's work
- Scheduling work items under the resource budget ladder
- The bounded verification loop and divergence detection
- Time-budget approval gates and operator decisions

Phases and their completion predicates:

┌────────────────────────┐
│ PHASE0_INFRA           │  infra artifact recorded
└────────────────────────┘
          │
          ▼
┌────────────────────────┐
│ PHASE1_DEFINITION      │  PRD recorded, >= 1 work item, all items scored
└────────────────────────┘
          │
          ▼
┌────────────────────────┐
│ PHASE1_5_DECOMPOSITION │  no open Complex items, no unfinished split
└────────────────────────┘
          │
          ▼
┌────────────────────────┐
│ PHASE2_ARCHITECTURE    │  architecture artifact recorded
└────────────────────────┘
          │
          ▼
┌────────────────────────┐ <──────────────┐
│ PHASE3_IMPLEMENTATION  │  no open items │ bugs found / verification failed
└────────────────────────┘                │
          │                               │
          ▼                               │
┌────────────────────────┐                │
│ PHASE4_QA              │ ───────────────┤  QA report recorded, no open bugs
└────────────────────────┘                │
          │                               │
          ▼                               │
┌────────────────────────┐                │
│ PHASE5_VERIFICATION    │ ───────────────┘  verification passed
└────────────────────────┘ ──> DIVERGENCE (max attempts, needs approval)
          │
          ▼
┌────────────────────────┐
│ PHASE6_LEARNING        │  project record written
└────────────────────────┘
          │
          ▼
        DONE

Every unit of work (a phase result, one implementation sub-unit, one
verification attempt) is written to the checkpoint in a single mutate()
after the agent call returns. An agent or tracker failure therefore
leaves the checkpoint exactly as it was before the call.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional

from autobuild.agents.base import AgentCapability, AgentResult, PhaseCapability
from autobuild.complexity import ComplexityAnalyzer, Splitter
from autobuild.errors import (
    ApprovalRequired,
    CheckpointNotFound,
    DecompositionError,
    ExternalCapabilityFailure,
    InvalidTransition,
    ResourceCeilingExceeded,
    VerificationDivergence,
)
from autobuild.history import HistoryStore
from autobuild.models import (
    AgentInvocation,
    Category,
    Checkpoint,
    FailureRecord,
    ItemKind,
    ItemRecord,
    ItemState,
    PendingApproval,
    PhaseId,
    PhaseState,
    PhaseStatus,
    Priority,
    ProjectRecord,
    WorkItem,
    WorkItemEstimate,
    item_sort_key,
    parse_timestamp,
    utc_now,
)
from autobuild.reports import (
    completion_report,
    divergence_report,
    time_budget_report,
    write_report,
)
from autobuild.verification import VerificationGate, VerificationOutcome

if TYPE_CHECKING:
    from autobuild.checkpoint_store import CheckpointStore
    from autobuild.config import BuildConfig
    from autobuild.logger import BuildLogger
    from autobuild.tracker import WorkItemTracker


# Artifacts are recorded in the checkpoint as "<kind>:<identifier>".
INFRA_ARTIFACT = "infra"
PRD_ARTIFACT = "prd"
ARCHITECTURE_ARTIFACT = "architecture"
CODE_ARTIFACT = "code"
QA_REPORT_ARTIFACT = "qa_report"
LEARNING_ARTIFACT = "learning"
PROJECT_RECORD_ARTIFACT = "record"

DIVERGENCE_OPTIONS = ["narrow_scope", "relax_threshold", "manual"]
TIME_BUDGET_OPTIONS = ["extend", "reduce_scope", "proceed"]

# phase_extensions value meaning "no further time limit for this phase"
NO_TIME_LIMIT = -1


def project_label(config: BuildConfig, project: str) -> str:
    """Tracker label that identifies one project's items."""
    return f"{config.tracker.label}:{project}"


def has_artifact(checkpoint: Checkpoint, kind: str) -> bool:
    prefix = f"{kind}:"
    return any(a.startswith(prefix) for a in checkpoint.artifacts)


def pending_splits(checkpoint: Checkpoint) -> list[WorkItem]:
    """Items whose decomposition was planned but not finished."""
    return [
        checkpoint.work_items[item_id]
        for item_id in sorted(checkpoint.work_items, key=item_sort_key)
        if checkpoint.work_items[item_id].planned_children
    ]


def phase_predicate_holds(phase: PhaseId, checkpoint: Checkpoint) -> bool:
    """
    Completion predicate for a phase, evaluated against the checkpoint.

    Callers reconcile the checkpoint with the tracker first, so item
    state reflects the tracker.
    """
    open_items = checkpoint.open_work_items()

    if phase == PhaseId.PHASE0_INFRA:
        return has_artifact(checkpoint, INFRA_ARTIFACT)
    if phase == PhaseId.PHASE1_DEFINITION:
        return (
            has_artifact(checkpoint, PRD_ARTIFACT)
            and bool(checkpoint.work_items)
            and all(item.is_scored for item in checkpoint.work_items.values())
        )
    if phase == PhaseId.PHASE1_5_DECOMPOSITION:
        return (
            not pending_splits(checkpoint)
            and not any(i.complexity_category == Category.COMPLEX for i in open_items)
        )
    if phase == PhaseId.PHASE2_ARCHITECTURE:
        return has_artifact(checkpoint, ARCHITECTURE_ARTIFACT)
    if phase == PhaseId.PHASE3_IMPLEMENTATION:
        return not checkpoint.work_progress.open_items and not pending_splits(checkpoint)
    if phase == PhaseId.PHASE4_QA:
        return (
            has_artifact(checkpoint, QA_REPORT_ARTIFACT)
            and not any(i.kind == ItemKind.BUG for i in open_items)
        )
    if phase == PhaseId.PHASE5_VERIFICATION:
        return checkpoint.verification.passed
    if phase == PhaseId.PHASE6_LEARNING:
        return has_artifact(checkpoint, PROJECT_RECORD_ARTIFACT)
    return phase == PhaseId.DONE


def schedule_order(items: list[WorkItem]) -> list[WorkItem]:
    """
    Order open items for implementation.

    An item is ready once none of its dependencies are still in the list;
    among ready items the highest priority goes first, ties broken by id.
    If nothing is ready (a dependency cycle) the highest-priority remaining
    item is taken so the loop always makes progress.
    """
    remaining = {item.id: item for item in items}
    ordered: list[WorkItem] = []
    while remaining:
        ready = [
            item for item in remaining.values()
            if not any(dep in remaining for dep in item.depends_on)
        ]
        pool = ready or list(remaining.values())
        chosen = min(pool, key=lambda i: (-i.priority.rank, item_sort_key(i.id)))
        ordered.append(chosen)
        del remaining[chosen.id]
    return ordered


def project_record_from(checkpoint: Checkpoint, outcome: str = "complete") -> ProjectRecord:
    """Summarise a checkpoint as a history row."""
    items = [
        ItemRecord(
            item_id=item.id,
            category=item.complexity_category,
            complexity_score=item.complexity_score,
            estimated_resource=item.estimated_resource or 0,
            actual_resource=item.actual_resource or 0,
            required_split=item.required_split,
            commit_count=item.commit_count,
        )
        for item in sorted(checkpoint.work_items.values(), key=lambda i: item_sort_key(i.id))
        if item.is_scored
    ]
    return ProjectRecord(
        project=checkpoint.project.name,
        started_at=checkpoint.project.started_at,
        completed_at=utc_now(),
        outcome=outcome,
        verification_attempts=checkpoint.verification.total_attempts,
        total_resource=checkpoint.resource_tracking.cumulative_used,
        items=items,
    )


def _enum_value(enum_cls: type, raw: Any, default: Any) -> Any:
    try:
        return enum_cls[str(raw).upper()]
    except KeyError:
        return default


def _estimate_from_output(raw: dict[str, Any]) -> WorkItemEstimate:
    return WorkItemEstimate(
        title=str(raw.get("title") or "Untitled"),
        files_estimate=int(raw.get("files_estimate", 1)),
        loc_estimate=int(raw.get("loc_estimate", 0)),
        dependency_count=int(raw.get("dependency_count", 0)),
        blocked_by=[int(b) for b in raw.get("blocked_by") or []],
        body=str(raw.get("body") or ""),
    )


class PhaseStateMachine:
    """
    Drives one project's checkpoint through the build phases.

    The machine owns no state of its own: every decision is made from a
    freshly loaded checkpoint, so a new instance can pick up any run.
    """

    def __init__(
        self,
        config: BuildConfig,
        store: CheckpointStore,
        tracker: WorkItemTracker,
        agent: AgentCapability,
        logger: Optional[BuildLogger] = None,
        history: Optional[HistoryStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """
        Initialize the state machine.

        Args:
            config: Build configuration.
            store: Checkpoint store for the project.
            tracker: Work item tracker.
            agent: Agent capability that performs each phase's work.
            logger: Optional logger.
            history: History store; defaults to the configured path.
            clock: Returns the current aware datetime (for time budgets).
        """
        self.config = config
        self.store = store
        self.tracker = tracker
        self.agent = agent
        self._logger = logger
        self.history = history or HistoryStore(config.history_path, logger)
        self.analyzer = ComplexityAnalyzer(config.complexity, logger=logger)
        self.gate = VerificationGate(config.verification, logger)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._handlers: dict[PhaseId, Callable[[], Checkpoint]] = {
            PhaseId.PHASE0_INFRA: self._run_infra,
            PhaseId.PHASE1_DEFINITION: self._run_definition,
            PhaseId.PHASE1_5_DECOMPOSITION: self._run_decomposition,
            PhaseId.PHASE2_ARCHITECTURE: self._run_architecture,
            PhaseId.PHASE3_IMPLEMENTATION: self._run_implementation,
            PhaseId.PHASE4_QA: self._run_qa,
            PhaseId.PHASE5_VERIFICATION: self._run_verification,
            PhaseId.PHASE6_LEARNING: self._run_learning,
        }

    @property
    def project(self) -> str:
        return self.store.project

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "state_machine"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _now(self) -> str:
        return self._clock().isoformat().replace("+00:00", "Z")

    def _load(self) -> Checkpoint:
        checkpoint = self.store.load()
        if checkpoint is None:
            raise CheckpointNotFound(f"No checkpoint for '{self.project}'")
        return checkpoint

    def _labels(self, kind: ItemKind = ItemKind.FEATURE) -> list[str]:
        labels = [self.config.tracker.label, project_label(self.config, self.project)]
        if kind == ItemKind.BUG:
            labels.append("bug")
        return labels

    # Entry Points

    def run(self) -> Checkpoint:
        """
        Run phases until the build is done or must stop.

        Returns normally when the build reaches DONE or when the session's
        resource budget is nearly used (threshold_exceeded is set; resume
        in a new session to continue).

        Raises:
            ApprovalRequired: A time budget was exceeded or an approval is pending.
            VerificationDivergence: Verification failed at the attempt cap.
            ResourceCeilingExceeded: A split item is still above the ceiling.
            DecompositionError: A Complex item could not be split.
            ExternalCapabilityFailure: An agent or tracker call failed. The
                checkpoint is left at its last write; resume to retry.
        """
        checkpoint = self._load()
        self._raise_if_parked(checkpoint)
        self._log("run_started", {
            "phase": checkpoint.phase.current.name,
            "session_id": checkpoint.resource_tracking.session_id,
        })

        try:
            while not checkpoint.phase.current.is_terminal:
                if checkpoint.resource_tracking.threshold_exceeded:
                    self._log_session_budget(checkpoint)
                    return checkpoint

                phase = checkpoint.phase.current
                if phase_predicate_holds(phase, checkpoint):
                    checkpoint = self._complete_phase(phase)
                    continue

                checkpoint = self._check_time_budget(checkpoint)
                if checkpoint.phase.status != PhaseStatus.IN_PROGRESS:
                    checkpoint = self._begin_phase(phase)
                checkpoint = self._handlers[phase]()
        except ExternalCapabilityFailure as e:
            self._log("run_suspended", {
                "source": e.source,
                "error": str(e),
            }, level="error")
            raise

        self._log("run_finished", {"phase": checkpoint.phase.current.name})
        return checkpoint

    def track_resource_usage(self, cost: int) -> Checkpoint:
        """Record the cost of a unit of work outside an agent invocation."""
        checkpoint = self.store.mutate(lambda cp: cp.resource_tracking.track(cost))
        if checkpoint.resource_tracking.threshold_exceeded:
            self._log_session_budget(checkpoint)
        return checkpoint

    def plan_sub_units(self, item: WorkItem) -> int:
        """
        Apply the budget ladder to an item.

        Returns:
            1 below proceed_limit, otherwise 2..max_sub_units sub-units of
            roughly half the proceed limit each.

        Raises:
            ResourceCeilingExceeded: If the item is Complex or its estimate
                is above the ceiling. It must be decomposed, never
                scheduled directly.
        """
        budget = self.config.budget
        estimate = item.estimated_resource or 0
        if item.complexity_category == Category.COMPLEX:
            raise ResourceCeilingExceeded(
                f"#{item.id} scores {item.complexity_score} (Complex) and must be decomposed",
                item_id=item.id,
                estimate=estimate,
                ceiling=budget.ceiling,
            )
        if estimate > budget.ceiling:
            raise ResourceCeilingExceeded(
                f"#{item.id} estimates {estimate:,} tokens, above the {budget.ceiling:,} ceiling",
                item_id=item.id,
                estimate=estimate,
                ceiling=budget.ceiling,
            )
        if estimate < budget.proceed_limit:
            return 1
        unit_size = budget.proceed_limit / 2
        return max(2, min(budget.max_sub_units, math.ceil(estimate / unit_size)))

    def next_item(self, checkpoint: Checkpoint) -> Optional[WorkItem]:
        """The item PHASE3 should work on next, or None when nothing is open."""
        in_progress = checkpoint.work_progress.in_progress_item
        if in_progress and in_progress in checkpoint.work_items:
            return checkpoint.work_items[in_progress]
        ordered = schedule_order(checkpoint.open_work_items())
        return ordered[0] if ordered else None

    def approve(self, decision: str) -> Checkpoint:
        """
        Resolve the pending approval.

        Divergence: narrow_scope, relax_threshold, manual.
        Time budget: extend, reduce_scope, proceed.

        Raises:
            InvalidTransition: If nothing is pending or the decision is not
                one of the pending approval's options.
        """
        checkpoint = self._load()
        pending = checkpoint.pending_approval
        if pending is None:
            raise InvalidTransition(f"No approval is pending for '{self.project}'")
        if decision not in pending.options:
            raise InvalidTransition(
                f"'{decision}' is not a valid {pending.kind} decision "
                f"(choose from: {', '.join(pending.options)})"
            )

        if pending.kind == "divergence":
            checkpoint = self._resolve_divergence(checkpoint, decision)
        else:
            checkpoint = self._resolve_time_budget(checkpoint, decision)

        self._log("approval_resolved", {
            "kind": pending.kind,
            "decision": decision,
            "phase": checkpoint.phase.current.name,
        }, level="warn")
        return checkpoint

    # Phase Bookkeeping

    def _raise_if_parked(self, checkpoint: Checkpoint) -> None:
        pending = checkpoint.pending_approval
        if pending is None:
            return
        if pending.kind == "divergence":
            raise VerificationDivergence(
                f"'{self.project}' diverged in verification; approve a decision to continue",
                attempt_count=checkpoint.verification.attempt_count,
                report=divergence_report(checkpoint),
            )
        raise ApprovalRequired(
            f"'{self.project}' is waiting for approval: {pending.reason}",
            approval_kind=pending.kind,
            options=pending.options,
        )

    def _log_session_budget(self, checkpoint: Checkpoint) -> None:
        rt = checkpoint.resource_tracking
        self._log("session_budget_approaching", {
            "used": rt.used,
            "budget": rt.budget,
            "session_id": rt.session_id,
        }, level="warn")

    def _begin_phase(self, phase: PhaseId) -> Checkpoint:
        started_at = self._now()

        def apply(cp: Checkpoint) -> None:
            if cp.phase.current == phase and cp.phase.status != PhaseStatus.IN_PROGRESS:
                cp.phase.status = PhaseStatus.IN_PROGRESS
                cp.phase.started_at = started_at

        checkpoint = self.store.mutate(apply)
        self._log("phase_started", {"phase": phase.name})
        return checkpoint

    @staticmethod
    def _advance(checkpoint: Checkpoint, phase: PhaseId) -> None:
        checkpoint.mark_phase_completed(phase)
        checkpoint.phase = PhaseState(current=phase.next(), status=PhaseStatus.NOT_STARTED)

    @staticmethod
    def _return_to(checkpoint: Checkpoint, phase: PhaseId) -> None:
        checkpoint.phase = PhaseState(current=phase, status=PhaseStatus.NOT_STARTED)

    def _complete_phase(self, phase: PhaseId) -> Checkpoint:
        def apply(cp: Checkpoint) -> None:
            if cp.phase.current == phase and phase_predicate_holds(phase, cp):
                self._advance(cp, phase)

        checkpoint = self.store.mutate(apply)
        if checkpoint.phase.current == phase:
            raise InvalidTransition(f"{phase.display_name} is not complete")
        self._log("phase_completed", {"phase": phase.name, "next": checkpoint.phase.current.name})
        return checkpoint

    def _finish_unit(self, checkpoint: Checkpoint, phase: PhaseId, unmet: str) -> Checkpoint:
        """After a phase's single unit is written, it must have completed the phase."""
        if checkpoint.phase.current == phase:
            self._log("phase_incomplete", {"phase": phase.name, "reason": unmet}, level="error")
            raise ExternalCapabilityFailure(unmet, source="agent")
        self._log("phase_completed", {"phase": phase.name, "next": checkpoint.phase.current.name})
        return checkpoint

    def _check_time_budget(self, checkpoint: Checkpoint) -> Checkpoint:
        """Raise ApprovalRequired if the current phase has run past its budget."""
        phase = checkpoint.phase.current
        if checkpoint.phase.status != PhaseStatus.IN_PROGRESS or not checkpoint.phase.started_at:
            return checkpoint
        extension = checkpoint.phase_extensions.get(phase.name, 0)
        budget = self.config.phases.minutes_for(phase.name)
        if extension == NO_TIME_LIMIT or budget <= 0:
            return checkpoint

        allowed = budget + extension
        elapsed = (self._clock() - parse_timestamp(checkpoint.phase.started_at)).total_seconds() / 60
        if elapsed <= allowed:
            return checkpoint

        report = time_budget_report(checkpoint, elapsed, allowed)
        path = write_report(self.config, self.project, "time-budget", report)
        reason = f"{phase.display_name} ran {elapsed:.0f} minutes against a {allowed}-minute budget"

        def apply(cp: Checkpoint) -> None:
            cp.pending_approval = PendingApproval(
                kind="time_budget",
                phase=phase.name,
                reason=reason,
                options=list(TIME_BUDGET_OPTIONS),
            )

        self.store.mutate(apply)
        self._log("time_budget_exceeded", {
            "phase": phase.name,
            "elapsed_minutes": round(elapsed, 1),
            "budget_minutes": allowed,
            "report": str(path),
        }, level="warn")
        raise ApprovalRequired(
            f"Approval required: {reason}",
            approval_kind="time_budget",
            options=list(TIME_BUDGET_OPTIONS),
            report=report,
        )

    # Agent Invocation

    def _invoke(
        self,
        capability: PhaseCapability,
        phase: PhaseId,
        payload: dict[str, Any],
        item_id: Optional[str] = None,
    ) -> tuple[AgentResult, AgentInvocation]:
        """
        Call a capability. Nothing is written unless the call returns.

        A returned failure result is recorded (with its cost) and raised
        as ExternalCapabilityFailure.
        """
        started_at = utc_now()
        result = self.agent.invoke(capability, payload)
        invocation = AgentInvocation(
            capability=capability.value,
            phase=phase.name,
            status="success" if result.success else "failed",
            started_at=started_at,
            completed_at=utc_now(),
            item_id=item_id,
        )
        if not result.success:
            def record(cp: Checkpoint) -> None:
                cp.record_invocation(invocation)
                cp.resource_tracking.track(result.cost)

            self.store.mutate(record)
            raise ExternalCapabilityFailure(
                f"{capability.value} failed: {'; '.join(result.errors) or 'no detail'}",
                source="agent",
            )
        return result, invocation

    @staticmethod
    def _apply_invocation(
        checkpoint: Checkpoint,
        invocation: AgentInvocation,
        result: AgentResult,
        artifact_kind: Optional[str] = None,
    ) -> None:
        checkpoint.record_invocation(invocation)
        checkpoint.resource_tracking.track(result.cost)
        if artifact_kind:
            for artifact in result.output.get("artifacts") or []:
                checkpoint.add_artifact(f"{artifact_kind}:{artifact}")

    def _item_from_output(self, raw: dict[str, Any], default_kind: ItemKind) -> WorkItem:
        try:
            estimate = _estimate_from_output(raw)
        except (TypeError, ValueError) as e:
            raise ExternalCapabilityFailure(f"Agent returned an invalid work item: {e}", source="agent", cause=e)
        return WorkItem(
            id="",
            title=estimate.title,
            body=estimate.body,
            kind=_enum_value(ItemKind, raw.get("kind", default_kind.name), default_kind),
            priority=_enum_value(Priority, raw.get("priority", "MEDIUM"), Priority.MEDIUM),
            files_estimate=estimate.files_estimate,
            loc_estimate=estimate.loc_estimate,
            dependency_count=estimate.dependency_count,
        )

    # Phase Handlers

    def _run_simple_phase(self, phase: PhaseId, capability: PhaseCapability, artifact_kind: str) -> Checkpoint:
        checkpoint = self._load()
        payload = {
            "project": self.project,
            "request": checkpoint.project.request,
            "items": [item.to_dict() for item in checkpoint.work_items.values()],
        }
        result, invocation = self._invoke(capability, phase, payload)

        def apply(cp: Checkpoint) -> None:
            self._apply_invocation(cp, invocation, result, artifact_kind)
            if cp.phase.current == phase and phase_predicate_holds(phase, cp):
                self._advance(cp, phase)

        checkpoint = self.store.mutate(apply)
        return self._finish_unit(checkpoint, phase, f"{capability.value} produced no {artifact_kind} artifact")

    def _run_infra(self) -> Checkpoint:
        return self._run_simple_phase(PhaseId.PHASE0_INFRA, PhaseCapability.INFRA, INFRA_ARTIFACT)

    def _run_architecture(self) -> Checkpoint:
        return self._run_simple_phase(
            PhaseId.PHASE2_ARCHITECTURE, PhaseCapability.ARCHITECTURE, ARCHITECTURE_ARTIFACT
        )

    def _run_definition(self) -> Checkpoint:
        """Write the PRD, create every work item in the tracker, score each."""
        phase = PhaseId.PHASE1_DEFINITION
        checkpoint = self._load()
        result, invocation = self._invoke(
            PhaseCapability.DEFINITION,
            phase,
            {"project": self.project, "request": checkpoint.project.request},
        )

        raw_items = result.output.get("items") or []
        parsed = [self._item_from_output(raw, ItemKind.FEATURE) for raw in raw_items]

        # Items already in the tracker (from an interrupted earlier attempt) are reused by title.
        existing = {
            s.title: s
            for s in self.tracker.list_items(labels=[project_label(self.config, self.project)])
        }
        for item in parsed:
            summary = existing.get(item.title)
            if summary is not None:
                item.id = summary.id
                item.state = summary.state
            else:
                item.id = self.tracker.create_item(item.title, item.body, self._labels(item.kind))
            self.analyzer.score_item(item)

        for item, raw in zip(parsed, raw_items):
            blockers = raw.get("blocked_by") or []
            item.depends_on = [
                parsed[int(b)].id for b in blockers
                if 0 <= int(b) < len(parsed) and parsed[int(b)] is not item
            ]

        def apply(cp: Checkpoint) -> None:
            self._apply_invocation(cp, invocation, result, PRD_ARTIFACT)
            for item in parsed:
                recorded = cp.work_items.get(item.id)
                if recorded is None or not recorded.estimated:
                    cp.upsert_item(item)
            if cp.phase.current == phase and phase_predicate_holds(phase, cp):
                self._advance(cp, phase)

        checkpoint = self.store.mutate(apply)
        self._log("items_defined", {
            "items": [
                {"id": i.id, "score": i.complexity_score, "category": i.complexity_category.name}
                for i in parsed
            ],
        })
        return self._finish_unit(checkpoint, phase, "definition produced no PRD or no work items")

    def _run_decomposition(self) -> Checkpoint:
        """Finish any interrupted split, then split every open Complex item."""
        for parent in pending_splits(self._load()):
            self._decompose_item(parent, PhaseId.PHASE1_5_DECOMPOSITION)
        checkpoint = self._load()
        for item in checkpoint.open_work_items():
            if item.complexity_category == Category.COMPLEX:
                self._decompose_item(item, PhaseId.PHASE1_5_DECOMPOSITION)
        return self._complete_phase(PhaseId.PHASE1_5_DECOMPOSITION)

    def _agent_splitter(
        self,
        phase: PhaseId,
        item_id: str,
        calls: list[tuple[AgentInvocation, AgentResult]],
    ) -> Splitter:
        """A Splitter backed by the decomposition capability; calls are collected for recording."""
        def split(parent: WorkItemEstimate, feedback: Optional[str]) -> list[WorkItemEstimate]:
            payload: dict[str, Any] = {
                "project": self.project,
                "parent": parent.to_dict(),
                "max_child_score": self.config.complexity.medium_max,
            }
            if feedback:
                payload["feedback"] = feedback
            result, invocation = self._invoke(PhaseCapability.DECOMPOSITION, phase, payload, item_id=item_id)
            calls.append((invocation, result))
            try:
                return [_estimate_from_output(c) for c in result.output.get("children") or []]
            except (TypeError, ValueError) as e:
                raise ExternalCapabilityFailure(
                    f"decomposition returned an invalid child: {e}", source="agent", cause=e
                )

        return split

    def _record_calls(self, calls: list[tuple[AgentInvocation, AgentResult]]) -> None:
        if not calls:
            return

        def apply(cp: Checkpoint) -> None:
            for invocation, result in calls:
                self._apply_invocation(cp, invocation, result)

        self.store.mutate(apply)

    def _plan_split(self, item: WorkItem, phase: PhaseId) -> list[WorkItemEstimate]:
        """
        Obtain validated child estimates and record them on the parent.

        The plan is written before any child exists in the tracker, so an
        interrupted split is finished from the plan rather than re-split.

        Raises:
            DecompositionError: If no acceptable split is obtained.
            ResourceCeilingExceeded: If a child is still above the ceiling.
        """
        calls: list[tuple[AgentInvocation, AgentResult]] = []
        splitter = self._agent_splitter(phase, item.id, calls)
        try:
            estimates = self.analyzer.decompose(item.to_estimate(), splitter)
        except DecompositionError as e:
            self._record_calls(calls)
            self._log("decomposition_failed", {"item_id": item.id, "error": str(e)}, level="error")
            raise

        ceiling = self.config.budget.ceiling
        for estimate in estimates:
            cost = self.analyzer.estimate_resource(estimate)
            if cost > ceiling:
                self._record_calls(calls)
                raise ResourceCeilingExceeded(
                    f"Child '{estimate.title}' of #{item.id} still estimates {cost:,} tokens, "
                    f"above the {ceiling:,} ceiling",
                    item_id=item.id,
                    estimate=cost,
                    ceiling=ceiling,
                )

        def apply(cp: Checkpoint) -> None:
            for invocation, result in calls:
                self._apply_invocation(cp, invocation, result)
            parent = cp.work_items.get(item.id, item)
            parent.planned_children = list(estimates)
            cp.upsert_item(parent)

        self.store.mutate(apply)
        return estimates

    def _decompose_item(self, item: WorkItem, phase: PhaseId) -> list[WorkItem]:
        """
        Replace an item with validated children.

        Children are created in the tracker, inherit the parent's kind,
        priority and dependencies, and anything that depended on the
        parent now depends on all of them. The parent is closed and
        marked required_split. A parent that already carries a plan is
        finished from it, reusing children the tracker already has.

        Raises:
            DecompositionError: If no acceptable split is obtained.
            ResourceCeilingExceeded: If a child is still above the ceiling.
        """
        if item.planned_children:
            estimates = list(item.planned_children)
            self._log("decomposition_resumed", {"item_id": item.id, "children": len(estimates)})
        else:
            estimates = self._plan_split(item, phase)

        # Unestimated tracker items with a child's title are left from an interrupted split.
        recorded = self._load().work_items
        existing = {
            s.title: s
            for s in self.tracker.list_items(labels=[project_label(self.config, self.project)])
            if s.id != item.id and (s.id not in recorded or not recorded[s.id].estimated)
        }

        children: list[WorkItem] = []
        for estimate in estimates:
            body = estimate.body or f"Split from #{item.id}: {item.title}"
            summary = existing.pop(estimate.title, None)
            if summary is not None:
                child_id = summary.id
            else:
                child_id = self.tracker.create_item(estimate.title, body, self._labels(item.kind))
            children.append(WorkItem(
                id=child_id,
                title=estimate.title,
                body=body,
                kind=item.kind,
                priority=item.priority,
                state=summary.state if summary else ItemState.OPEN,
                parent_id=item.id,
                files_estimate=estimate.files_estimate,
                loc_estimate=estimate.loc_estimate,
                dependency_count=estimate.dependency_count,
            ))
        for child, estimate in zip(children, estimates):
            child.depends_on = [children[b].id for b in estimate.blocked_by] + list(item.depends_on)
            self.analyzer.score_item(child)

        child_ids = [c.id for c in children]
        if item.state != ItemState.CLOSED:
            self.tracker.close_item(item.id, f"Split into {', '.join('#' + i for i in child_ids)}")

        def apply(cp: Checkpoint) -> None:
            for child in children:
                cp.upsert_item(child)
            parent = cp.work_items.get(item.id, item)
            parent.required_split = True
            parent.planned_children = []
            parent.state = ItemState.CLOSED
            cp.upsert_item(parent)
            for other in cp.work_items.values():
                if item.id in other.depends_on:
                    deps = [d for d in other.depends_on if d != item.id]
                    other.depends_on = deps + [c for c in child_ids if c not in deps and c != other.id]

        self.store.mutate(apply)
        self._log("item_decomposed", {"item_id": item.id, "children": child_ids})
        return children

    def _run_implementation(self) -> Checkpoint:
        """Implement open items one at a time until none remain."""
        while True:
            checkpoint = self._load()
            if checkpoint.resource_tracking.threshold_exceeded:
                return checkpoint
            checkpoint = self._check_time_budget(checkpoint)
            pending = pending_splits(checkpoint)
            if pending:
                self._decompose_item(pending[0], PhaseId.PHASE3_IMPLEMENTATION)
                continue
            item = self.next_item(checkpoint)
            if item is None:
                break
            self._implement_item(checkpoint, item)
        return self._complete_phase(PhaseId.PHASE3_IMPLEMENTATION)

    def _implement_item(self, checkpoint: Checkpoint, item: WorkItem) -> None:
        """
        Implement one item in checkpointed sub-units.

        Each sub-unit is one agent call and one checkpoint write. If the
        item's cost for this pass crosses approaching_ratio of the
        per-agent ceiling before it is done, the item is closed as
        partially complete (flagged) and the remaining sub-units become a
        new item that depends on it.
        """
        if not item.is_scored:
            self.analyzer.score_item(item)
        try:
            units = self.plan_sub_units(item)
        except ResourceCeilingExceeded as e:
            self._log("scheduling_refused", {
                "item_id": item.id,
                "estimate": e.estimate,
                "ceiling": e.ceiling,
                "reason": str(e),
            }, level="warn")
            self._decompose_item(item, PhaseId.PHASE3_IMPLEMENTATION)
            return

        resuming = checkpoint.work_progress.in_progress_item == item.id and 0 < item.units_done < item.units_planned

        def start(cp: Checkpoint) -> None:
            current = cp.work_items[item.id]
            current.complexity_score = item.complexity_score
            current.complexity_category = item.complexity_category
            current.estimated_resource = item.estimated_resource
            if not resuming:
                current.begin_pass(units)
            cp.work_progress.start(item.id)

        checkpoint = self.store.mutate(start)
        current = checkpoint.work_items[item.id]
        self._log("item_started", {
            "item_id": item.id,
            "units": current.units_planned,
            "resuming": resuming,
        })

        cap = self.config.budget.approaching_ratio * self.config.budget.per_agent_ceiling
        while current.units_done < current.units_planned:
            unit = current.units_done + 1
            payload: dict[str, Any] = {
                "project": self.project,
                "item": current.to_dict(),
                "unit": unit,
                "units": current.units_planned,
            }
            history = checkpoint.verification.failure_history
            if current.kind == ItemKind.BUG and history:
                payload["last_failure"] = history[-1].to_dict()

            result, invocation = self._invoke(
                PhaseCapability.IMPLEMENTATION, PhaseId.PHASE3_IMPLEMENTATION, payload, item_id=item.id
            )
            finished = result.output.get("done") is True or unit >= current.units_planned
            commits = int(result.output.get("commits", 1) or 0)
            crossed = not finished and current.pass_cost + result.cost > cap

            remainder: Optional[WorkItem] = None
            if crossed:
                remainder = self._remainder_of(current, current.units_planned - unit)

            def apply(cp: Checkpoint) -> None:
                self._apply_invocation(cp, invocation, result, CODE_ARTIFACT)
                it = cp.work_items[item.id]
                it.units_done = unit
                it.pass_cost += result.cost
                it.actual_resource = (it.actual_resource or 0) + result.cost
                it.commit_count += commits
                if finished or crossed:
                    it.state = ItemState.CLOSED
                    cp.upsert_item(it)
                if remainder is not None:
                    cp.work_progress.flag(it.id)
                    cp.upsert_item(remainder)
                    for other in cp.work_items.values():
                        if it.id in other.depends_on and other.id != remainder.id:
                            other.depends_on.append(remainder.id)

            checkpoint = self.store.mutate(apply)
            current = checkpoint.work_items[item.id]

            if finished:
                self.tracker.close_item(
                    item.id, f"Implemented in {unit} sub-unit(s), {current.pass_cost:,} tokens"
                )
                self._log("item_completed", {
                    "item_id": item.id,
                    "actual_resource": current.actual_resource,
                    "estimated_resource": current.estimated_resource,
                })
                return
            if remainder is not None:
                self.tracker.close_item(
                    item.id,
                    f"Partially completed ({unit}/{current.units_planned} sub-units); "
                    f"remainder continues in #{remainder.id}",
                )
                self._log("item_split_mid_pass", {
                    "item_id": item.id,
                    "pass_cost": current.pass_cost,
                    "cap": int(cap),
                    "remainder_id": remainder.id,
                }, level="warn")
                return
            if checkpoint.resource_tracking.threshold_exceeded:
                return

    def _remainder_of(self, item: WorkItem, remaining_units: int) -> WorkItem:
        """Create the dependent item that carries an interrupted item's remaining work."""
        fraction = remaining_units / max(item.units_planned, 1)
        title = f"Remainder of #{item.id}: {item.title}"
        body = f"Continues #{item.id} after it reached the per-item resource cap."
        remainder_id = self.tracker.create_item(title, body, self._labels(item.kind))
        remainder = WorkItem(
            id=remainder_id,
            title=title,
            body=body,
            kind=item.kind,
            priority=item.priority,
            depends_on=[item.id],
            parent_id=item.id,
            files_estimate=max(1, math.ceil(item.files_estimate * fraction)),
            loc_estimate=math.ceil(item.loc_estimate * fraction),
            dependency_count=item.dependency_count,
        )
        return self.analyzer.score_item(remainder)

    def _run_qa(self) -> Checkpoint:
        """Run QA; any bugs it reports send the run back to implementation."""
        phase = PhaseId.PHASE4_QA
        checkpoint = self._load()

        if has_artifact(checkpoint, QA_REPORT_ARTIFACT):
            # Already reported; only open bugs remain, so go fix them.
            def back(cp: Checkpoint) -> None:
                self._return_to(cp, PhaseId.PHASE3_IMPLEMENTATION)

            self._log("qa_bugs_open", {"phase": phase.name})
            return self.store.mutate(back)

        closed = [
            item.to_dict() for item in checkpoint.work_items.values()
            if item.state == ItemState.CLOSED
        ]
        result, invocation = self._invoke(
            PhaseCapability.QA, phase, {"project": self.project, "items": closed}
        )

        bugs: list[WorkItem] = []
        for raw in result.output.get("bugs") or []:
            bug = self._item_from_output(raw, ItemKind.BUG)
            bug.kind = ItemKind.BUG
            bug.id = self.tracker.create_item(bug.title, bug.body, self._labels(ItemKind.BUG))
            bugs.append(self.analyzer.score_item(bug))

        def apply(cp: Checkpoint) -> None:
            self._apply_invocation(cp, invocation, result, QA_REPORT_ARTIFACT)
            for bug in bugs:
                cp.upsert_item(bug)
            if cp.phase.current != phase:
                return
            if phase_predicate_holds(phase, cp):
                self._advance(cp, phase)
            elif has_artifact(cp, QA_REPORT_ARTIFACT):
                self._return_to(cp, PhaseId.PHASE3_IMPLEMENTATION)

        checkpoint = self.store.mutate(apply)
        self._log("qa_completed", {"bugs": [b.id for b in bugs]})
        if checkpoint.phase.current == phase:
            raise ExternalCapabilityFailure("qa produced no report", source="agent")
        return checkpoint

    def _run_verification(self) -> Checkpoint:
        """
        One verification attempt.

        The attempt count recorded in the checkpoint is the number of
        attempts that have returned; it becomes N when attempt N's result
        is written, returns to 0 on a pass and never exceeds max_attempts.
        """
        phase = PhaseId.PHASE5_VERIFICATION
        checkpoint = self._load()
        v = checkpoint.verification
        if v.attempt_count >= v.max_attempts:
            raise InvalidTransition(
                f"Verification already used {v.attempt_count} of {v.max_attempts} attempts"
            )
        attempt = v.attempt_count + 1

        result, invocation = self._invoke(PhaseCapability.VERIFICATION, phase, {
            "project": self.project,
            "attempt": attempt,
            "max_attempts": v.max_attempts,
            "quarantined_tests": list(v.quarantined_tests),
            "coverage_target": self.config.verification.coverage_target,
        })
        outcome = VerificationOutcome.from_output(result.output)
        decision = self.gate.evaluate(outcome, v)
        diverging = not decision.passed and attempt >= v.max_attempts

        failing_ids = sorted(
            {i for i in outcome.failing_items if i in checkpoint.work_items},
            key=item_sort_key,
        )
        new_bug: Optional[WorkItem] = None
        if not decision.passed and not diverging:
            for item_id in failing_ids:
                if checkpoint.work_items[item_id].state == ItemState.CLOSED:
                    self.tracker.reopen_item(item_id)
                self.tracker.comment(item_id, f"Verification attempt {attempt} failed: {decision.reason}")
            if not failing_ids:
                body = decision.reason
                if decision.failed_tests:
                    body += "\n\nFailing tests:\n" + "\n".join(f"- {t}" for t in decision.failed_tests)
                new_bug = WorkItem(
                    id="",
                    title=f"Fix verification failure (attempt {attempt})",
                    body=body,
                    kind=ItemKind.BUG,
                    priority=Priority.HIGH,
                )
                new_bug.id = self.tracker.create_item(new_bug.title, body, self._labels(ItemKind.BUG))
                self.analyzer.score_item(new_bug)

        def apply(cp: Checkpoint) -> None:
            self._apply_invocation(cp, invocation, result)
            vs = cp.verification
            vs.attempt_count = attempt
            vs.total_attempts += 1
            vs.last_attempt_at = utc_now()
            for test in decision.newly_quarantined:
                if test not in vs.quarantined_tests:
                    vs.quarantined_tests.append(test)
            if decision.disclosed_gap and decision.disclosed_gap not in vs.disclosed_gaps:
                vs.disclosed_gaps.append(decision.disclosed_gap)

            if decision.passed:
                vs.passed = True
                vs.attempt_count = 0
                self._advance(cp, phase)
                return

            vs.failure_history.append(FailureRecord(
                message=decision.reason,
                timestamp=utc_now(),
                failed_tests=list(decision.failed_tests),
                coverage=outcome.coverage,
                failing_items=failing_ids,
            ))
            if diverging:
                cp.phase = PhaseState(
                    current=PhaseId.DIVERGENCE,
                    status=PhaseStatus.DIVERGENCE,
                    started_at=self._now(),
                )
                cp.pending_approval = PendingApproval(
                    kind="divergence",
                    phase=phase.name,
                    reason=f"Verification failed {attempt} of {vs.max_attempts} attempts",
                    options=list(DIVERGENCE_OPTIONS),
                )
                return

            for item_id in failing_ids:
                it = cp.work_items[item_id]
                it.state = ItemState.OPEN
                it.kind = ItemKind.BUG
                cp.work_progress.reopen(item_id)
            if new_bug is not None:
                cp.upsert_item(new_bug)
            self._return_to(cp, PhaseId.PHASE3_IMPLEMENTATION)

        checkpoint = self.store.mutate(apply)

        if decision.passed:
            self._log("verification_passed", {
                "attempt": attempt,
                "quarantined": decision.newly_quarantined,
                "disclosed_gap": decision.disclosed_gap,
            })
            return checkpoint

        if diverging:
            report = divergence_report(checkpoint)
            path = write_report(self.config, self.project, "divergence", report)
            self._log("verification_divergence", {
                "attempt_count": attempt,
                "report": str(path),
            }, level="error")
            raise VerificationDivergence(
                f"Verification failed on all {attempt} attempts for '{self.project}'",
                attempt_count=attempt,
                report=report,
            )

        self._log("verification_failed", {
            "attempt": attempt,
            "reason": decision.reason,
            "reopened": failing_ids,
            "new_bug": new_bug.id if new_bug else None,
        }, level="warn")
        return checkpoint

    def _run_learning(self) -> Checkpoint:
        """Record the finished project for the threshold optimizer."""
        phase = PhaseId.PHASE6_LEARNING
        checkpoint = self._load()
        result, invocation = self._invoke(PhaseCapability.LEARNING, phase, {
            "project": self.project,
            "record": project_record_from(checkpoint).to_dict(),
        })

        outcome = "divergence" if checkpoint.verification.manually_accepted else "complete"
        self.history.append(project_record_from(checkpoint, outcome))
        path = write_report(self.config, self.project, "completion", completion_report(checkpoint))

        def apply(cp: Checkpoint) -> None:
            self._apply_invocation(cp, invocation, result, LEARNING_ARTIFACT)
            cp.add_artifact(f"{PROJECT_RECORD_ARTIFACT}:{self.project}")
            if cp.phase.current == phase and phase_predicate_holds(phase, cp):
                self._advance(cp, phase)

        checkpoint = self.store.mutate(apply)
        self._log("project_recorded", {"outcome": outcome, "report": str(path)})
        return self._finish_unit(checkpoint, phase, "project record was not written")

    # Approval Resolution

    def _resolve_divergence(self, checkpoint: Checkpoint, decision: str) -> Checkpoint:
        v = checkpoint.verification
        last = v.failure_history[-1] if v.failure_history else None
        dropped = [i for i in (last.failing_items if last else []) if i in checkpoint.work_items]

        if decision == "narrow_scope":
            for item_id in dropped:
                self.tracker.comment(item_id, "Dropped from scope after verification divergence")

        def apply(cp: Checkpoint) -> None:
            vs = cp.verification
            attempts = vs.attempt_count
            cp.pending_approval = None
            vs.attempt_count = 0

            if decision == "manual":
                vs.passed = True
                vs.manually_accepted = True
                vs.disclosed_gaps.append(
                    f"Verification manually accepted after {attempts} failed attempts"
                )
                cp.mark_phase_completed(PhaseId.PHASE5_VERIFICATION)
                cp.phase = PhaseState(current=PhaseId.PHASE6_LEARNING, status=PhaseStatus.NOT_STARTED)
                return

            if decision == "narrow_scope":
                tests = list(last.failed_tests) if last else []
                for test in tests:
                    if test not in vs.quarantined_tests:
                        vs.quarantined_tests.append(test)
                for item_id in dropped:
                    cp.work_progress.flag(item_id)
                vs.disclosed_gaps.append(
                    "Scope narrowed after verification divergence: dropped items "
                    f"{', '.join('#' + i for i in dropped) or 'none'}; "
                    f"excluded tests {', '.join(tests) or 'none'}"
                )
            else:
                vs.disclosed_gaps.append(
                    f"Verification restarted after threshold change ({attempts} failed attempts)"
                )
            vs.failure_history = []
            cp.phase = PhaseState(current=PhaseId.PHASE5_VERIFICATION, status=PhaseStatus.NOT_STARTED)

        return self.store.mutate(apply)

    def _resolve_time_budget(self, checkpoint: Checkpoint, decision: str) -> Checkpoint:
        phase = checkpoint.phase.current
        budget = self.config.phases.minutes_for(phase.name)

        descoped: list[str] = []
        if decision == "reduce_scope" and phase == PhaseId.PHASE3_IMPLEMENTATION:
            candidates = [
                i for i in checkpoint.open_work_items()
                if i.id != checkpoint.work_progress.in_progress_item
            ]
            if candidates:
                lowest = min(i.priority.rank for i in candidates)
                descoped = [i.id for i in candidates if i.priority.rank == lowest]
                if len(descoped) == len(checkpoint.work_progress.open_items):
                    descoped = []
            for item_id in descoped:
                self.tracker.close_item(item_id, "Descoped after the phase time budget was exceeded")

        def apply(cp: Checkpoint) -> None:
            cp.pending_approval = None
            if decision == "proceed":
                cp.phase_extensions[phase.name] = NO_TIME_LIMIT
                return
            current = cp.phase_extensions.get(phase.name, 0)
            if current != NO_TIME_LIMIT:
                cp.phase_extensions[phase.name] = current + budget
            for item_id in descoped:
                item = cp.work_items[item_id]
                item.state = ItemState.CLOSED
                cp.upsert_item(item)
                cp.work_progress.flag(item_id)

        if descoped:
            self._log("items_descoped", {"items": descoped}, level="warn")
        return self.store.mutate(apply)

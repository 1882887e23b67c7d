"""
Resume handling for autobuild.

This module handles:
- Telling a new project apart from one with a checkpoint
- Reconciling recorded item progress against the live tracker
- Re-evaluating phase predicates to pick the phase to re-enter
- Starting a fresh run and a fresh resource session

The tracker is ground truth for item state. Agents close and open items
as a side effect of their work, and a run may have been interrupted
between a checkpoint write and the matching tracker update, so every
resume rewrites work_progress to match the tracker before any phase
decision is made.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from autobuild.complexity import ComplexityAnalyzer
from autobuild.errors import CorruptState, InvalidTransition
from autobuild.history import HistoryStore
from autobuild.models import (
    Checkpoint,
    ItemKind,
    ItemState,
    PhaseId,
    PhaseState,
    PhaseStatus,
    ProjectIdentity,
    ReconciliationResult,
    ResumptionPoint,
    WorkItem,
    item_sort_key,
)
from autobuild.reports import reconciliation_report, write_report
from autobuild.state_machine import phase_predicate_holds, project_label, project_record_from

if TYPE_CHECKING:
    from autobuild.checkpoint_store import CheckpointStore
    from autobuild.config import BuildConfig
    from autobuild.logger import BuildLogger
    from autobuild.tracker import ItemSummary, WorkItemTracker


# Phases that assume implementation is finished.
_POST_IMPLEMENTATION = (
    PhaseId.PHASE4_QA,
    PhaseId.PHASE5_VERIFICATION,
    PhaseId.PHASE6_LEARNING,
)


def generate_session_id() -> str:
    """Generate a unique resource session ID."""
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
    return f"sess_{timestamp}"


def compute_reconciliation(checkpoint: Checkpoint, summaries: list[ItemSummary]) -> ReconciliationResult:
    """
    Diff recorded progress against the tracker.

    Items the tracker reports that the checkpoint has never seen count as
    newly closed or newly opened; recorded items the tracker no longer
    reports count as removed.
    """
    progress = checkpoint.work_progress
    tracker_closed = {s.id for s in summaries if s.state == ItemState.CLOSED}
    tracker_open = {s.id for s in summaries if s.state == ItemState.OPEN}
    recorded = progress.completed_items | progress.open_items

    in_progress = progress.in_progress_item
    cleared = in_progress if in_progress is not None and in_progress not in tracker_open else None

    return ReconciliationResult(
        newly_closed=sorted(tracker_closed - progress.completed_items, key=item_sort_key),
        newly_opened=sorted(tracker_open - progress.open_items, key=item_sort_key),
        removed=sorted(recorded - tracker_closed - tracker_open, key=item_sort_key),
        cleared_in_progress=cleared,
    )


class ResumeController:
    """
    Loads a project's checkpoint and prepares it for the state machine.

    Usage:
        controller = ResumeController(config, store, tracker, logger)
        point = controller.resume()
        if point.is_new:
            controller.start_new(ProjectIdentity(name="x", request="..."))
        PhaseStateMachine(config, store, tracker, agent, logger).run()
    """

    def __init__(
        self,
        config: BuildConfig,
        store: CheckpointStore,
        tracker: WorkItemTracker,
        logger: Optional[BuildLogger] = None,
        history: Optional[HistoryStore] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.tracker = tracker
        self._logger = logger
        self.history = history or HistoryStore(config.history_path, logger)
        self.analyzer = ComplexityAnalyzer(config.complexity, logger=logger)

    @property
    def project(self) -> str:
        return self.store.project

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            log_data = {"component": "resume"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def resume(self, new_session: bool = False) -> ResumptionPoint:
        """
        Reconcile the checkpoint and decide where to re-enter.

        Args:
            new_session: Start a fresh gating resource budget. Without it
                the run continues in the session it was suspended in.

        Returns:
            ResumptionPoint with is_new=True when no checkpoint exists.

        Raises:
            CorruptState: If the checkpoint cannot be parsed.
            ExternalCapabilityFailure: If the tracker cannot be queried.
        """
        checkpoint = self.store.load()
        if checkpoint is None:
            self._log("resume_new_project")
            return ResumptionPoint(is_new=True)

        summaries = self.tracker.list_items(labels=[project_label(self.config, self.project)])
        result = compute_reconciliation(checkpoint, summaries)
        by_id = {s.id: s for s in summaries}
        session_id = generate_session_id() if new_session else None
        recorded_phase = checkpoint.phase.current

        def apply(cp: Checkpoint) -> None:
            self._apply_reconciliation(cp, result, by_id)
            self._choose_phase(cp)
            if session_id:
                cp.resource_tracking.start_session(session_id)

        checkpoint = self.store.mutate(apply)

        if result.has_changes:
            path = write_report(
                self.config, self.project, "reconciliation",
                reconciliation_report(self.project, result),
            )
            self._log("reconciliation_delta", {
                **result.to_dict(),
                "report": str(path),
            }, level="warn")
        if checkpoint.phase.current != recorded_phase:
            self._log("resume_phase_changed", {
                "recorded": recorded_phase.name,
                "resuming": checkpoint.phase.current.name,
            })
        if session_id:
            self._log("session_started", {"session_id": session_id})

        phase = checkpoint.phase.current
        point = ResumptionPoint(
            phase=phase,
            item_id=(
                checkpoint.work_progress.in_progress_item
                if phase == PhaseId.PHASE3_IMPLEMENTATION else None
            ),
            verification_attempt=(
                checkpoint.verification.attempt_count + 1
                if phase == PhaseId.PHASE5_VERIFICATION else None
            ),
            reconciliation=result,
            awaiting_approval=checkpoint.pending_approval is not None,
        )
        self._log("resume_point", {
            "phase": phase.name,
            "item_id": point.item_id,
            "verification_attempt": point.verification_attempt,
        })
        return point

    def _item_from_summary(self, summary: ItemSummary) -> WorkItem:
        """
        Record an item first seen in the tracker.

        Its shape is unknown, so it is scored as a minimal item and marked
        unestimated; definition and decomposition replace the placeholder
        when they re-run.
        """
        item = WorkItem(
            id=summary.id,
            title=summary.title,
            body=summary.body,
            kind=ItemKind.BUG if "bug" in summary.labels else ItemKind.FEATURE,
            state=summary.state,
            estimated=False,
        )
        return self.analyzer.score_item(item)

    def _apply_reconciliation(
        self,
        checkpoint: Checkpoint,
        result: ReconciliationResult,
        summaries: dict[str, ItemSummary],
    ) -> None:
        """Rewrite work_progress to match the tracker. Safe to replay."""
        progress = checkpoint.work_progress

        for item_id in result.newly_closed:
            item = checkpoint.work_items.get(item_id) or self._item_from_summary(summaries[item_id])
            item.state = ItemState.CLOSED
            checkpoint.upsert_item(item)

        for item_id in result.newly_opened:
            item = checkpoint.work_items.get(item_id) or self._item_from_summary(summaries[item_id])
            item.state = ItemState.OPEN
            progress.reopen(item_id)
            checkpoint.upsert_item(item)

        for item_id in result.removed:
            progress.remove(item_id)
            checkpoint.work_items.pop(item_id, None)

        if progress.in_progress_item is not None and progress.in_progress_item not in progress.open_items:
            progress.in_progress_item = None

    def _choose_phase(self, checkpoint: Checkpoint) -> None:
        """
        Pick the phase to re-enter from predicates, not from the record.

        Open items after implementation send the run back to PHASE3.
        Then every phase whose predicate already holds is skipped.
        A run waiting on an approval is left where it is.
        """
        if checkpoint.pending_approval is not None or checkpoint.phase.current.is_terminal:
            return

        if checkpoint.phase.current in _POST_IMPLEMENTATION and checkpoint.work_progress.open_items:
            checkpoint.phase = PhaseState(
                current=PhaseId.PHASE3_IMPLEMENTATION,
                status=PhaseStatus.NOT_STARTED,
            )
            checkpoint.verification.passed = False

        while (
            not checkpoint.phase.current.is_terminal
            and phase_predicate_holds(checkpoint.phase.current, checkpoint)
        ):
            completed = checkpoint.phase.current
            checkpoint.mark_phase_completed(completed)
            checkpoint.phase = PhaseState(current=completed.next(), status=PhaseStatus.NOT_STARTED)

    def start_new(self, identity: ProjectIdentity, force: bool = False) -> Checkpoint:
        """
        Initialize a checkpoint and begin a new resource session.

        An unfinished run (any phase other than DONE) is treated as in
        progress and is only replaced with force=True; the replaced run is
        recorded in history as abandoned.

        Raises:
            InvalidTransition: If an unfinished run exists and force is False.
            CorruptState: If the existing checkpoint cannot be parsed.
        """
        existing: Optional[Checkpoint] = None
        try:
            existing = self.store.load()
        except CorruptState:
            if not force:
                raise
            self._log("corrupt_checkpoint_replaced", level="warn")

        if existing is not None and existing.phase.current != PhaseId.DONE:
            if not force:
                raise InvalidTransition(
                    f"'{identity.name}' has a run in progress "
                    f"({existing.phase.name}, {existing.phase.status.name.lower()}); "
                    "resume it or start over with force"
                )
            self.history.append(project_record_from(existing, outcome="abandoned"))
            self._log("run_abandoned", {"phase": existing.phase.current.name}, level="warn")

        self.store.initialize(identity, overwrite=True)
        session_id = generate_session_id()
        checkpoint = self.store.mutate(lambda cp: cp.resource_tracking.start_session(session_id))
        self._log("project_started", {
            "request_length": len(identity.request),
            "session_id": session_id,
        })
        return checkpoint

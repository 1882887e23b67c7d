"""
Core data models for autobuild.

This module defines the structures shared by every component:
- Enums for phases, phase status, work item kind/priority/state,
  complexity categories and recommendation confidence
- The Checkpoint document and its sections
- WorkItem / WorkItemEstimate for scheduling and scoring
- ProjectRecord / ThresholdRecommendation for the optimizer
- JSON serialization support for all models
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any, Optional


CURRENT_SCHEMA_VERSION = 2


def utc_now() -> str:
    """Current UTC time as an ISO string with a Z suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse a timestamp written by utc_now()."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def item_sort_key(item_id: str) -> tuple[int, int, str]:
    """Sort numeric tracker ids numerically and everything else after, by text."""
    if item_id.isdigit():
        return (0, int(item_id), "")
    return (1, 0, item_id)


class PhaseId(Enum):
    """
    Phases of a build, in execution order.

    DONE is the success terminal. DIVERGENCE is reachable only from
    PHASE5_VERIFICATION and needs an operator decision to leave.
    """
    PHASE0_INFRA = auto()               # Repository and tooling scaffold
    PHASE1_DEFINITION = auto()          # PRD and work items
    PHASE1_5_DECOMPOSITION = auto()     # Split Complex items
    PHASE2_ARCHITECTURE = auto()        # Architecture document
    PHASE3_IMPLEMENTATION = auto()      # Item-by-item implementation
    PHASE4_QA = auto()                  # QA pass, may open bugs
    PHASE5_VERIFICATION = auto()        # Bounded verification loop
    PHASE6_LEARNING = auto()            # Record the project for the optimizer

    DONE = auto()
    DIVERGENCE = auto()

    @property
    def display_name(self) -> str:
        return PHASE_NAMES[self]

    @property
    def is_terminal(self) -> bool:
        return self in (PhaseId.DONE, PhaseId.DIVERGENCE)

    def next(self) -> PhaseId:
        """The phase that follows on success."""
        if self.is_terminal:
            return self
        return PHASE_ORDER[PHASE_ORDER.index(self) + 1]


PHASE_ORDER: list[PhaseId] = [
    PhaseId.PHASE0_INFRA,
    PhaseId.PHASE1_DEFINITION,
    PhaseId.PHASE1_5_DECOMPOSITION,
    PhaseId.PHASE2_ARCHITECTURE,
    PhaseId.PHASE3_IMPLEMENTATION,
    PhaseId.PHASE4_QA,
    PhaseId.PHASE5_VERIFICATION,
    PhaseId.PHASE6_LEARNING,
    PhaseId.DONE,
]

PHASE_NAMES: dict[PhaseId, str] = {
    PhaseId.PHASE0_INFRA: "Infrastructure",
    PhaseId.PHASE1_DEFINITION: "Product Definition",
    PhaseId.PHASE1_5_DECOMPOSITION: "Decomposition",
    PhaseId.PHASE2_ARCHITECTURE: "Architecture",
    PhaseId.PHASE3_IMPLEMENTATION: "Implementation",
    PhaseId.PHASE4_QA: "Quality Assurance",
    PhaseId.PHASE5_VERIFICATION: "Verification",
    PhaseId.PHASE6_LEARNING: "Learning",
    PhaseId.DONE: "Done",
    PhaseId.DIVERGENCE: "Divergence",
}


class PhaseStatus(Enum):
    """Status of the current phase."""
    NOT_STARTED = auto()
    IN_PROGRESS = auto()
    COMPLETE = auto()
    DIVERGENCE = auto()


class ItemKind(Enum):
    """What a work item represents."""
    FEATURE = auto()
    BUG = auto()


class Priority(Enum):
    """Work item priority. Higher rank is scheduled first."""
    CRITICAL = 4
    HIGH = 3
    MEDIUM = 2
    LOW = 1

    @property
    def rank(self) -> int:
        return self.value


class ItemState(Enum):
    """Tracker state of a work item."""
    OPEN = auto()
    CLOSED = auto()


class Category(Enum):
    """Complexity category derived from a score."""
    SIMPLE = auto()
    MEDIUM = auto()
    COMPLEX = auto()


class Confidence(Enum):
    """Confidence of a threshold recommendation."""
    HIGH = auto()
    MEDIUM = auto()
    LOW = auto()


def _enum_or_none(enum_cls: type[Enum], value: Optional[str]) -> Optional[Any]:
    return enum_cls[value] if value is not None else None


@dataclass
class ProjectIdentity:
    """Who this checkpoint belongs to."""
    name: str                        # Project slug
    request: str = ""                # Original request text
    started_at: str = ""             # ISO timestamp
    last_updated: str = ""           # ISO timestamp, stamped on every write

    def __post_init__(self) -> None:
        now = utc_now()
        if not self.started_at:
            self.started_at = now
        if not self.last_updated:
            self.last_updated = now

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectIdentity:
        return cls(**data)


@dataclass
class PhaseState:
    """The phase the run is in."""
    current: PhaseId = PhaseId.PHASE0_INFRA
    status: PhaseStatus = PhaseStatus.NOT_STARTED
    started_at: Optional[str] = None

    @property
    def name(self) -> str:
        return self.current.display_name

    def to_dict(self) -> dict[str, Any]:
        return {
            "current": self.current.name,
            "name": self.name,
            "started_at": self.started_at,
            "status": self.status.name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseState:
        return cls(
            current=PhaseId[data["current"]],
            status=PhaseStatus[data.get("status", "NOT_STARTED")],
            started_at=data.get("started_at"),
        )


@dataclass
class WorkProgress:
    """
    Recorded item progress.

    Invariants: completed and open never intersect; in_progress_item is
    either None or one of the open items. Every mutator uses set semantics
    so replaying it after a crash cannot double-count.
    """
    total_items: int = 0
    completed_items: set[str] = field(default_factory=set)
    in_progress_item: Optional[str] = None
    open_items: set[str] = field(default_factory=set)
    flagged_items: set[str] = field(default_factory=set)

    def _recount(self) -> None:
        self.total_items = len(self.completed_items | self.open_items)

    def add_open(self, item_id: str) -> None:
        """Record an item as open (no-op if already completed)."""
        if item_id not in self.completed_items:
            self.open_items.add(item_id)
        self._recount()

    def start(self, item_id: str) -> None:
        """Mark an open item as the one being worked on."""
        if item_id not in self.open_items:
            raise ValueError(f"Item {item_id} is not open")
        self.in_progress_item = item_id

    def complete(self, item_id: str) -> None:
        """Move an item to completed."""
        self.completed_items.add(item_id)
        self.open_items.discard(item_id)
        if self.in_progress_item == item_id:
            self.in_progress_item = None
        self._recount()

    def reopen(self, item_id: str) -> None:
        """Move a completed item back to open."""
        self.completed_items.discard(item_id)
        self.open_items.add(item_id)
        self._recount()

    def remove(self, item_id: str) -> None:
        """Forget an item entirely (deleted externally or dropped from scope)."""
        self.completed_items.discard(item_id)
        self.open_items.discard(item_id)
        self.flagged_items.discard(item_id)
        if self.in_progress_item == item_id:
            self.in_progress_item = None
        self._recount()

    def flag(self, item_id: str) -> None:
        self.flagged_items.add(item_id)

    def check_invariants(self) -> None:
        """Raise ValueError if the recorded sets are inconsistent."""
        overlap = self.completed_items & self.open_items
        if overlap:
            raise ValueError(f"Items both completed and open: {sorted(overlap, key=item_sort_key)}")
        if self.in_progress_item is not None and self.in_progress_item not in self.open_items:
            raise ValueError(f"In-progress item {self.in_progress_item} is not open")

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_items": self.total_items,
            "completed_items": sorted(self.completed_items, key=item_sort_key),
            "in_progress_item": self.in_progress_item,
            "open_items": sorted(self.open_items, key=item_sort_key),
            "flagged_items": sorted(self.flagged_items, key=item_sort_key),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkProgress:
        return cls(
            total_items=data.get("total_items", 0),
            completed_items=set(data.get("completed_items", [])),
            in_progress_item=data.get("in_progress_item"),
            open_items=set(data.get("open_items", [])),
            flagged_items=set(data.get("flagged_items", [])),
        )


@dataclass
class ResourceTracking:
    """
    Resource (context token) usage.

    `used` gates scheduling and is scoped to one session: it only grows
    within a session and is reset when a new session starts, never on a
    resume in place. `cumulative_used` is a lifetime metric that never gates.
    """
    budget: int = 200_000
    used: int = 0
    last_unit_cost: int = 0
    threshold_exceeded: bool = False
    approaching_ratio: float = 0.75
    session_id: Optional[str] = None
    cumulative_used: int = 0

    @property
    def approaching_limit(self) -> bool:
        """True exactly when used / budget exceeds the approaching ratio."""
        if self.budget <= 0:
            return self.used > 0
        return self.used / self.budget > self.approaching_ratio

    def track(self, cost: int) -> None:
        """Add one unit of work's cost."""
        if cost < 0:
            raise ValueError("Resource cost cannot be negative")
        self.used += cost
        self.cumulative_used += cost
        self.last_unit_cost = cost
        self.threshold_exceeded = self.approaching_limit

    def start_session(self, session_id: str) -> None:
        """Begin a fresh gating budget."""
        self.session_id = session_id
        self.used = 0
        self.last_unit_cost = 0
        self.threshold_exceeded = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["approaching_limit"] = self.approaching_limit
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResourceTracking:
        data = {k: v for k, v in data.items() if k != "approaching_limit"}
        return cls(**data)


@dataclass
class FailureRecord:
    """One failed verification attempt."""
    message: str
    timestamp: str
    failed_tests: list[str] = field(default_factory=list)
    coverage: Optional[float] = None
    failing_items: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FailureRecord:
        return cls(**data)


@dataclass
class VerificationState:
    """
    Bounded verification loop state.

    attempt_count is 0 until the first verification, never exceeds
    max_attempts, and returns to 0 after a pass. total_attempts counts
    every attempt over the project's life and is never reset.
    """
    attempt_count: int = 0
    max_attempts: int = 3
    total_attempts: int = 0
    last_attempt_at: Optional[str] = None
    failure_history: list[FailureRecord] = field(default_factory=list)
    quarantined_tests: list[str] = field(default_factory=list)
    disclosed_gaps: list[str] = field(default_factory=list)
    passed: bool = False
    manually_accepted: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["failure_history"] = [f.to_dict() for f in self.failure_history]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VerificationState:
        data = data.copy()
        data["failure_history"] = [
            FailureRecord.from_dict(f) for f in data.get("failure_history", [])
        ]
        return cls(**data)


@dataclass
class AgentInvocation:
    """One completed call into an agent capability."""
    capability: str
    phase: str
    status: str                      # "success" or "failed"
    started_at: str
    completed_at: Optional[str] = None
    item_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentInvocation:
        return cls(**data)


@dataclass
class WorkItemEstimate:
    """
    The estimated shape of a unit of work.

    `blocked_by` holds indices of sibling estimates (within one
    decomposition) that must be finished first.
    """
    title: str
    files_estimate: int = 1
    loc_estimate: int = 0
    dependency_count: int = 0
    blocked_by: list[int] = field(default_factory=list)
    body: str = ""

    def __post_init__(self) -> None:
        if self.files_estimate < 0 or self.loc_estimate < 0 or self.dependency_count < 0:
            raise ValueError(f"Estimate for '{self.title}' has negative dimensions")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkItemEstimate:
        return cls(**data)


@dataclass
class WorkItem:
    """A schedulable unit of work (feature or defect)."""
    id: str
    title: str
    kind: ItemKind = ItemKind.FEATURE
    priority: Priority = Priority.MEDIUM
    state: ItemState = ItemState.OPEN
    complexity_score: Optional[int] = None
    complexity_category: Optional[Category] = None
    estimated_resource: Optional[int] = None
    actual_resource: Optional[int] = None
    depends_on: list[str] = field(default_factory=list)
    parent_id: Optional[str] = None
    files_estimate: int = 1
    loc_estimate: int = 0
    dependency_count: int = 0
    required_split: bool = False
    commit_count: int = 0
    artifact: Optional[str] = None
    body: str = ""
    units_planned: int = 1           # Checkpointed sub-units for this pass
    units_done: int = 0
    pass_cost: int = 0               # Cost spent on the current pass only
    estimated: bool = True           # False until an agent has estimated the item
    planned_children: list[WorkItemEstimate] = field(default_factory=list)

    @property
    def is_scored(self) -> bool:
        return self.complexity_score is not None and self.complexity_category is not None

    def to_estimate(self) -> WorkItemEstimate:
        return WorkItemEstimate(
            title=self.title,
            files_estimate=self.files_estimate,
            loc_estimate=self.loc_estimate,
            dependency_count=self.dependency_count,
            body=self.body,
        )

    def begin_pass(self, units: int) -> None:
        """Reset per-pass progress before (re)implementing the item."""
        self.units_planned = units
        self.units_done = 0
        self.pass_cost = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.name
        data["priority"] = self.priority.name
        data["state"] = self.state.name
        data["complexity_category"] = (
            self.complexity_category.name if self.complexity_category else None
        )
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkItem:
        data = data.copy()
        data["kind"] = ItemKind[data.get("kind", "FEATURE")]
        data["priority"] = Priority[data.get("priority", "MEDIUM")]
        data["state"] = ItemState[data.get("state", "OPEN")]
        data["complexity_category"] = _enum_or_none(Category, data.get("complexity_category"))
        data["planned_children"] = [
            WorkItemEstimate.from_dict(c) for c in data.get("planned_children") or []
        ]
        return cls(**data)


@dataclass
class PendingApproval:
    """A hard stop waiting on an operator decision."""
    kind: str                        # "time_budget" or "divergence"
    phase: str
    reason: str
    options: list[str] = field(default_factory=list)
    requested_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingApproval:
        return cls(**data)


@dataclass
class Checkpoint:
    """
    The single source of truth for an in-progress run.

    Persisted to .autobuild/state/<project>.json. Only CheckpointStore
    writes it, and only through mutate().
    """
    project: ProjectIdentity
    version: int = CURRENT_SCHEMA_VERSION
    phase: PhaseState = field(default_factory=PhaseState)
    phases_completed: list[PhaseId] = field(default_factory=list)
    work_progress: WorkProgress = field(default_factory=WorkProgress)
    resource_tracking: ResourceTracking = field(default_factory=ResourceTracking)
    verification: VerificationState = field(default_factory=VerificationState)
    agent_invocations: list[AgentInvocation] = field(default_factory=list)
    artifacts: set[str] = field(default_factory=set)
    work_items: dict[str, WorkItem] = field(default_factory=dict)
    phase_extensions: dict[str, int] = field(default_factory=dict)
    pending_approval: Optional[PendingApproval] = None
    resume_hint: str = ""

    def touch(self) -> None:
        self.project.last_updated = utc_now()

    def mark_phase_completed(self, phase: PhaseId) -> None:
        """Append to phases_completed without duplicates."""
        if phase not in self.phases_completed:
            self.phases_completed.append(phase)

    def upsert_item(self, item: WorkItem) -> None:
        """Record an item and keep work_progress in step with its state."""
        self.work_items[item.id] = item
        if item.state == ItemState.CLOSED:
            self.work_progress.complete(item.id)
        else:
            self.work_progress.add_open(item.id)

    def record_invocation(self, invocation: AgentInvocation) -> None:
        self.agent_invocations.append(invocation)

    def add_artifact(self, artifact: str) -> None:
        self.artifacts.add(artifact)

    def open_work_items(self) -> list[WorkItem]:
        return [
            self.work_items[item_id]
            for item_id in sorted(self.work_progress.open_items, key=item_sort_key)
            if item_id in self.work_items
        ]

    def derive_resume_hint(self) -> str:
        """Human-readable pointer to where the run would continue."""
        phase = self.phase.current
        if self.pending_approval is not None:
            return f"Awaiting approval ({self.pending_approval.kind}) in {phase.display_name}"
        if phase == PhaseId.PHASE3_IMPLEMENTATION and self.work_progress.in_progress_item:
            return f"Implementation: continue item {self.work_progress.in_progress_item}"
        if phase == PhaseId.PHASE5_VERIFICATION:
            v = self.verification
            return f"Verification: attempt {v.attempt_count + 1} of {v.max_attempts}"
        return f"{phase.display_name}: {self.phase.status.name.lower()}"

    def check_invariants(self) -> None:
        """Raise ValueError if the document breaks a structural invariant."""
        self.work_progress.check_invariants()
        v = self.verification
        if v.attempt_count > v.max_attempts:
            raise ValueError(
                f"Verification attempt {v.attempt_count} exceeds max {v.max_attempts}"
            )
        if self.phase.current == PhaseId.DIVERGENCE and self.phase.status != PhaseStatus.DIVERGENCE:
            raise ValueError("DIVERGENCE phase must carry DIVERGENCE status")

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "project": self.project.to_dict(),
            "phase": self.phase.to_dict(),
            "phases_completed": [p.name for p in self.phases_completed],
            "work_progress": self.work_progress.to_dict(),
            "resource_tracking": self.resource_tracking.to_dict(),
            "verification": self.verification.to_dict(),
            "agent_invocations": [a.to_dict() for a in self.agent_invocations],
            "artifacts": sorted(self.artifacts),
            "work_items": {
                k: v.to_dict()
                for k, v in sorted(self.work_items.items(), key=lambda kv: item_sort_key(kv[0]))
            },
            "phase_extensions": dict(self.phase_extensions),
            "pending_approval": self.pending_approval.to_dict() if self.pending_approval else None,
            "resume_hint": self.derive_resume_hint(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        """
        Create from a dictionary, upgrading older schema versions.

        Raises:
            ValueError: If the document is from an unknown future version.
            KeyError / TypeError: If required fields are missing or malformed.
        """
        data = migrate_checkpoint_dict(data)
        pending = data.get("pending_approval")
        return cls(
            version=data["version"],
            project=ProjectIdentity.from_dict(data["project"]),
            phase=PhaseState.from_dict(data["phase"]),
            phases_completed=[PhaseId[p] for p in data.get("phases_completed", [])],
            work_progress=WorkProgress.from_dict(data.get("work_progress", {})),
            resource_tracking=ResourceTracking.from_dict(data.get("resource_tracking", {})),
            verification=VerificationState.from_dict(data.get("verification", {})),
            agent_invocations=[
                AgentInvocation.from_dict(a) for a in data.get("agent_invocations", [])
            ],
            artifacts=set(data.get("artifacts", [])),
            work_items={
                k: WorkItem.from_dict(v) for k, v in data.get("work_items", {}).items()
            },
            phase_extensions=dict(data.get("phase_extensions", {})),
            pending_approval=PendingApproval.from_dict(pending) if pending else None,
            resume_hint=data.get("resume_hint", ""),
        )


def migrate_checkpoint_dict(data: dict[str, Any]) -> dict[str, Any]:
    """
    Upgrade a raw checkpoint mapping to CURRENT_SCHEMA_VERSION.

    Version 1 documents predate work_items, phase_extensions and
    pending_approval; those are filled with empty defaults.
    """
    if not isinstance(data, dict):
        raise TypeError("Checkpoint document must be a JSON object")
    data = dict(data)
    version = data.get("version", 1)
    if not isinstance(version, int) or version < 1:
        raise ValueError(f"Invalid checkpoint version: {version!r}")
    if version > CURRENT_SCHEMA_VERSION:
        raise ValueError(
            f"Checkpoint version {version} is newer than supported ({CURRENT_SCHEMA_VERSION})"
        )
    if version == 1:
        data.setdefault("work_items", {})
        data.setdefault("phase_extensions", {})
        data.setdefault("pending_approval", None)
        version = 2
    data["version"] = version
    return data


@dataclass
class ResumptionPoint:
    """Where the state machine should re-enter."""
    phase: Optional[PhaseId] = None
    item_id: Optional[str] = None
    verification_attempt: Optional[int] = None
    is_new: bool = False
    reconciliation: Optional[ReconciliationResult] = None
    awaiting_approval: bool = False


@dataclass
class ReconciliationResult:
    """Differences between the checkpoint and the tracker, resolved for the tracker."""
    newly_closed: list[str] = field(default_factory=list)
    newly_opened: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    cleared_in_progress: Optional[str] = None

    @property
    def has_changes(self) -> bool:
        return bool(
            self.newly_closed or self.newly_opened or self.removed or self.cleared_in_progress
        )

    @property
    def delta(self) -> set[str]:
        """Every item id whose recorded state changed."""
        return set(self.newly_closed) | set(self.newly_opened) | set(self.removed)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ThresholdRecommendation:
    """An advisory change to one tunable constant. Never auto-applied."""
    parameter_name: str
    old_value: float
    new_value: float
    confidence: Confidence
    sample_size: int
    reasoning: str

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["confidence"] = self.confidence.name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ThresholdRecommendation:
        data = data.copy()
        data["confidence"] = Confidence[data["confidence"]]
        return cls(**data)


@dataclass
class ItemRecord:
    """Historical outcome of one work item."""
    item_id: str
    category: Category
    complexity_score: int
    estimated_resource: int
    actual_resource: int = 0
    required_split: bool = False
    commit_count: int = 1

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["category"] = self.category.name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ItemRecord:
        data = data.copy()
        data["category"] = Category[data["category"]]
        return cls(**data)


@dataclass
class ProjectRecord:
    """Historical outcome of one finished project, one row in the history store."""
    project: str
    completed_at: str
    started_at: str = ""
    outcome: str = "complete"        # "complete", "divergence" or "abandoned"
    verification_attempts: int = 1
    total_resource: int = 0
    items: list[ItemRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["items"] = [i.to_dict() for i in self.items]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectRecord:
        data = data.copy()
        data["items"] = [ItemRecord.from_dict(i) for i in data.get("items", [])]
        return cls(**data)


class BuildEncoder(json.JSONEncoder):
    """JSON encoder that handles autobuild model types."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Enum):
            return obj.name
        if isinstance(obj, set):
            return sorted(obj)
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        return super().default(obj)


def model_to_json(obj: Any, **kwargs: Any) -> str:
    """Serialize a model object to a JSON string."""
    return json.dumps(obj, cls=BuildEncoder, **kwargs)

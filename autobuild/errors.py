"""
Error taxonomy for autobuild.

Every error the orchestrator surfaces carries an ErrorKind so the CLI can
decide whether to halt, suspend, or carry on, and so the matching
human-readable report can be attached.

Expected conditions (no checkpoint yet, too few history records, flaky
tests) are handled locally by their components. Structural violations
(corrupt checkpoint, unsplittable work, exhausted verification) halt
forward progress and are surfaced to the operator.
"""

from __future__ import annotations

from enum import Enum, auto
from typing import Any, Optional


class ErrorKind(Enum):
    """Classification of orchestrator errors."""

    CORRUPT_STATE = auto()              # Checkpoint unparsable, never auto-remediated
    NOT_FOUND = auto()                  # No checkpoint for this project
    LOCKED = auto()                     # Another process holds the project
    RECONCILIATION_CONFLICT = auto()    # Checkpoint and tracker disagree
    RESOURCE_CEILING_EXCEEDED = auto()  # Item too big to schedule directly
    DECOMPOSITION_FAILED = auto()       # Split still above the Complex threshold
    VERIFICATION_DIVERGENCE = auto()    # Bounded verification retries exhausted
    INSUFFICIENT_SAMPLE = auto()        # Too few history records to optimize
    EXTERNAL_CAPABILITY_FAILURE = auto()  # Agent or tracker call failed
    APPROVAL_REQUIRED = auto()          # Waiting on an operator decision
    INVALID_TRANSITION = auto()         # State machine asked to do something illegal


class AutobuildError(Exception):
    """
    Base exception for autobuild.

    Attributes:
        kind: The ErrorKind classification.
        report: Optional human-readable report attached to a hard stop.
    """

    kind: ErrorKind = ErrorKind.INVALID_TRANSITION

    def __init__(self, message: str, report: Optional[str] = None) -> None:
        super().__init__(message)
        self.report = report

    @property
    def resumable(self) -> bool:
        """True if re-running `resume` may succeed without operator changes."""
        return self.kind == ErrorKind.EXTERNAL_CAPABILITY_FAILURE


class CorruptState(AutobuildError):
    """Raised when the checkpoint document cannot be parsed."""

    kind = ErrorKind.CORRUPT_STATE

    def __init__(self, message: str, path: str = "", report: Optional[str] = None) -> None:
        super().__init__(message, report)
        self.path = path


class CheckpointNotFound(AutobuildError):
    """Raised by operations that require an existing checkpoint."""

    kind = ErrorKind.NOT_FOUND


class CheckpointLocked(AutobuildError):
    """Raised when another orchestration process holds the project."""

    kind = ErrorKind.LOCKED

    def __init__(self, message: str, holder: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.holder = holder or {}


class ReconciliationConflict(AutobuildError):
    """
    Checkpoint and tracker disagree.

    Reconciliation always resolves in favour of the tracker, so this is
    recorded and logged rather than raised to resume callers.
    """

    kind = ErrorKind.RECONCILIATION_CONFLICT


class ResourceCeilingExceeded(AutobuildError):
    """Raised when an item's estimate or running cost crosses the hard ceiling."""

    kind = ErrorKind.RESOURCE_CEILING_EXCEEDED

    def __init__(self, message: str, item_id: str = "", estimate: int = 0, ceiling: int = 0) -> None:
        super().__init__(message)
        self.item_id = item_id
        self.estimate = estimate
        self.ceiling = ceiling


class DecompositionError(AutobuildError):
    """Raised when a Complex item cannot be split below the threshold after a retry."""

    kind = ErrorKind.DECOMPOSITION_FAILED


class VerificationDivergence(AutobuildError):
    """Raised when verification fails at the maximum attempt count."""

    kind = ErrorKind.VERIFICATION_DIVERGENCE

    def __init__(self, message: str, attempt_count: int = 0, report: Optional[str] = None) -> None:
        super().__init__(message, report)
        self.attempt_count = attempt_count


class InsufficientSample(AutobuildError):
    """Optimizer precondition failure. Reported as a status, not raised from analyze()."""

    kind = ErrorKind.INSUFFICIENT_SAMPLE


class ExternalCapabilityFailure(AutobuildError):
    """Raised when an agent capability or the work tracker fails."""

    kind = ErrorKind.EXTERNAL_CAPABILITY_FAILURE

    def __init__(self, message: str, source: str = "", cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.source = source
        self.cause = cause


class ApprovalRequired(AutobuildError):
    """Raised when the run is parked on a pending operator decision."""

    kind = ErrorKind.APPROVAL_REQUIRED

    def __init__(
        self,
        message: str,
        approval_kind: str = "",
        options: Optional[list[str]] = None,
        report: Optional[str] = None,
    ) -> None:
        super().__init__(message, report)
        self.approval_kind = approval_kind
        self.options = options or []


class InvalidTransition(AutobuildError):
    """Raised when a phase transition or decision is not allowed from the current state."""

    kind = ErrorKind.INVALID_TRANSITION

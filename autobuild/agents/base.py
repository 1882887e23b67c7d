"""
Base types for agent capabilities.

Each phase of a build delegates its actual work (writing a PRD, code,
tests, a QA report) to an agent capability. The orchestrator treats the
capability as a black box: it passes a structured payload in, gets a
structured AgentResult back, and inspects nothing beyond the fields
documented per capability below.

Output contract per capability (keys of AgentResult.output):

    infra           artifacts
    definition      artifacts, items[{title, body, kind, priority,
                    files_estimate, loc_estimate, dependency_count}]
    decomposition   children[WorkItemEstimate dicts]
    architecture    artifacts
    implementation  artifacts, done, commits
    qa              artifacts, bugs[{title, body, priority,
                    files_estimate, loc_estimate}]
    verification    passed, failed_tests, coverage, message,
                    failing_items
    learning        (nothing required)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class PhaseCapability(Enum):
    """The capability each phase invokes."""
    INFRA = "infra"
    DEFINITION = "definition"
    DECOMPOSITION = "decomposition"
    ARCHITECTURE = "architecture"
    IMPLEMENTATION = "implementation"
    QA = "qa"
    VERIFICATION = "verification"
    LEARNING = "learning"


@dataclass
class AgentResult:
    """
    Result from a capability invocation.

    cost is the context (token) cost of the call; the state machine adds
    it to the session's resource usage.
    """

    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    cost: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "errors": self.errors,
            "cost": self.cost,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentResult:
        return cls(
            success=data.get("success", False),
            output=data.get("output") or {},
            errors=data.get("errors", []),
            cost=int(data.get("cost", 0)),
        )

    @classmethod
    def success_result(cls, output: dict[str, Any] | None = None, cost: int = 0) -> AgentResult:
        return cls(success=True, output=output or {}, cost=cost)

    @classmethod
    def failure_result(cls, error: str, cost: int = 0) -> AgentResult:
        return cls(success=False, errors=[error], cost=cost)


class AgentCapability(ABC):
    """
    Interface to the agents that do each phase's work.

    Implementations may be slow and may fail. A call that cannot complete
    should raise ExternalCapabilityFailure (or return a failure result);
    it must not have side effects on the checkpoint.
    """

    @abstractmethod
    def invoke(self, capability: PhaseCapability, payload: dict[str, Any]) -> AgentResult:
        """Run one capability with a structured payload."""

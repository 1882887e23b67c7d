"""
Verification gate for autobuild.

Turns one raw verification run into a pass/fail decision after applying
the two self-healing exceptions, before the state machine counts a
failure against the retry budget:

- Flaky quarantine: a test that failed on at least flaky_min_failures of
  the last flaky_window attempts, but not on all of them, while every
  other test passes now, is quarantined. It is excluded from this and all
  later gates and the quarantine is logged.
- Coverage tolerance: coverage in [target - tolerance, target) is recorded
  as a disclosed gap for the completion report instead of failing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from autobuild.models import FailureRecord, VerificationState

if TYPE_CHECKING:
    from autobuild.config import VerificationConfig
    from autobuild.logger import BuildLogger


@dataclass
class VerificationOutcome:
    """What the verification capability reported for one run."""
    passed: bool
    failed_tests: list[str] = field(default_factory=list)
    coverage: Optional[float] = None
    message: str = ""
    failing_items: list[str] = field(default_factory=list)

    @classmethod
    def from_output(cls, output: dict[str, Any]) -> VerificationOutcome:
        coverage = output.get("coverage")
        return cls(
            passed=bool(output.get("passed", False)),
            failed_tests=[str(t) for t in output.get("failed_tests", [])],
            coverage=float(coverage) if coverage is not None else None,
            message=str(output.get("message", "")),
            failing_items=[str(i) for i in output.get("failing_items", [])],
        )


@dataclass
class GateDecision:
    """The gate's verdict on one run."""
    passed: bool
    failed_tests: list[str] = field(default_factory=list)
    newly_quarantined: list[str] = field(default_factory=list)
    disclosed_gap: Optional[str] = None
    reason: str = ""


class VerificationGate:
    """Applies self-healing policy to verification outcomes."""

    def __init__(self, config: VerificationConfig, logger: Optional[BuildLogger] = None) -> None:
        self.config = config
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            log_data = {"component": "verification"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def find_flaky(
        self,
        history: list[FailureRecord],
        current_failed: list[str],
    ) -> list[str]:
        """
        Tests in current_failed that look intermittent.

        The window is the current run plus the most recent earlier failed
        attempts, flaky_window runs in total. A test is flaky when it failed
        in at least flaky_min_failures of those runs and passed in at least
        one of them. Fewer than flaky_window runs never yields a flaky test.
        """
        window = self.config.flaky_window
        previous = history[-(window - 1):] if window > 1 else []
        runs = [set(r.failed_tests) for r in previous] + [set(current_failed)]
        if len(runs) < window:
            return []

        flaky = []
        for test in current_failed:
            failures = sum(1 for run in runs if test in run)
            if self.config.flaky_min_failures <= failures < len(runs):
                flaky.append(test)
        return sorted(set(flaky))

    def coverage_verdict(self, coverage: Optional[float]) -> tuple[bool, Optional[str]]:
        """
        Judge coverage against the target.

        Returns:
            (acceptable, disclosed_gap). A disclosed gap is returned when
            coverage falls short by no more than the tolerance.
        """
        if coverage is None:
            return True, None
        target = self.config.coverage_target
        if coverage >= target:
            return True, None
        if coverage >= target - self.config.coverage_tolerance:
            return True, (
                f"Coverage {coverage:.1f}% is below the {target:.1f}% target "
                f"(accepted within the {self.config.coverage_tolerance:.1f}-point tolerance)"
            )
        return False, None

    def evaluate(self, outcome: VerificationOutcome, state: VerificationState) -> GateDecision:
        """Decide whether this run passes the gate."""
        already_quarantined = set(state.quarantined_tests)
        failing = [t for t in outcome.failed_tests if t not in already_quarantined]

        if not outcome.passed and not outcome.failed_tests:
            return GateDecision(
                passed=False,
                reason=outcome.message or "verification failed without test results",
            )

        newly_quarantined: list[str] = []
        if failing:
            flaky = self.find_flaky(state.failure_history, failing)
            remaining = [t for t in failing if t not in flaky]
            if flaky and not remaining:
                newly_quarantined = flaky
                failing = []
                self._log("tests_quarantined", {"tests": flaky}, level="warn")

        coverage_ok, gap = self.coverage_verdict(outcome.coverage)
        if gap:
            self._log("coverage_gap_disclosed", {"coverage": outcome.coverage, "gap": gap}, level="warn")

        if failing:
            return GateDecision(
                passed=False,
                failed_tests=failing,
                disclosed_gap=gap,
                reason=outcome.message or f"{len(failing)} test(s) failing",
            )
        if not coverage_ok:
            return GateDecision(
                passed=False,
                newly_quarantined=newly_quarantined,
                reason=(
                    f"Coverage {outcome.coverage:.1f}% is below the "
                    f"{self.config.coverage_target:.1f}% target"
                ),
            )
        return GateDecision(
            passed=True,
            newly_quarantined=newly_quarantined,
            disclosed_gap=gap,
            reason="verification passed",
        )

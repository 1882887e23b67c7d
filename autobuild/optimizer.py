"""
Threshold optimizer for autobuild.

Reads finished-project records in batch and recommends changes to the
tunable thresholds in config.yaml. It never writes configuration; a
recommendation is applied only through `autobuild apply-threshold ... --yes`.

Statistics:
- Quartiles are linearly interpolated between order statistics.
- Points outside [Q1 - k*IQR, Q3 + k*IQR] (k = optimizer.iqr_factor) are
  dropped before any mean is taken.
- stddev is the population standard deviation; cv = stddev / mean.

Confidence (fixed rules):
- HIGH    n >= 30 and cv < 0.15
- MEDIUM  n >= 10 and cv < 0.25
- LOW     otherwise
"""

from __future__ import annotations

import math
import statistics
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from autobuild.models import (
    Category,
    Confidence,
    ItemRecord,
    ProjectRecord,
    ThresholdRecommendation,
)

if TYPE_CHECKING:
    from autobuild.config import BuildConfig
    from autobuild.logger import BuildLogger


class OptimizationStatus(Enum):
    """Outcome of an analysis run."""
    OK = "ok"
    INSUFFICIENT_SAMPLE = "insufficient_sample"


@dataclass
class MetricSummary:
    """Descriptive statistics of one metric after outlier removal."""
    n: int
    outliers: int
    mean: float
    stddev: float
    cv: float
    q1: float
    q3: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "n": self.n,
            "outliers": self.outliers,
            "mean": self.mean,
            "stddev": self.stddev,
            "cv": self.cv if math.isfinite(self.cv) else None,
            "q1": self.q1,
            "q3": self.q3,
        }


@dataclass
class OptimizationResult:
    """What analyze() returns."""
    status: OptimizationStatus
    sample_size: int
    recommendations: list[ThresholdRecommendation] = field(default_factory=list)
    statistics: dict[str, MetricSummary] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "sample_size": self.sample_size,
            "recommendations": [r.to_dict() for r in self.recommendations],
            "statistics": {k: v.to_dict() for k, v in self.statistics.items()},
        }


def quantile(sorted_values: list[float], q: float) -> float:
    """Linearly interpolated quantile of already-sorted values."""
    if not sorted_values:
        raise ValueError("quantile of an empty list")
    position = (len(sorted_values) - 1) * q
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return float(sorted_values[lower])
    fraction = position - lower
    return sorted_values[lower] + (sorted_values[upper] - sorted_values[lower]) * fraction


def iqr_filter(values: list[float], factor: float = 1.5) -> tuple[list[float], float, float]:
    """
    Drop points outside the IQR fences.

    Returns:
        (kept values in original order, Q1, Q3)
    """
    if not values:
        return [], 0.0, 0.0
    ordered = sorted(values)
    q1 = quantile(ordered, 0.25)
    q3 = quantile(ordered, 0.75)
    spread = q3 - q1
    low, high = q1 - factor * spread, q3 + factor * spread
    return [v for v in values if low <= v <= high], q1, q3


def summarize(values: list[float], factor: float = 1.5) -> MetricSummary:
    """Outlier-filtered summary of a metric."""
    kept, q1, q3 = iqr_filter(values, factor)
    if not kept:
        return MetricSummary(n=0, outliers=len(values), mean=0.0, stddev=0.0, cv=math.inf, q1=q1, q3=q3)
    mean = statistics.fmean(kept)
    stddev = statistics.pstdev(kept)
    if mean == 0:
        cv = 0.0 if stddev == 0 else math.inf
    else:
        cv = stddev / abs(mean)
    return MetricSummary(
        n=len(kept),
        outliers=len(values) - len(kept),
        mean=mean,
        stddev=stddev,
        cv=cv,
        q1=q1,
        q3=q3,
    )


def assign_confidence(sample_size: int, cv: float) -> Confidence:
    if sample_size >= 30 and cv < 0.15:
        return Confidence.HIGH
    if sample_size >= 10 and cv < 0.25:
        return Confidence.MEDIUM
    return Confidence.LOW


class ThresholdOptimizer:
    """
    Recommends threshold changes from project history.

    Purely advisory: analyze() reads records and the current config and
    returns recommendations; nothing here can write configuration.
    """

    def __init__(self, config: BuildConfig, logger: Optional[BuildLogger] = None) -> None:
        self.config = config
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            log_data = {"component": "optimizer"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def analyze(self, history: list[ProjectRecord]) -> OptimizationResult:
        """
        Evaluate every tunable threshold against history.

        Fewer than optimizer.min_sample records returns status
        INSUFFICIENT_SAMPLE with no recommendations.
        """
        opt = self.config.optimizer
        if len(history) < opt.min_sample:
            self._log("optimizer_insufficient_sample", {
                "records": len(history),
                "required": opt.min_sample,
            })
            return OptimizationResult(
                status=OptimizationStatus.INSUFFICIENT_SAMPLE,
                sample_size=len(history),
            )

        result = OptimizationResult(status=OptimizationStatus.OK, sample_size=len(history))
        for evaluate in (
            self._evaluate_simple_split_rate,
            self._evaluate_medium_extra_commits,
            self._evaluate_resource_overflow,
            self._evaluate_verification_attempts,
        ):
            result.recommendations.extend(evaluate(history, result.statistics))

        self._log("optimizer_analyzed", {
            "records": len(history),
            "recommendations": [r.parameter_name for r in result.recommendations],
        })
        return result

    @staticmethod
    def _items(record: ProjectRecord, category: Category) -> list[ItemRecord]:
        return [i for i in record.items if i.category == category]

    def _lowered_boundary(self, current: int, offending_scores: list[int], floor: int) -> int:
        """
        A lower boundary that excludes the lowest offending score.

        One recommendation never moves a boundary by more than
        (1 - near_boundary_ratio) of its value, and never below floor.
        """
        step_limit = math.floor(current * self.config.optimizer.near_boundary_ratio)
        candidate = min(offending_scores) - 1 if offending_scores else step_limit
        return max(floor, step_limit, candidate)

    def _evaluate_simple_split_rate(
        self,
        history: list[ProjectRecord],
        stats: dict[str, MetricSummary],
    ) -> list[ThresholdRecommendation]:
        opt = self.config.optimizer
        current = self.config.complexity.simple_max

        rates, offending = [], []
        for record in history:
            simple = self._items(record, Category.SIMPLE)
            if not simple:
                continue
            split = [i for i in simple if i.required_split]
            rates.append(len(split) / len(simple))
            offending.extend(i.complexity_score for i in split)
        if not rates:
            return []

        summary = summarize(rates, opt.iqr_factor)
        stats["simple_split_rate"] = summary
        if summary.n == 0 or summary.mean <= opt.split_rate_target:
            return []

        new_value = self._lowered_boundary(current, offending, floor=0)
        if new_value >= current:
            return []
        return [ThresholdRecommendation(
            parameter_name="complexity.simple_max",
            old_value=current,
            new_value=new_value,
            confidence=assign_confidence(summary.n, summary.cv),
            sample_size=summary.n,
            reasoning=(
                f"{summary.mean:.1%} of Simple items needed a split (target "
                f"{opt.split_rate_target:.0%}, {summary.outliers} outlier project(s) excluded); "
                f"lowering the Simple boundary moves borderline items into Medium."
            ),
        )]

    def _evaluate_medium_extra_commits(
        self,
        history: list[ProjectRecord],
        stats: dict[str, MetricSummary],
    ) -> list[ThresholdRecommendation]:
        opt = self.config.optimizer
        complexity = self.config.complexity
        current = complexity.medium_max

        rates, offending = [], []
        for record in history:
            medium = self._items(record, Category.MEDIUM)
            if not medium:
                continue
            extra = [i for i in medium if i.commit_count >= opt.extra_commit_threshold]
            rates.append(len(extra) / len(medium))
            offending.extend(i.complexity_score for i in extra)
        if not rates:
            return []

        summary = summarize(rates, opt.iqr_factor)
        stats["medium_extra_commit_rate"] = summary
        if summary.n == 0 or summary.mean <= opt.extra_commit_target:
            return []

        new_value = self._lowered_boundary(current, offending, floor=complexity.simple_max + 1)
        if new_value >= current:
            return []
        return [ThresholdRecommendation(
            parameter_name="complexity.medium_max",
            old_value=current,
            new_value=new_value,
            confidence=assign_confidence(summary.n, summary.cv),
            sample_size=summary.n,
            reasoning=(
                f"{summary.mean:.1%} of Medium items needed {opt.extra_commit_threshold}+ commits "
                f"(target {opt.extra_commit_target:.0%}); lowering the Medium boundary sends "
                f"more items through decomposition."
            ),
        )]

    def _evaluate_resource_overflow(
        self,
        history: list[ProjectRecord],
        stats: dict[str, MetricSummary],
    ) -> list[ThresholdRecommendation]:
        """
        Overflow is an item whose actual cost exceeded the ceiling.

        The target overflow rate is zero, so any overflow triggers a
        recommendation. Both ladder boundaries are scaled down by the mean
        underestimation factor (actual / estimated) of overflowing items.
        """
        opt = self.config.optimizer
        budget = self.config.budget

        items = [i for record in history for i in record.items]
        overflowing = [i for i in items if i.actual_resource > budget.ceiling]
        if not items or not overflowing:
            return []

        factors = [
            i.actual_resource / i.estimated_resource
            for i in overflowing if i.estimated_resource > 0
        ]
        if not factors:
            return []
        summary = summarize(factors, opt.iqr_factor)
        stats["overflow_underestimate_factor"] = summary
        if summary.n == 0 or summary.mean <= 1:
            return []

        rate = len(overflowing) / len(items)
        confidence = assign_confidence(summary.n, summary.cv)
        reasoning = (
            f"{len(overflowing)} of {len(items)} items ({rate:.1%}) exceeded the "
            f"{budget.ceiling:,}-token ceiling; estimates for them ran {summary.mean:.2f}x low."
        )
        recommendations = []
        for name, old in (("budget.ceiling", budget.ceiling), ("budget.proceed_limit", budget.proceed_limit)):
            new = int(old / summary.mean) // 1000 * 1000
            if 0 < new < old:
                recommendations.append(ThresholdRecommendation(
                    parameter_name=name,
                    old_value=old,
                    new_value=new,
                    confidence=confidence,
                    sample_size=summary.n,
                    reasoning=reasoning,
                ))
        return recommendations

    def _evaluate_verification_attempts(
        self,
        history: list[ProjectRecord],
        stats: dict[str, MetricSummary],
    ) -> list[ThresholdRecommendation]:
        opt = self.config.optimizer
        current = self.config.verification.max_attempts

        attempts = [float(r.verification_attempts) for r in history if r.outcome != "abandoned"]
        if not attempts:
            return []
        summary = summarize(attempts, opt.iqr_factor)
        stats["verification_attempts"] = summary
        if summary.n == 0 or summary.mean < current * opt.near_boundary_ratio:
            return []

        return [ThresholdRecommendation(
            parameter_name="verification.max_attempts",
            old_value=current,
            new_value=current + 1,
            confidence=assign_confidence(summary.n, summary.cv),
            sample_size=summary.n,
            reasoning=(
                f"Projects average {summary.mean:.2f} verification attempts against a cap of "
                f"{current}; consider one more attempt, or review why verification rarely "
                f"passes first time."
            ),
        )]

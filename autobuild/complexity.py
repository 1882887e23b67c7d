"""
Complexity scoring for autobuild work items.

Scores an item from its estimated shape, classifies it, estimates the
context it will consume, and for Complex items obtains and validates a
decomposition. The splitting itself is delegated to a splitter callable
(the decomposition agent capability in production); this module only
decides whether a proposed split is acceptable.

Score: files * 100 + loc + dependencies * 50
    File count dominates because cross-file coordination drives review and
    implementation overhead. Weights and boundaries come from
    ComplexityConfig and are what the threshold optimizer tunes.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from autobuild.errors import DecompositionError
from autobuild.models import Category, WorkItem, WorkItemEstimate

if TYPE_CHECKING:
    from autobuild.config import ComplexityConfig
    from autobuild.logger import BuildLogger


# Called with the parent estimate and, on the retry, feedback explaining
# why the previous split was rejected.
Splitter = Callable[[WorkItemEstimate, Optional[str]], list[WorkItemEstimate]]


@dataclass
class ComplexityResult:
    """Outcome of scoring one estimate."""
    score: int
    category: Category
    estimated_resource: int
    decomposition_advice: Optional[list[WorkItemEstimate]] = None

    @property
    def needs_decomposition(self) -> bool:
        return self.category == Category.COMPLEX

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "category": self.category.name,
            "estimated_resource": self.estimated_resource,
            "decomposition_advice": (
                [c.to_dict() for c in self.decomposition_advice]
                if self.decomposition_advice is not None else None
            ),
        }


class ComplexityAnalyzer:
    """
    Scores, classifies and validates decomposition of work items.

    Everything except decompose() is a pure function of the estimate and
    the configured weights.
    """

    def __init__(
        self,
        config: ComplexityConfig,
        splitter: Optional[Splitter] = None,
        logger: Optional[BuildLogger] = None,
    ) -> None:
        self.config = config
        self._splitter = splitter
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            log_data = {"component": "complexity"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def compute_score(self, estimate: WorkItemEstimate) -> int:
        c = self.config
        return (
            estimate.files_estimate * c.file_weight
            + estimate.loc_estimate * c.loc_weight
            + estimate.dependency_count * c.dependency_weight
        )

    def classify(self, score: int) -> Category:
        """
        Map a score to its category.

        Simple is [0, simple_max], Medium is [simple_max + 1, medium_max],
        Complex is everything above. Every non-negative integer lands in
        exactly one category.

        Raises:
            ValueError: For negative scores.
        """
        if score < 0:
            raise ValueError(f"Complexity score cannot be negative: {score}")
        if score <= self.config.simple_max:
            return Category.SIMPLE
        if score <= self.config.medium_max:
            return Category.MEDIUM
        return Category.COMPLEX

    def estimate_resource(self, estimate: WorkItemEstimate) -> int:
        """
        Estimated context tokens to implement an item.

        Test code is assumed to be test_loc_ratio (1.5x) the implementation,
        which is the TDD assumption behind the cost model.
        """
        c = self.config
        test_loc = math.ceil(estimate.loc_estimate * c.test_loc_ratio)
        return (
            c.base_context_cost
            + estimate.files_estimate * c.file_read_cost
            + estimate.loc_estimate * c.implement_cost_per_line
            + test_loc * c.test_cost_per_line
            + c.review_cost
        )

    def assess(self, estimate: WorkItemEstimate) -> ComplexityResult:
        """Score and classify without attempting decomposition."""
        score = self.compute_score(estimate)
        return ComplexityResult(
            score=score,
            category=self.classify(score),
            estimated_resource=self.estimate_resource(estimate),
        )

    def score(self, estimate: WorkItemEstimate) -> ComplexityResult:
        """
        Score an estimate; Complex estimates come back with validated children.

        Raises:
            DecompositionError: If the item is Complex and no acceptable
                split can be obtained.
        """
        result = self.assess(estimate)
        self._log("item_scored", {
            "title": estimate.title,
            "score": result.score,
            "category": result.category.name,
            "estimated_resource": result.estimated_resource,
        }, level="debug")

        if result.category == Category.COMPLEX:
            if self._splitter is None:
                raise DecompositionError(
                    f"'{estimate.title}' scores {result.score} (Complex) and no splitter is configured"
                )
            result.decomposition_advice = self.decompose(estimate, self._splitter)
        return result

    def validate_split(
        self,
        parent: WorkItemEstimate,
        children: list[WorkItemEstimate],
    ) -> list[str]:
        """
        Check a proposed split.

        Returns:
            A list of problems; empty when the split is acceptable.
        """
        problems: list[str] = []
        if len(children) < 2:
            problems.append("a split must produce at least two children")
            return problems

        for index, child in enumerate(children):
            child_score = self.compute_score(child)
            if self.classify(child_score) == Category.COMPLEX:
                problems.append(
                    f"child {index} '{child.title}' scores {child_score}, "
                    f"above the Complex threshold ({self.config.medium_max})"
                )
            for blocker in child.blocked_by:
                if not 0 <= blocker < len(children) or blocker == index:
                    problems.append(f"child {index} has invalid dependency index {blocker}")

        if not problems and _has_cycle(children):
            problems.append("child dependencies form a cycle")

        combined_loc = sum(c.loc_estimate for c in children)
        if combined_loc < parent.loc_estimate:
            problems.append(
                f"children cover {combined_loc} LOC of the parent's {parent.loc_estimate}"
            )
        return problems

    def decompose(
        self,
        parent: WorkItemEstimate,
        splitter: Splitter,
    ) -> list[WorkItemEstimate]:
        """
        Obtain a valid split for a Complex estimate.

        The splitter gets max_split_attempts tries (the first attempt and a
        retry carrying the rejection reasons).

        Raises:
            DecompositionError: If no attempt is acceptable. This means the
                estimate itself is wrong and is a configuration error.
        """
        feedback: Optional[str] = None
        problems: list[str] = []
        for attempt in range(1, self.config.max_split_attempts + 1):
            children = splitter(parent, feedback)
            problems = self.validate_split(parent, children)
            if not problems:
                self._log("decomposition_accepted", {
                    "title": parent.title,
                    "attempt": attempt,
                    "children": len(children),
                })
                return children
            feedback = "; ".join(problems)
            self._log("decomposition_rejected", {
                "title": parent.title,
                "attempt": attempt,
                "problems": problems,
            }, level="warn")

        raise DecompositionError(
            f"'{parent.title}' could not be split below the Complex threshold "
            f"after {self.config.max_split_attempts} attempts: {'; '.join(problems)}"
        )

    def score_item(self, item: WorkItem) -> WorkItem:
        """Fill in an item's score, category and estimated resource."""
        result = self.assess(item.to_estimate())
        item.complexity_score = result.score
        item.complexity_category = result.category
        item.estimated_resource = result.estimated_resource
        return item


def _has_cycle(children: list[WorkItemEstimate]) -> bool:
    """Detect a cycle in the blocked_by graph (depth-first, three colours)."""
    WHITE, GREY, BLACK = 0, 1, 2
    colour = [WHITE] * len(children)

    def visit(node: int) -> bool:
        colour[node] = GREY
        for blocker in children[node].blocked_by:
            if colour[blocker] == GREY:
                return True
            if colour[blocker] == WHITE and visit(blocker):
                return True
        colour[node] = BLACK
        return False

    return any(colour[i] == WHITE and visit(i) for i in range(len(children)))

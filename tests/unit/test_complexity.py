"""Tests for ComplexityAnalyzer scoring, classification and decomposition."""

import pytest

from autobuild.complexity import ComplexityAnalyzer
from autobuild.config import ComplexityConfig
from autobuild.errors import DecompositionError
from autobuild.models import Category, WorkItem, WorkItemEstimate


@pytest.fixture
def analyzer():
    return ComplexityAnalyzer(ComplexityConfig())


def est(title="x", files=1, loc=0, deps=0, blocked_by=None):
    return WorkItemEstimate(
        title=title,
        files_estimate=files,
        loc_estimate=loc,
        dependency_count=deps,
        blocked_by=blocked_by or [],
    )


class TestScoring:
    @pytest.mark.parametrize("files,loc,deps,expected", [
        (1, 100, 0, 200),
        (3, 500, 2, 900),
        (5, 1200, 2, 1800),
        (0, 0, 0, 0),
    ])
    def test_score_formula(self, analyzer, files, loc, deps, expected):
        assert analyzer.compute_score(est(files=files, loc=loc, deps=deps)) == expected

    @pytest.mark.parametrize("score,category", [
        (0, Category.SIMPLE),
        (500, Category.SIMPLE),
        (501, Category.MEDIUM),
        (1500, Category.MEDIUM),
        (1501, Category.COMPLEX),
    ])
    def test_category_boundaries(self, analyzer, score, category):
        assert analyzer.classify(score) == category

    def test_negative_score_rejected(self, analyzer):
        with pytest.raises(ValueError):
            analyzer.classify(-1)

    def test_negative_dimensions_rejected(self):
        with pytest.raises(ValueError):
            est(loc=-5)

    def test_resource_estimate(self, analyzer):
        # 10000 base + 3000 file + 100*20 impl + ceil(150)*15 tests + 5000 review
        assert analyzer.estimate_resource(est(files=1, loc=100)) == 22_250

    def test_resource_estimate_rounds_test_lines_up(self, analyzer):
        # 15 implementation lines -> 22.5 test lines -> 23
        assert analyzer.estimate_resource(est(files=0, loc=15)) == 15_000 + 300 + 23 * 15

    def test_weights_come_from_config(self):
        analyzer = ComplexityAnalyzer(ComplexityConfig(file_weight=10, simple_max=50, medium_max=60))
        assert analyzer.compute_score(est(files=2, loc=5)) == 25
        assert analyzer.classify(55) == Category.MEDIUM

    def test_score_item_fills_fields(self, analyzer):
        item = analyzer.score_item(WorkItem(id="1", title="x", files_estimate=3, loc_estimate=500, dependency_count=2))
        assert item.complexity_score == 900
        assert item.complexity_category == Category.MEDIUM
        assert item.estimated_resource == 15_000 + 9_000 + 10_000 + 750 * 15
        assert item.is_scored


class TestValidateSplit:
    def test_accepts_valid_split(self, analyzer):
        parent = est(files=5, loc=1200, deps=2)
        children = [est("a", files=2, loc=600), est("b", files=2, loc=600, blocked_by=[0])]
        assert analyzer.validate_split(parent, children) == []

    def test_requires_two_children(self, analyzer):
        assert analyzer.validate_split(est(loc=10), [est(loc=10)])

    def test_rejects_complex_child(self, analyzer):
        problems = analyzer.validate_split(est(loc=2000), [est("a", loc=1600), est("b", loc=400)])
        assert any("above the Complex threshold" in p for p in problems)

    def test_rejects_cycle(self, analyzer):
        children = [est("a", loc=50, blocked_by=[1]), est("b", loc=50, blocked_by=[0])]
        assert "child dependencies form a cycle" in analyzer.validate_split(est(loc=100), children)

    def test_rejects_bad_dependency_index(self, analyzer):
        children = [est("a", loc=50, blocked_by=[5]), est("b", loc=50)]
        assert any("invalid dependency index" in p for p in analyzer.validate_split(est(loc=100), children))

    def test_rejects_lost_scope(self, analyzer):
        problems = analyzer.validate_split(est(loc=1200), [est("a", loc=300), est("b", loc=300)])
        assert any("cover 600 LOC" in p for p in problems)


class TestDecompose:
    def test_retry_receives_feedback(self, analyzer):
        seen_feedback = []

        def splitter(parent, feedback):
            seen_feedback.append(feedback)
            if feedback is None:
                return [est("too big", loc=1600), est("small", loc=100)]
            return [est("a", files=2, loc=600), est("b", files=2, loc=600)]

        children = analyzer.decompose(est(files=5, loc=1200), splitter)
        assert [c.title for c in children] == ["a", "b"]
        assert seen_feedback[0] is None
        assert "Complex threshold" in seen_feedback[1]

    def test_gives_up_after_retry(self, analyzer):
        calls = []

        def splitter(parent, feedback):
            calls.append(feedback)
            return [est("only", loc=2000)]

        with pytest.raises(DecompositionError, match="after 2 attempts"):
            analyzer.decompose(est(loc=2000), splitter)
        assert len(calls) == 2

    def test_score_complex_without_splitter(self, analyzer):
        with pytest.raises(DecompositionError, match="no splitter"):
            analyzer.score(est(files=5, loc=1200, deps=2))

    def test_score_complex_returns_advice(self):
        splitter = lambda parent, feedback: [est("a", files=2, loc=600), est("b", files=2, loc=600)]
        result = ComplexityAnalyzer(ComplexityConfig(), splitter=splitter).score(est(files=5, loc=1200, deps=2))
        assert result.needs_decomposition
        assert len(result.decomposition_advice) == 2

    def test_score_simple_has_no_advice(self, analyzer):
        result = analyzer.score(est(files=1, loc=100))
        assert result.category == Category.SIMPLE
        assert result.decomposition_advice is None

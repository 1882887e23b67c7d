"""Tests for optimize and apply-threshold."""

import json

import pytest
import yaml

from autobuild.cli import app
from autobuild.config import BuildConfig
from autobuild.history import HistoryStore
from autobuild.models import Category, ItemRecord, ProjectRecord


@pytest.fixture
def invoke(cli_runner, tmp_path):
    def _invoke(*args, **kwargs):
        return cli_runner.invoke(app, ["--project", str(tmp_path), *args], **kwargs)
    return _invoke


def record_history(tmp_path, count, split_score=None):
    store = HistoryStore(BuildConfig(repo_root=str(tmp_path)).history_path)
    for n in range(count):
        items = [ItemRecord(
            item_id=str(i),
            category=Category.SIMPLE,
            complexity_score=200,
            estimated_resource=22_250,
            actual_resource=20_000,
        ) for i in range(1, 10)]
        if split_score is not None:
            items.append(ItemRecord(
                item_id="10",
                category=Category.SIMPLE,
                complexity_score=split_score,
                estimated_resource=25_000,
                actual_resource=24_000,
                required_split=True,
            ))
        store.append(ProjectRecord(
            project=f"p{n}",
            started_at=f"2026-09-{n + 1:02d}T00:00:00Z",
            completed_at=f"2026-09-{n + 1:02d}T06:00:00Z",
            items=items,
        ))


class TestOptimize:
    def test_not_enough_history(self, invoke, tmp_path):
        record_history(tmp_path, 4)
        result = invoke("optimize")
        assert result.exit_code == 0
        assert "At least 5 records are needed" in result.output

    def test_healthy_history(self, invoke, tmp_path):
        record_history(tmp_path, 5)
        result = invoke("optimize")
        assert result.exit_code == 0
        assert "No changes recommended." in result.output

    def test_recommendation_is_shown_not_applied(self, invoke, tmp_path):
        record_history(tmp_path, 5, split_score=450)

        result = invoke("optimize")

        assert result.exit_code == 0, result.output
        assert "complexity.simple_max" in result.output
        assert "449" in result.output
        assert not (tmp_path / "config.yaml").exists()

    def test_json_output(self, invoke, tmp_path):
        record_history(tmp_path, 5, split_score=450)

        result = invoke("optimize", "--json")

        data = json.loads(result.output)
        assert data["status"] == "ok"
        assert data["recommendations"][0]["new_value"] == 449

    def test_save_writes_report(self, invoke, tmp_path):
        record_history(tmp_path, 5, split_score=450)
        result = invoke("optimize", "--save")
        assert result.exit_code == 0
        reports = list(BuildConfig(repo_root=str(tmp_path)).reports_path.glob("optimizer-thresholds-*.md"))
        assert len(reports) == 1

    def test_limit(self, invoke, tmp_path):
        record_history(tmp_path, 6)
        result = invoke("optimize", "--limit", "3")
        assert "(3 project records" in result.output


class TestApplyThreshold:
    def test_writes_config(self, invoke, tmp_path):
        result = invoke("apply-threshold", "complexity.simple_max", "449", "--yes")

        assert result.exit_code == 0, result.output
        assert "Updated" in result.output
        written = yaml.safe_load((tmp_path / "config.yaml").read_text())
        assert written == {"complexity": {"simple_max": 449}}

    def test_keeps_existing_settings(self, invoke, tmp_path):
        (tmp_path / "config.yaml").write_text("tracker:\n  label: mine\n")
        invoke("apply-threshold", "budget.ceiling", "140000", "--yes")
        written = yaml.safe_load((tmp_path / "config.yaml").read_text())
        assert written["tracker"] == {"label": "mine"}
        assert written["budget"] == {"ceiling": 140_000}

    def test_unknown_parameter(self, invoke, tmp_path):
        result = invoke("apply-threshold", "complexity.nope", "1", "--yes")
        assert result.exit_code == 1
        assert "Unknown parameter" in result.output

    def test_invalid_value_is_rejected(self, invoke, tmp_path):
        result = invoke("apply-threshold", "budget.proceed_limit", "200000", "--yes")
        assert result.exit_code == 1
        assert not (tmp_path / "config.yaml").exists()

    def test_non_numeric_value(self, invoke):
        assert invoke("apply-threshold", "budget.ceiling", "lots", "--yes").exit_code != 0

    def test_needs_confirmation(self, invoke, tmp_path):
        result = invoke("apply-threshold", "complexity.simple_max", "449", input="n\n")
        assert result.exit_code == 0
        assert "Cancelled." in result.output
        assert not (tmp_path / "config.yaml").exists()

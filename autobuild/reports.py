"""
Human-readable reports for autobuild.

Every hard stop (divergence, time budget, reconciliation with changes)
and every finished run gets a markdown report written next to the
structured error or result, under .autobuild/reports/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from autobuild.models import Checkpoint, ItemState, ReconciliationResult, item_sort_key, utc_now
from autobuild.utils.fs import ensure_dir, safe_write

if TYPE_CHECKING:
    from autobuild.config import BuildConfig
    from autobuild.optimizer import OptimizationResult


def _id_list(ids: list[str]) -> str:
    return ", ".join(f"#{i}" for i in sorted(ids, key=item_sort_key)) or "none"


def divergence_report(checkpoint: Checkpoint) -> str:
    """Report for a run that exhausted its verification attempts."""
    v = checkpoint.verification
    lines = []

    lines.append(f"# Verification Divergence: {checkpoint.project.name}")
    lines.append("")
    lines.append(f"**Generated:** {utc_now()}")
    lines.append(f"**Attempts:** {v.attempt_count} of {v.max_attempts}")
    lines.append("")
    lines.append("Verification failed on every allowed attempt. The run is stopped")
    lines.append("until one of the decisions below is approved.")
    lines.append("")

    lines.append("## Attempts")
    lines.append("")
    for number, failure in enumerate(v.failure_history[-v.max_attempts:], start=1):
        lines.append(f"### Attempt {number} ({failure.timestamp})")
        lines.append("")
        lines.append(f"- Reason: {failure.message}")
        if failure.failed_tests:
            lines.append(f"- Failed tests: {', '.join(failure.failed_tests)}")
        if failure.coverage is not None:
            lines.append(f"- Coverage: {failure.coverage:.1f}%")
        if failure.failing_items:
            lines.append(f"- Failing items: {_id_list(failure.failing_items)}")
        lines.append("")

    if v.quarantined_tests:
        lines.append("## Quarantined Tests")
        lines.append("")
        for test in v.quarantined_tests:
            lines.append(f"- {test}")
        lines.append("")

    lines.append("## Decisions")
    lines.append("")
    lines.append("- `narrow_scope`: drop the failing items and retry verification")
    lines.append("- `relax_threshold`: retry verification after adjusting configuration")
    lines.append("- `manual`: accept the current state as manually verified")
    lines.append("")
    lines.append(f"Run `autobuild approve {checkpoint.project.name} <decision>`.")
    return "\n".join(lines)


def time_budget_report(checkpoint: Checkpoint, elapsed_minutes: float, budget_minutes: int) -> str:
    """Report for a phase that ran past its wall-clock budget."""
    phase = checkpoint.phase.current
    lines = []
    lines.append(f"# Time Budget Exceeded: {checkpoint.project.name}")
    lines.append("")
    lines.append(f"**Phase:** {phase.display_name}")
    lines.append(f"**Elapsed:** {elapsed_minutes:.0f} minutes (budget {budget_minutes})")
    lines.append(f"**Open items:** {_id_list(list(checkpoint.work_progress.open_items))}")
    lines.append("")
    lines.append("## Decisions")
    lines.append("")
    lines.append("- `extend`: grant the phase another full budget")
    lines.append("- `reduce_scope`: close the lowest-priority open items, then extend")
    lines.append("- `proceed`: continue with no further time limit for this phase")
    return "\n".join(lines)


def reconciliation_report(project: str, result: ReconciliationResult) -> str:
    """Log of what reconciliation changed in the checkpoint."""
    lines = []
    lines.append(f"# Reconciliation: {project}")
    lines.append("")
    lines.append(f"**Generated:** {utc_now()}")
    lines.append("")
    if not result.has_changes:
        lines.append("Checkpoint and tracker agree.")
        return "\n".join(lines)

    lines.append("The tracker is treated as ground truth. Recorded progress was")
    lines.append("rewritten as follows:")
    lines.append("")
    lines.append(f"- Closed externally: {_id_list(result.newly_closed)}")
    lines.append(f"- Opened externally: {_id_list(result.newly_opened)}")
    lines.append(f"- Deleted externally: {_id_list(result.removed)}")
    if result.cleared_in_progress:
        lines.append(f"- In-progress item cleared: #{result.cleared_in_progress}")
    return "\n".join(lines)


def completion_report(checkpoint: Checkpoint) -> str:
    """Summary of a finished run, including every disclosed compromise."""
    v = checkpoint.verification
    rt = checkpoint.resource_tracking
    lines = []

    lines.append(f"# Build Complete: {checkpoint.project.name}")
    lines.append("")
    lines.append(f"**Started:** {checkpoint.project.started_at}")
    lines.append(f"**Finished:** {utc_now()}")
    lines.append(f"**Verification attempts:** {v.total_attempts}")
    lines.append(f"**Resource used:** {rt.cumulative_used:,} tokens")
    lines.append("")

    lines.append("## Work Items")
    lines.append("")
    lines.append("| Item | Title | Category | Estimate | Actual | Split |")
    lines.append("|---|---|---|---|---|---|")
    for item_id in sorted(checkpoint.work_items, key=item_sort_key):
        item = checkpoint.work_items[item_id]
        category = item.complexity_category.name if item.complexity_category else "-"
        state = "" if item.state == ItemState.CLOSED else " (open)"
        lines.append(
            f"| #{item.id}{state} | {item.title} | {category} | "
            f"{item.estimated_resource or 0:,} | {item.actual_resource or 0:,} | "
            f"{'yes' if item.required_split else 'no'} |"
        )
    lines.append("")

    lines.append("## Disclosed Compromises")
    lines.append("")
    if not (v.disclosed_gaps or v.quarantined_tests or checkpoint.work_progress.flagged_items):
        lines.append("None.")
    for gap in v.disclosed_gaps:
        lines.append(f"- {gap}")
    for test in v.quarantined_tests:
        lines.append(f"- Quarantined flaky test: {test}")
    if checkpoint.work_progress.flagged_items:
        lines.append(
            f"- Partially completed or descoped items: "
            f"{_id_list(list(checkpoint.work_progress.flagged_items))}"
        )
    return "\n".join(lines)


def threshold_report(result: OptimizationResult) -> str:
    """Markdown rendering of optimizer output."""
    lines = []
    lines.append("# Threshold Recommendations")
    lines.append("")
    lines.append(f"**Status:** {result.status.value}")
    lines.append(f"**Sample size:** {result.sample_size}")
    lines.append("")

    if not result.recommendations:
        lines.append("No changes recommended.")
        return "\n".join(lines)

    lines.append("| Parameter | Current | Recommended | Confidence | Sample |")
    lines.append("|---|---|---|---|---|")
    for rec in result.recommendations:
        lines.append(
            f"| `{rec.parameter_name}` | {rec.old_value:g} | {rec.new_value:g} | "
            f"{rec.confidence.name} | {rec.sample_size} |"
        )
    lines.append("")
    lines.append("## Reasoning")
    lines.append("")
    for rec in result.recommendations:
        lines.append(f"- `{rec.parameter_name}`: {rec.reasoning}")
    lines.append("")
    lines.append("Recommendations are advisory. Apply one with")
    lines.append("`autobuild apply-threshold <parameter> <value> --yes`.")
    return "\n".join(lines)


def threshold_report_json(result: OptimizationResult) -> str:
    """Raw structured optimizer output for approval tooling."""
    return json.dumps(result.to_dict(), indent=2)


def write_report(config: BuildConfig, project: str, kind: str, content: str) -> Path:
    """
    Save a report under .autobuild/reports/.

    Returns:
        Path of the written file.
    """
    ensure_dir(config.reports_path)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    path = config.reports_path / f"{project}-{kind}-{stamp}.md"
    safe_write(path, content)
    return path

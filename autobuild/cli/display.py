"""Display helpers and formatters for the CLI.

Contains Rich formatting utilities for phases, resource usage and project
displays. This module should NOT import from the command modules to avoid
circular imports.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from autobuild.models import (
    Checkpoint,
    ItemState,
    PhaseId,
    PhaseStatus,
    ReconciliationResult,
    ResumptionPoint,
    item_sort_key,
)

if TYPE_CHECKING:
    from autobuild.config import BuildConfig
    from autobuild.optimizer import OptimizationResult

# Phase display styles
PHASE_STYLES: dict[PhaseId, str] = {
    PhaseId.PHASE0_INFRA: "blue",
    PhaseId.PHASE1_DEFINITION: "blue",
    PhaseId.PHASE1_5_DECOMPOSITION: "yellow",
    PhaseId.PHASE2_ARCHITECTURE: "blue",
    PhaseId.PHASE3_IMPLEMENTATION: "cyan bold",
    PhaseId.PHASE4_QA: "magenta",
    PhaseId.PHASE5_VERIFICATION: "yellow",
    PhaseId.PHASE6_LEARNING: "green",
    PhaseId.DONE: "green bold",
    PhaseId.DIVERGENCE: "red bold",
}

STATUS_STYLES: dict[PhaseStatus, str] = {
    PhaseStatus.NOT_STARTED: "dim",
    PhaseStatus.IN_PROGRESS: "cyan",
    PhaseStatus.COMPLETE: "green",
    PhaseStatus.DIVERGENCE: "red",
}


def format_phase(phase: PhaseId) -> Text:
    """Format a phase as colored text."""
    return Text(phase.display_name, style=PHASE_STYLES.get(phase, "white"))


def format_status(status: PhaseStatus) -> Text:
    return Text(status.name.replace("_", " ").lower(), style=STATUS_STYLES.get(status, "white"))


def format_tokens(tokens: int) -> str:
    """Format a token count compactly."""
    if tokens == 0:
        return "-"
    if tokens >= 1000:
        return f"{tokens / 1000:.1f}K"
    return str(tokens)


def get_item_summary(checkpoint: Checkpoint) -> str:
    """Summary of item progress, e.g. '3/5 done, 1 flagged'."""
    progress = checkpoint.work_progress
    if not progress.total_items:
        return "-"
    parts = [f"{len(progress.completed_items)}/{progress.total_items} done"]
    if progress.flagged_items:
        parts.append(f"{len(progress.flagged_items)} flagged")
    return ", ".join(parts)


def show_all_projects(projects: list[tuple[str, Checkpoint | None]], console: Console) -> None:
    """Table of every project with a checkpoint."""
    if not projects:
        console.print("[dim]No projects found. Start one with: autobuild run NAME --request ...[/dim]")
        return

    table = Table(title="Projects", show_header=True, header_style="bold")
    table.add_column("Project", style="cyan")
    table.add_column("Phase")
    table.add_column("Status")
    table.add_column("Items")
    table.add_column("Session Tokens", justify="right")
    table.add_column("Updated", style="dim")

    for name, checkpoint in projects:
        if checkpoint is None:
            table.add_row(name, Text("corrupt", style="red bold"), "-", "-", "-", "-")
            continue
        rt = checkpoint.resource_tracking
        table.add_row(
            name,
            format_phase(checkpoint.phase.current),
            format_status(checkpoint.phase.status),
            get_item_summary(checkpoint),
            f"{format_tokens(rt.used)} / {format_tokens(rt.budget)}",
            checkpoint.project.last_updated,
        )
    console.print(table)


def show_project_detail(checkpoint: Checkpoint, console: Console) -> None:
    """Detailed view of one project."""
    rt = checkpoint.resource_tracking
    v = checkpoint.verification

    header = Text()
    header.append("Phase: ")
    header.append_text(format_phase(checkpoint.phase.current))
    header.append(" (")
    header.append_text(format_status(checkpoint.phase.status))
    header.append(")\n")
    header.append(f"Next: {checkpoint.derive_resume_hint()}\n")
    header.append(f"Session: {rt.session_id or '-'}  ")
    header.append(f"tokens {rt.used:,} / {rt.budget:,}")
    if rt.threshold_exceeded:
        header.append("  (budget nearly used)", style="yellow")
    header.append(f"\nLifetime tokens: {rt.cumulative_used:,}")
    header.append(f"\nVerification: attempt {v.attempt_count} of {v.max_attempts}")
    if v.passed:
        header.append("  passed", style="green")
    console.print(Panel(header, title=f"[bold]{checkpoint.project.name}[/bold]", expand=False))

    if checkpoint.pending_approval is not None:
        pending = checkpoint.pending_approval
        console.print(Panel(
            f"{pending.reason}\n\nOptions: {', '.join(pending.options)}",
            title=f"[yellow bold]Awaiting approval: {pending.kind}[/yellow bold]",
            border_style="yellow",
            expand=False,
        ))

    if checkpoint.work_items:
        table = Table(title="Work Items", show_header=True, header_style="bold")
        table.add_column("#", justify="right")
        table.add_column("Title")
        table.add_column("Kind")
        table.add_column("Priority")
        table.add_column("Score", justify="right")
        table.add_column("Category")
        table.add_column("Estimate", justify="right")
        table.add_column("State")

        in_progress = checkpoint.work_progress.in_progress_item
        flagged = checkpoint.work_progress.flagged_items
        for item_id in sorted(checkpoint.work_items, key=item_sort_key):
            item = checkpoint.work_items[item_id]
            if item_id == in_progress:
                state = Text(f"in progress {item.units_done}/{item.units_planned}", style="cyan bold")
            elif item.state == ItemState.CLOSED:
                state = Text("split" if item.required_split else "closed", style="green")
            else:
                state = Text("open", style="yellow")
            if item_id in flagged:
                state.append(" (flagged)", style="magenta")
            table.add_row(
                item.id,
                item.title,
                item.kind.name.lower(),
                item.priority.name.lower(),
                str(item.complexity_score if item.complexity_score is not None else "-"),
                item.complexity_category.name if item.complexity_category else "-",
                format_tokens(item.estimated_resource or 0),
                state,
            )
        console.print(table)

    if v.quarantined_tests or v.disclosed_gaps:
        console.print("[bold]Disclosed compromises:[/bold]")
        for gap in v.disclosed_gaps:
            console.print(f"  - {gap}")
        for test in v.quarantined_tests:
            console.print(f"  - quarantined: {test}")


def show_reconciliation(result: ReconciliationResult, console: Console) -> None:
    if not result.has_changes:
        return
    console.print("[yellow]Tracker changed since the last checkpoint:[/yellow]")
    if result.newly_closed:
        console.print(f"  closed:  {', '.join('#' + i for i in result.newly_closed)}")
    if result.newly_opened:
        console.print(f"  opened:  {', '.join('#' + i for i in result.newly_opened)}")
    if result.removed:
        console.print(f"  deleted: {', '.join('#' + i for i in result.removed)}")


def show_resumption(point: ResumptionPoint, console: Console) -> None:
    """One line describing where a resumed run re-enters."""
    if point.phase is None:
        return
    line = Text("Resuming at ")
    line.append_text(format_phase(point.phase))
    if point.item_id:
        line.append(f", item #{point.item_id}")
    if point.verification_attempt:
        line.append(f", verification attempt {point.verification_attempt}")
    console.print(line)


def show_recommendations(result: OptimizationResult, config: BuildConfig, console: Console) -> None:
    """Rich rendering of optimizer output."""
    console.print(
        f"[bold]Threshold analysis[/bold] ({result.sample_size} project records, "
        f"status: {result.status.value})"
    )
    if not result.recommendations:
        if result.status.value == "insufficient_sample":
            console.print(
                f"[dim]At least {config.optimizer.min_sample} records are needed "
                "before thresholds are tuned.[/dim]"
            )
        else:
            console.print("[green]Current thresholds look right. No changes recommended.[/green]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Parameter", style="cyan")
    table.add_column("Current", justify="right")
    table.add_column("Recommended", justify="right")
    table.add_column("Confidence")
    table.add_column("Sample", justify="right")
    confidence_styles = {"HIGH": "green", "MEDIUM": "yellow", "LOW": "red"}
    for rec in result.recommendations:
        table.add_row(
            rec.parameter_name,
            f"{rec.old_value:g}",
            f"{rec.new_value:g}",
            Text(rec.confidence.name, style=confidence_styles.get(rec.confidence.name, "white")),
            str(rec.sample_size),
        )
    console.print(table)
    for rec in result.recommendations:
        console.print(f"[dim]{rec.parameter_name}:[/dim] {rec.reasoning}")
    console.print()
    console.print("[dim]Apply with: autobuild apply-threshold <parameter> <value> --yes[/dim]")

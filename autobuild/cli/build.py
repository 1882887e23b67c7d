"""Build commands.

run, resume, status, approve and reset for one project. Commands that
change a checkpoint hold the project's run lock for their whole duration.

Note: This module is imported by cli/app.py after the main app is defined.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

import typer

from autobuild.checkpoint_store import CheckpointStore, list_projects
from autobuild.cli.app import app
from autobuild.cli.common import (
    build_components,
    create_agent,
    exit_with_error,
    get_config_or_default,
    get_console,
    init_autobuild_directory,
)
from autobuild.cli.display import (
    show_all_projects,
    show_project_detail,
    show_reconciliation,
    show_resumption,
)
from autobuild.config import BuildConfig
from autobuild.errors import AutobuildError, CorruptState
from autobuild.history import HistoryStore
from autobuild.logger import BuildLogger
from autobuild.models import Checkpoint, PhaseId, ProjectIdentity
from autobuild.resume import ResumeController
from autobuild.state_machine import PhaseStateMachine, project_record_from
from autobuild.tracker import WorkItemTracker

console = get_console()

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _validate_name(name: str) -> str:
    if not _NAME_PATTERN.match(name):
        console.print(
            f"[red]Error:[/red] Invalid project name '{name}'. "
            "Use letters, digits, '.', '_' and '-'."
        )
        raise typer.Exit(1)
    return name


def _drive(
    config: BuildConfig,
    store: CheckpointStore,
    tracker: WorkItemTracker,
    logger: BuildLogger,
) -> Checkpoint:
    """Run the state machine until it finishes or stops, inside a logged session."""
    agent = create_agent(config, logger)
    machine = PhaseStateMachine(config, store, tracker, agent, logger)

    checkpoint = store.load()
    session_id = (checkpoint.resource_tracking.session_id if checkpoint else None) or "unscoped"
    with logger.session_context(session_id):
        checkpoint = machine.run()

    if checkpoint.phase.current == PhaseId.DONE:
        console.print(f"[green bold]Build complete:[/green bold] {store.project}")
        console.print(f"[dim]Completion report written to {config.reports_path}[/dim]")
    elif checkpoint.resource_tracking.threshold_exceeded:
        rt = checkpoint.resource_tracking
        console.print(
            f"[yellow]Session budget nearly used[/yellow] ({rt.used:,} of {rt.budget:,} tokens). "
            "Progress is checkpointed."
        )
        console.print(f"[dim]Continue with: autobuild resume {store.project} --new-session[/dim]")
    return checkpoint


@app.command()
def run(
    name: str = typer.Argument(..., help="Project name."),
    request: Optional[str] = typer.Option(
        None,
        "--request",
        "-r",
        help="What to build.",
    ),
    request_file: Optional[Path] = typer.Option(
        None,
        "--request-file",
        help="Read the request from a file.",
        exists=True,
        dir_okay=False,
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Replace an unfinished run (it is recorded as abandoned).",
    ),
) -> None:
    """
    Start a new build.

    Examples:
        autobuild run todo-api --request "A REST API for todo lists"
        autobuild run todo-api --request-file request.md --force
    """
    _validate_name(name)
    text = request_file.read_text() if request_file else request
    if not text or not text.strip():
        console.print("[red]Error:[/red] Provide --request or --request-file.")
        raise typer.Exit(1)

    config = get_config_or_default()
    init_autobuild_directory(config)
    store, tracker, logger = build_components(config, name)
    controller = ResumeController(config, store, tracker, logger)

    try:
        with store.hold():
            controller.start_new(ProjectIdentity(name=name, request=text.strip()), force=force)
            console.print(f"[cyan]Started[/cyan] {name}")
            _drive(config, store, tracker, logger)
    except AutobuildError as e:
        exit_with_error(e, name)


@app.command()
def resume(
    name: str = typer.Argument(..., help="Project name."),
    new_session: bool = typer.Option(
        False,
        "--new-session",
        "-n",
        help="Start a fresh resource budget for this session.",
    ),
) -> None:
    """
    Continue a build from its checkpoint.

    The checkpoint is reconciled with the work tracker first; the tracker
    wins any disagreement, and the phase to re-enter is re-derived.
    """
    _validate_name(name)
    config = get_config_or_default()
    init_autobuild_directory(config)
    store, tracker, logger = build_components(config, name)
    controller = ResumeController(config, store, tracker, logger)

    try:
        with store.hold():
            point = controller.resume(new_session=new_session)
            if point.is_new:
                console.print(f"[red]Error:[/red] No checkpoint for '{name}'.")
                console.print(f"[dim]Start it with: autobuild run {name} --request ...[/dim]")
                raise typer.Exit(1)

            if point.reconciliation is not None:
                show_reconciliation(point.reconciliation, console)
            if point.phase == PhaseId.DONE:
                console.print(f"[green]{name} is already complete.[/green]")
                return
            show_resumption(point, console)
            _drive(config, store, tracker, logger)
    except AutobuildError as e:
        exit_with_error(e, name)


@app.command()
def status(
    name: Optional[str] = typer.Argument(
        None,
        help="Project to show in detail. If omitted, lists all projects.",
    ),
) -> None:
    """Show the project dashboard, or one project's checkpoint in detail."""
    config = get_config_or_default()

    if name is None:
        rows: list[tuple[str, Optional[Checkpoint]]] = []
        for project in list_projects(config):
            try:
                rows.append((project, CheckpointStore(config, project).load()))
            except CorruptState:
                rows.append((project, None))
        show_all_projects(rows, console)
        return

    _validate_name(name)
    try:
        checkpoint = CheckpointStore(config, name).load()
    except AutobuildError as e:
        exit_with_error(e, name)
    if checkpoint is None:
        console.print(f"[red]Error:[/red] No checkpoint for '{name}'.")
        raise typer.Exit(1)
    show_project_detail(checkpoint, console)


@app.command()
def approve(
    name: str = typer.Argument(..., help="Project name."),
    decision: str = typer.Argument(
        ...,
        help="divergence: narrow_scope | relax_threshold | manual; "
             "time budget: extend | reduce_scope | proceed",
    ),
) -> None:
    """
    Resolve a pending approval.

    Examples:
        autobuild approve todo-api narrow_scope
        autobuild approve todo-api extend
    """
    _validate_name(name)
    config = get_config_or_default()
    store, tracker, logger = build_components(config, name)
    machine = PhaseStateMachine(config, store, tracker, create_agent(config, logger), logger)

    try:
        with store.hold():
            checkpoint = machine.approve(decision)
    except AutobuildError as e:
        exit_with_error(e, name)

    console.print(
        f"[green]Approved[/green] {decision}. Next: {checkpoint.derive_resume_hint()}"
    )
    console.print(f"[dim]Continue with: autobuild resume {name}[/dim]")


@app.command()
def reset(
    name: str = typer.Argument(..., help="Project name."),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Delete even a checkpoint that cannot be parsed.",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip the confirmation prompt.",
    ),
) -> None:
    """
    Delete a project's checkpoint.

    An unfinished run is recorded in history as abandoned first. Items in
    the work tracker are left alone.
    """
    _validate_name(name)
    config = get_config_or_default()
    store, _, logger = build_components(config, name)

    if not store.exists():
        console.print(f"[yellow]No checkpoint for '{name}'.[/yellow]")
        raise typer.Exit(0)

    if not yes:
        if not typer.confirm(f"Delete the checkpoint for '{name}'?"):
            console.print("[dim]Cancelled.[/dim]")
            raise typer.Exit(0)

    try:
        with store.hold():
            try:
                existing = store.load()
            except CorruptState:
                if not force:
                    raise
                existing = None
            if existing is not None and existing.phase.current != PhaseId.DONE:
                HistoryStore(config.history_path, logger).append(
                    project_record_from(existing, outcome="abandoned")
                )
            store.delete(force=force)
    except AutobuildError as e:
        exit_with_error(e, name)

    console.print(f"[green]Checkpoint for '{name}' deleted.[/green]")

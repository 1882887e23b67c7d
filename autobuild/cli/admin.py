"""Admin and recovery commands.

Commands for clearing a stuck run lock, rolling a checkpoint back to its
backup, and reading the event log. These never run an agent.
"""
from __future__ import annotations

from typing import Optional

import typer
from rich.table import Table

from autobuild.checkpoint_store import CheckpointStore
from autobuild.cli.common import (
    build_components,
    exit_with_error,
    get_config_or_default,
    get_console,
)
from autobuild.errors import AutobuildError

# Create admin command group
app = typer.Typer(
    name="admin",
    help="Recovery and admin commands",
    no_args_is_help=True,
)

console = get_console()


# =============================================================================
# Unlock Command
# =============================================================================


@app.command()
def unlock(
    name: str = typer.Argument(..., help="Project name."),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Force unlock without confirmation.",
    ),
) -> None:
    """
    Remove a project's run lock.

    Use this when a crashed process left the lock behind and it is not
    yet old enough to be treated as stale.
    """
    config = get_config_or_default()
    store = CheckpointStore(config, name)

    if not store.lock_path.exists():
        console.print(f"[yellow]No lock found for {name}[/yellow]")
        raise typer.Exit(0)

    holder = store.lock_path.read_text().strip()
    console.print(f"[bold]Lock holder for {name}:[/bold] {holder or 'unknown'}")
    if not store.is_locked():
        console.print("[dim]The lock is stale and would be taken over by the next run.[/dim]")

    if not force:
        confirm = typer.confirm(
            "Are you sure you want to remove this lock? "
            "This may corrupt the run if the process is still alive."
        )
        if not confirm:
            console.print("[dim]Cancelled.[/dim]")
            raise typer.Exit(0)

    store.lock_path.unlink()
    console.print(f"[green]Lock removed for {name}.[/green]")


# =============================================================================
# Restore Command
# =============================================================================


@app.command()
def restore(
    name: str = typer.Argument(..., help="Project name."),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip the confirmation prompt.",
    ),
) -> None:
    """
    Replace the checkpoint with the copy taken before its last write.

    Use this when the checkpoint is corrupt. Run `autobuild resume NAME`
    afterwards so the restored document is reconciled with the tracker.
    """
    config = get_config_or_default()
    store, _, _ = build_components(config, name)

    if not yes:
        if not typer.confirm(f"Restore '{name}' from {store.backup_path.name}?"):
            console.print("[dim]Cancelled.[/dim]")
            raise typer.Exit(0)

    try:
        with store.hold():
            checkpoint = store.restore_backup()
    except AutobuildError as e:
        exit_with_error(e, name)

    console.print(
        f"[green]Restored[/green] {name} at {checkpoint.phase.name} "
        f"({checkpoint.project.last_updated})."
    )


# =============================================================================
# Logs Command
# =============================================================================


@app.command()
def logs(
    name: str = typer.Argument(..., help="Project name."),
    date: Optional[str] = typer.Option(None, "--date", "-d", help="Day to read (YYYY-MM-DD, default today)."),
    level: Optional[str] = typer.Option(None, "--level", "-l", help="Minimum level (debug, info, warn, error)."),
    event: Optional[str] = typer.Option(None, "--event", "-e", help="Only this event type."),
    limit: int = typer.Option(50, "--limit", "-n", help="Number of entries to show."),
) -> None:
    """Show a project's event log."""
    config = get_config_or_default()
    _, _, logger = build_components(config, name)
    entries = logger.read_logs(date=date, level=level, event_type=event)[-limit:]

    if not entries:
        console.print(f"[dim]No log entries for '{name}'.[/dim]")
        return

    level_styles = {"debug": "dim", "info": "white", "warn": "yellow", "error": "red"}
    table = Table(title=f"Events for {name}", show_header=True, header_style="bold")
    table.add_column("Time", style="dim", no_wrap=True)
    table.add_column("Level")
    table.add_column("Event", style="cyan")
    table.add_column("Details")
    for entry in entries:
        data = {k: v for k, v in entry.get("data", {}).items() if k != "component"}
        details = ", ".join(f"{k}={v}" for k, v in data.items())
        lvl = entry.get("level", "info")
        table.add_row(
            entry.get("timestamp", "")[11:19],
            f"[{level_styles.get(lvl, 'white')}]{lvl}[/]",
            entry.get("event_type", ""),
            details[:120],
        )
    console.print(table)

"""Main Typer app definition and routing.

This is the canonical entry point for the CLI. The app and callback are
defined here; command modules register onto the app when imported at the
bottom of this module.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from autobuild import __version__
from autobuild.cli.common import get_console, set_project_dir

# Create Typer app
app = typer.Typer(
    name="autobuild",
    help="Resumable, phase-sequenced build orchestration",
    add_completion=False,
)

# Rich console for output - use singleton from common module
console = get_console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"autobuild version {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    project: Optional[str] = typer.Option(
        None,
        "--project",
        "-p",
        help="Project directory holding config.yaml and .autobuild/ (default: current directory)",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    autobuild - drive a build from request to verified code, one checkpoint at a time.

    Every unit of work is checkpointed, so `autobuild resume NAME` continues
    any interrupted run exactly where it stopped.
    """
    if project:
        project_path = Path(project)
        if not project_path.is_dir():
            console.print(f"[red]Error: Project directory not found: {project}[/red]")
            raise typer.Exit(1)
        set_project_dir(str(project_path.absolute()))
    else:
        set_project_dir(None)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


# =========================================================================
# Command Registration
# =========================================================================

# Top-level build commands (run, resume, status, approve, reset)
import autobuild.cli.build  # noqa: F401, E402

# Threshold commands (optimize, apply-threshold)
import autobuild.cli.thresholds  # noqa: F401, E402

# Import and register admin commands
from autobuild.cli.admin import app as admin_app  # noqa: E402

app.add_typer(admin_app, name="admin")


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


__all__ = ["app", "cli_main"]

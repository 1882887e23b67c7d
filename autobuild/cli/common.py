"""Common utilities and global state for the CLI.

Contains project directory management, config loading, component wiring
and the mapping from orchestrator errors to exit codes.
This module should NOT import from the command modules to avoid circular imports.
"""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, NoReturn, Optional

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel

from autobuild.errors import AutobuildError, ErrorKind

if TYPE_CHECKING:
    from autobuild.agents.base import AgentCapability
    from autobuild.checkpoint_store import CheckpointStore
    from autobuild.config import BuildConfig
    from autobuild.logger import BuildLogger
    from autobuild.tracker import WorkItemTracker

# ============================================================================
# Global State
# ============================================================================

# Global project directory override (set via --project flag)
_project_dir: Optional[str] = None

# Console singleton
_console: Optional[Console] = None

EXIT_CODES: dict[ErrorKind, int] = {
    ErrorKind.APPROVAL_REQUIRED: 2,
    ErrorKind.VERIFICATION_DIVERGENCE: 2,
    ErrorKind.CORRUPT_STATE: 3,
    ErrorKind.LOCKED: 4,
    ErrorKind.EXTERNAL_CAPABILITY_FAILURE: 5,
}


def get_project_dir() -> Optional[str]:
    """Get the project directory override if set."""
    return _project_dir


def set_project_dir(path: Optional[str]) -> None:
    """Set the project directory override."""
    global _project_dir
    _project_dir = path


def get_console() -> Console:
    """Get or create the console singleton."""
    global _console
    if _console is None:
        _console = Console()
    return _console


# ============================================================================
# Config Helpers
# ============================================================================


def get_config_or_default() -> "BuildConfig":
    """
    Load config.yaml from the project directory, or defaults if it has none.

    An invalid config file is reported and exits with code 1.
    """
    from autobuild.config import DEFAULT_CONFIG_FILE, ConfigError
    from autobuild.config import get_config_or_default as load

    project_dir = get_project_dir()
    config_path = str(Path(project_dir) / DEFAULT_CONFIG_FILE) if project_dir else None
    try:
        return load(config_path)
    except ConfigError as e:
        get_console().print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1)


def init_autobuild_directory(config: "BuildConfig") -> None:
    """Initialize the .autobuild directory structure if it doesn't exist."""
    from autobuild.utils.fs import ensure_dir

    ensure_dir(config.autobuild_path)
    ensure_dir(config.state_path)
    ensure_dir(config.locks_path)
    ensure_dir(config.logs_path)
    ensure_dir(config.reports_path)


# ============================================================================
# Component Wiring
# ============================================================================


def build_components(
    config: "BuildConfig",
    project: str,
) -> tuple["CheckpointStore", "WorkItemTracker", "BuildLogger"]:
    """Store, tracker and logger for one project."""
    from autobuild.checkpoint_store import CheckpointStore
    from autobuild.logger import get_logger
    from autobuild.tracker import create_tracker

    logger = get_logger(project, config)
    return CheckpointStore(config, project, logger), create_tracker(config, logger), logger


def create_agent(config: "BuildConfig", logger: Optional["BuildLogger"] = None) -> "AgentCapability":
    """The agent capability backend used by run and resume."""
    from autobuild.agents.claude_cli import ClaudeCliAgent

    return ClaudeCliAgent(config, logger)


# ============================================================================
# Error Reporting
# ============================================================================


def exit_with_error(error: AutobuildError, project: Optional[str] = None) -> NoReturn:
    """
    Print an orchestrator error (and its report) and exit.

    Exit codes: 2 waiting on approval, 3 corrupt checkpoint, 4 locked,
    5 agent or tracker failure, 1 anything else.
    """
    console = get_console()
    console.print(f"[red]Error:[/red] {error}")
    if error.report:
        console.print(Panel(Markdown(error.report), border_style="yellow"))

    if project:
        if error.kind in (ErrorKind.APPROVAL_REQUIRED, ErrorKind.VERIFICATION_DIVERGENCE):
            console.print(f"[dim]Decide with: autobuild approve {project} <decision>[/dim]")
        elif error.resumable:
            console.print(f"[dim]Checkpoint kept. Retry with: autobuild resume {project}[/dim]")
        elif error.kind == ErrorKind.CORRUPT_STATE:
            console.print(
                f"[dim]Inspect the file, or try: autobuild admin restore {project}[/dim]"
            )
    raise typer.Exit(EXIT_CODES.get(error.kind, 1))

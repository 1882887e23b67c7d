"""CLI package for autobuild.

Modules:
    app.py        - Main Typer app, version callback, command registration
    build.py      - Build commands (run, resume, status, approve, reset)
    thresholds.py - Threshold commands (optimize, apply-threshold)
    admin.py      - Recovery commands (unlock, restore, logs)
    display.py    - Rich formatting utilities (format_phase, show_project_detail, etc.)
    common.py     - Shared helpers (get_console, get_config_or_default, exit codes)

Usage:
    from autobuild.cli import app, cli_main
"""
from autobuild.cli.app import app, cli_main

__all__ = ["app", "cli_main"]

"""Threshold commands.

`optimize` reads project history and prints advisory recommendations;
`apply-threshold` is the only way a recommendation reaches config.yaml,
and it always needs explicit confirmation.

Note: This module is imported by cli/app.py after the main app is defined.
"""
from __future__ import annotations

from typing import Any, Optional, Union

import typer

from autobuild.cli.app import app
from autobuild.cli.common import get_config_or_default, get_console
from autobuild.cli.display import show_recommendations
from autobuild.config import BuildConfig, ConfigError, set_config_value
from autobuild.history import HistoryStore
from autobuild.logger import get_logger
from autobuild.optimizer import ThresholdOptimizer
from autobuild.reports import threshold_report, threshold_report_json, write_report

console = get_console()

# Log stream for optimizer activity, separate from per-project logs.
OPTIMIZER_LOG = "optimizer"


def _parse_value(raw: str) -> Union[int, float]:
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        raise typer.BadParameter(f"'{raw}' is not a number")


def _current_value(config: BuildConfig, dotted_key: str) -> Optional[Any]:
    node: Any = config
    for part in dotted_key.split("."):
        if not hasattr(node, part):
            return None
        node = getattr(node, part)
    return node


@app.command()
def optimize(
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Print the raw structured result instead of a table.",
    ),
    save: bool = typer.Option(
        False,
        "--save",
        "-s",
        help="Also write a markdown report to .autobuild/reports/.",
    ),
    limit: Optional[int] = typer.Option(
        None,
        "--limit",
        "-n",
        help="Only consider the most recent N project records.",
    ),
) -> None:
    """
    Recommend threshold changes from past projects.

    Nothing is changed; apply a recommendation with apply-threshold.
    """
    config = get_config_or_default()
    logger = get_logger(OPTIMIZER_LOG, config)
    history = HistoryStore(config.history_path, logger).load(limit=limit)
    result = ThresholdOptimizer(config, logger).analyze(history)

    if json_output:
        print(threshold_report_json(result))
    else:
        show_recommendations(result, config, console)

    if save:
        path = write_report(config, OPTIMIZER_LOG, "thresholds", threshold_report(result))
        if not json_output:
            console.print(f"[dim]Report written to {path}[/dim]")


@app.command("apply-threshold")
def apply_threshold(
    parameter: str = typer.Argument(..., help="Dotted parameter name, e.g. complexity.simple_max"),
    value: str = typer.Argument(..., help="New value."),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Confirm the change without prompting.",
    ),
) -> None:
    """
    Write one threshold value into config.yaml.

    Examples:
        autobuild apply-threshold complexity.simple_max 420 --yes
    """
    config = get_config_or_default()
    new_value = _parse_value(value)
    old_value = _current_value(config, parameter)
    if old_value is None:
        console.print(f"[red]Error:[/red] Unknown parameter '{parameter}'.")
        raise typer.Exit(1)

    if not yes:
        if not typer.confirm(f"Change {parameter} from {old_value} to {new_value}?"):
            console.print("[dim]Cancelled.[/dim]")
            raise typer.Exit(0)

    try:
        set_config_value(config.config_path, parameter, new_value)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    get_logger(OPTIMIZER_LOG, config).log("threshold_applied", {
        "component": "cli",
        "parameter": parameter,
        "old_value": old_value,
        "new_value": new_value,
    }, level="warn")
    console.print(
        f"[green]Updated[/green] {parameter}: {old_value} -> {new_value} in {config.config_path}"
    )

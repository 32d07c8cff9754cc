"""
CLI utility helpers: plugin loading and output formatting.
"""

from __future__ import annotations

import importlib
import json
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from kanopy.cr.models import ActionSet, ActionSetState, ActionState, PhaseState

console = Console()
err_console = Console(stderr=True)

_STATE_STYLES = {
    ActionSetState.COMPLETE.value: "green",
    ActionState.SUCCEEDED.value: "green",
    PhaseState.SUCCEEDED.value: "green",
    ActionSetState.FAILED.value: "red",
    ActionSetState.RUNNING.value: "yellow",
    ActionSetState.PENDING.value: "dim",
}


def load_plugins(modules: list[str] | None) -> None:
    """Import plugin modules; importing them registers their functions."""
    for module in modules or []:
        try:
            importlib.import_module(module)
        except ImportError as e:
            err_console.print(f"[bold red]Error[/bold red]: cannot import plugin '{module}': {e}")
            raise typer.Exit(code=2) from e


def styled(state: str) -> str:
    style = _STATE_STYLES.get(state)
    return f"[{style}]{state}[/{style}]" if style else state


def print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def print_actionset(actionset: ActionSet) -> None:
    """Render one ActionSet: a header line plus a phase table per action."""
    status = actionset.status
    state = status.state.value if status else "pending"
    console.print(f"[bold]ActionSet[/bold] {actionset.namespace}/{actionset.name}: {styled(state)}")
    if status is None:
        return

    for action in status.actions:
        table = Table(title=f"{action.name} ({action.blueprint}) → {action.object.name}: {action.state.value}")
        table.add_column("Phase", style="cyan")
        table.add_column("Func")
        table.add_column("State")
        table.add_column("Output")
        table.add_column("Error", style="red")
        for phase in action.phases:
            table.add_row(
                phase.name,
                phase.func,
                styled(phase.state.value),
                ", ".join(f"{k}={v}" for k, v in sorted(phase.output.items())),
                phase.error.message if phase.error else "",
            )
        console.print(table)
        if action.error and not any(p.error for p in action.phases):
            err_console.print(f"  [red]{action.error.type}[/red]: {action.error.message}")
        for name, artifact in sorted(action.artifacts.items()):
            values = ", ".join(f"{k}={v}" for k, v in sorted(artifact.key_values.items()))
            console.print(f"  artifact [bold]{name}[/bold]: {values}")

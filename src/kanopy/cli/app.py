"""
Root Typer application for the kanopy CLI.

``kanopy run`` loads manifests into an in-memory store, imports plugin
modules that register functions, and reconciles every ActionSet found.
``kanopy serve`` runs the controller loop behind the HTTP health and
metrics endpoints.
"""

from __future__ import annotations

import sys
from pathlib import Path

import typer
from typer import Typer

from kanopy import __version__
from kanopy.cli.utils import console, err_console, load_plugins, print_actionset, print_json
from kanopy.core.errors import KanopyError
from kanopy.core.logging import configure_logging
from kanopy.core.settings import ActionExecution, get_settings
from kanopy.cr.manifest import DEFAULT_NAMESPACE, apply_manifests, from_yaml_file
from kanopy.cr.models import ACTIONSET_RESOURCE, ActionSetState
from kanopy.engine.reconciler import ActionSetReconciler
from kanopy.functions.registry import get_default_registry
from kanopy.store.memory import InMemoryObjectStore

app = Typer(
    name="kanopy",
    help="Run Blueprint actions declared in ActionSets.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"kanopy {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Override KANOPY_LOG_LEVEL."),
) -> None:
    """kanopy CLI: execute blueprints, list functions, serve health."""
    settings = get_settings()
    configure_logging(
        level=log_level or settings.log_level,
        json_format=settings.log_format == "json",
        stream=sys.stderr,
    )


# ── Commands ─────────────────────────────────────────────────────────────


@app.command("run")
def run(
    manifests: list[Path] = typer.Argument(..., exists=True, dir_okay=False, help="YAML manifest files"),
    plugin: list[str] = typer.Option([], "--plugin", "-p", help="Module that registers functions"),
    namespace: str = typer.Option(DEFAULT_NAMESPACE, "--namespace", "-n", help="Default namespace"),
    sequential: bool = typer.Option(False, "--sequential", help="Run actions one at a time"),
    as_json: bool = typer.Option(False, "--json", help="Print ActionSets as JSON"),
) -> None:
    """Load manifests and reconcile every ActionSet they declare."""
    load_plugins(plugin)
    registry = get_default_registry()
    registry.freeze()

    settings = get_settings()
    if sequential:
        settings = settings.model_copy(update={"action_execution": ActionExecution.SEQUENTIAL})

    store = InMemoryObjectStore()
    try:
        for path in manifests:
            apply_manifests(store, from_yaml_file(path, default_namespace=namespace))
    except KanopyError as e:
        err_console.print(f"[bold red]Error[/bold red]: {e.message}")
        raise typer.Exit(code=2) from e

    reconciler = ActionSetReconciler(store, registry, settings=settings)
    results = []
    for stored in store.list(ACTIONSET_RESOURCE):
        result = reconciler.reconcile(stored.ref)
        if result is not None:
            results.append(result)

    if not results:
        err_console.print("[yellow]No ActionSets found in the given manifests.[/yellow]")

    if as_json:
        print_json([r.to_dict() for r in results])
    else:
        for result in results:
            print_actionset(result)

    if any(r.status is None or r.status.state != ActionSetState.COMPLETE for r in results):
        raise typer.Exit(code=1)


@app.command("functions")
def functions(
    plugin: list[str] = typer.Option([], "--plugin", "-p", help="Module that registers functions"),
    as_json: bool = typer.Option(False, "--json", help="Print as JSON"),
) -> None:
    """List registered functions."""
    load_plugins(plugin)
    entries = get_default_registry().list_with_metadata()
    if as_json:
        print_json(entries)
        return
    if not entries:
        console.print("[dim]No functions registered.[/dim]")
        return

    from rich.table import Table  # noqa: PLC0415

    table = Table(title="Functions")
    table.add_column("Name", style="cyan")
    table.add_column("Required")
    table.add_column("Optional")
    table.add_column("Description")
    for entry in entries:
        table.add_row(
            entry["name"],
            ", ".join(entry["required_args"]),
            ", ".join(entry["optional_args"]),
            entry["description"],
        )
    console.print(table)


@app.command("version")
def version() -> None:
    """Print the kanopy version."""
    typer.echo(f"kanopy {__version__}")


@app.command("serve")
def serve(
    manifests: list[Path] | None = typer.Argument(
        None, exists=True, dir_okay=False, help="Manifests to preload"
    ),
    plugin: list[str] = typer.Option([], "--plugin", "-p", help="Module that registers functions"),
    host: str | None = typer.Option(None, "--host", "-h", help="Bind address (default KANOPY_API_HOST)"),
    port: int | None = typer.Option(None, "--port", help="Bind port (default KANOPY_API_PORT)"),
) -> None:
    """Run the controller loop behind the health and metrics endpoints."""
    import uvicorn  # noqa: PLC0415

    from kanopy.api.app import create_app  # noqa: PLC0415

    load_plugins(plugin)
    settings = get_settings()
    store = InMemoryObjectStore()
    try:
        for path in manifests or []:
            apply_manifests(store, from_yaml_file(path))
    except KanopyError as e:
        err_console.print(f"[bold red]Error[/bold red]: {e.message}")
        raise typer.Exit(code=2) from e

    api = create_app(store=store, settings=settings, registry=get_default_registry(), run_controller=True)
    bind_host, bind_port = host or settings.api_host, port or settings.api_port
    console.print(f"[bold green]Starting kanopy[/bold green] on {bind_host}:{bind_port}")
    uvicorn.run(api, host=bind_host, port=bind_port, log_level=settings.log_level.lower())

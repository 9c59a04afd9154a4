"""Command line interface for running leadflow sweeps, listeners and the API."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer

from .config import load_config
from .contracts import RunStatus
from .errors import ContactNotFound, StorageError, TemplateError
from .listener import EventListener
from .persistence import get_repository
from .runtime import build_runtime
from .templates import parse_template_file

app = typer.Typer(help="CLI for leadflow workflows")

# Command groups
run_app = typer.Typer(help="Commands for inspecting workflow runs")
events_app = typer.Typer(help="Commands for consuming provider events")
template_app = typer.Typer(help="Commands for workflow templates")

app.add_typer(run_app, name="run")
app.add_typer(events_app, name="events")
app.add_typer(template_app, name="template")


@app.callback()
def main(
    log_level: str = typer.Option("INFO", "--log-level", help="Python logging level"),
) -> None:
    """Leadflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("sweep")
def sweep(
    limit: Optional[int] = typer.Option(None, help="Maximum runs to process"),
    config: Optional[Path] = typer.Option(None, help="Path to config.yaml"),
) -> None:
    """Execute one step of every due run.

    Meant to be called periodically (cron, a scheduler, or a loop). Exits
    with code 1 when the run store is unavailable.

    Example:
        leadflow sweep --limit 50
    """
    runtime = build_runtime(load_config(str(config) if config else None))
    try:
        outcomes = asyncio.run(runtime.sweeper.sweep(limit))
    except StorageError as e:
        typer.secho(f"Run store unavailable: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    if not outcomes:
        typer.echo("No runs due")
        return
    for outcome in outcomes:
        typer.echo(
            f"{outcome.run_id}\t{outcome.node_id}\t{outcome.transition.value}\t{outcome.status.value}"
        )


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Bind address"),
    port: int = typer.Option(8000, help="Bind port"),
    config: Optional[Path] = typer.Option(None, help="Path to config.yaml"),
) -> None:
    """Serve the webhook and sweep API with uvicorn."""
    import uvicorn

    from .server import create_app

    runtime = build_runtime(load_config(str(config) if config else None))
    typer.echo(f"Serving leadflow on http://{host}:{port}")
    uvicorn.run(create_app(runtime), host=host, port=port)


@events_app.command("listen")
def events_listen(
    lifespan: Optional[float] = typer.Option(
        None, help="Listener timeout in seconds (default: run indefinitely)"
    ),
    config: Optional[Path] = typer.Option(None, help="Path to config.yaml"),
) -> None:
    """Consume provider events from the configured transport.

    Example:
        leadflow events listen --lifespan 300
    """
    runtime = build_runtime(load_config(str(config) if config else None))
    listener = EventListener(runtime.transport, runtime.gateway)
    typer.echo("Listening for provider events")
    asyncio.run(listener.start(lifespan=lifespan))
    typer.echo(f"Handled {listener.handled} events")


@run_app.command("list")
def run_list(
    status: Optional[RunStatus] = typer.Option(None, help="Filter by status"),
    contact: Optional[str] = typer.Option(None, help="Filter by contact id"),
    limit: int = typer.Option(50, help="Maximum runs to show"),
) -> None:
    """List recorded workflow runs, newest first."""
    repo = get_repository()

    async def _list():
        return await repo.list_runs(status=status, contact_id=contact, limit=limit)

    runs = asyncio.run(_list())
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(
            f"{run.id}\t{run.workflow_id}\t{run.contact_id}\t{run.status.value}\t{run.current_node_id}"
        )


@run_app.command("start")
def run_start(
    workflow_id: str,
    contact_id: str,
    config: Optional[Path] = typer.Option(None, help="Path to config.yaml"),
) -> None:
    """Start a workflow for a contact, or show the run already active for it.

    Example:
        leadflow run start new_lead c1
    """
    runtime = build_runtime(load_config(str(config) if config else None))
    try:
        run, created = asyncio.run(runtime.start_run(workflow_id, contact_id))
    except (TemplateError, ContactNotFound, StorageError) as e:
        typer.secho(f"Could not start run: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    verb = "Started" if created else "Already active:"
    typer.echo(f"{verb} run {run.id} at node {run.current_node_id}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """Show the state and context of a single run."""
    repo = get_repository()

    async def _get():
        return await repo.get_run(run_id)

    run = asyncio.run(_get())
    if not run:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.id}: {run.status.value}")
    typer.echo(f"Workflow: {run.workflow_id}  Contact: {run.contact_id}")
    typer.echo(f"Current node: {run.current_node_id}")
    if run.next_run_at:
        typer.echo(f"Next run at: {run.next_run_at.isoformat()}")
    if run.correlation_id:
        typer.echo(f"Waiting on: {run.correlation_id}")
    for key, value in run.context.items():
        typer.echo(f"  {key}: {value}")


@template_app.command("check")
def template_check(path: Path) -> None:
    """Validate one template file or every template below a directory."""
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    files = [path] if path.is_file() else sorted(
        p for p in path.rglob("*") if p.suffix in {".yaml", ".yml", ".json"}
    )
    if not files:
        typer.echo("No templates found.")
        return

    failed = False
    for file in files:
        try:
            template = parse_template_file(file)
        except TemplateError as exc:
            typer.secho(f"{file}: {exc}", fg=typer.colors.RED)
            failed = True
            continue
        problems = template.validate_graph()
        if problems:
            failed = True
            for problem in problems:
                typer.secho(f"{file}: {problem}", fg=typer.colors.RED)
        else:
            typer.echo(f"{file}: {template.id} OK ({len(template.nodes)} nodes)")
    if failed:
        raise typer.Exit(code=1)

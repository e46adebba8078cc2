"""CLI entry point for the Stitch engine.

Commands:
- stitch init: Create .stitch/ with a default config and database
- stitch validate / publish: Compile and publish workflow graphs from YAML
- stitch canvas: Save a journey canvas from YAML
- stitch run / status / runs / timeline: Start runs and inspect their state
- stitch callback / retry / complete: Re-entry points for waiting nodes
- stitch entity / journey / move: Entities on the UX spine
- stitch sweep: Expire overdue UX waits
- stitch serve: Run the HTTP API
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import TypeVar

import click
import pydantic
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from stitch.core.compiler import compile_graph
from stitch.core.config import (
    CONFIG_DIR,
    CONFIG_FILE,
    DEFAULT_CONFIG,
    EngineSettings,
    configure_logging,
)
from stitch.core.errors import GraphValidationError, StitchError
from stitch.core.graph_schema import EntityType, JourneyCanvas, NodeStatus, WorkflowGraph
from stitch.core.models import CallbackOutcome, Entity, JourneyEvent, RunStatus
from stitch.core.runtime import Runtime, build_runtime
from stitch.core.state import Database
from stitch.core.worker import TimeoutSweeper

console = Console()

ModelT = TypeVar("ModelT", bound=pydantic.BaseModel)

STATUS_STYLES = {
    NodeStatus.PENDING: "dim",
    NodeStatus.RUNNING: "blue",
    NodeStatus.WAITING_FOR_USER: "yellow",
    NodeStatus.COMPLETED: "green",
    NodeStatus.FAILED: "red",
}


def get_repo_path() -> Path:
    """Get the project path (current directory)."""
    return Path.cwd()


def _settings() -> EngineSettings:
    try:
        return EngineSettings.load(get_repo_path())
    except (ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        sys.exit(1)


def _runtime() -> Runtime:
    return build_runtime(_settings())


def _load_yaml_model(path: str, model: type[ModelT]) -> ModelT:
    """Load a YAML file into ``model``, printing readable errors and exiting on failure."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
        if not isinstance(data, dict):
            console.print(
                f"[red]Error: Invalid YAML content in '{path}'. "
                f"Expected a dictionary, got {type(data).__name__}.[/red]"
            )
            sys.exit(1)
        return model(**data)
    except yaml.YAMLError as e:
        console.print(f"[red]Error parsing YAML file '{path}':[/red]")
        console.print(f"  {e}")
        sys.exit(1)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {loc}: {err['msg']}")
        sys.exit(1)


def _parse_json(value: str | None, option: str):
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON ({e})", param_hint=option)


def _print_validation_errors(errors: list[str]) -> None:
    console.print("[red]Validation errors:[/red]")
    for error in errors:
        console.print(f"  - {error}")


def _fail(e: StitchError) -> None:
    console.print(f"[red]Error:[/red] {e}")
    sys.exit(1)


@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Log engine activity to stderr")
def main(verbose: bool) -> None:
    """Stitch - durable workflow graphs with journey stitching."""
    if verbose:
        configure_logging("DEBUG")


@main.command()
def init() -> None:
    """Initialize .stitch/ in the current directory."""
    stitch_dir = get_repo_path() / CONFIG_DIR

    if (stitch_dir / CONFIG_FILE).exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    stitch_dir.mkdir(parents=True, exist_ok=True)
    (stitch_dir / CONFIG_FILE).write_text(DEFAULT_CONFIG)
    settings = _settings()
    Database(settings.db_path)

    console.print(
        Panel(
            "[green]Project initialized![/green]\n\n"
            f"Created: {stitch_dir}\n"
            f"- {CONFIG_FILE}: Engine configuration\n"
            f"- {settings.db_path.name}: Graph versions, runs and journeys",
            title="Stitch Initialized",
        )
    )


# ========== Graphs ==========


@main.command()
@click.argument("graph_file", type=click.Path(exists=True))
def validate(graph_file: str) -> None:
    """Compile a workflow graph without publishing it."""
    graph = _load_yaml_model(graph_file, WorkflowGraph)
    try:
        compiled = compile_graph(graph)
    except GraphValidationError as e:
        _print_validation_errors(e.errors)
        sys.exit(1)

    console.print("[green]Graph validation passed[/green]")
    console.print(f"  Nodes: {len(compiled.nodes)}")
    console.print(f"  Edges: {len(compiled.edges)}")
    console.print(f"  Entry nodes: {', '.join(compiled.entry_nodes)}")
    console.print(f"  Terminal nodes: {', '.join(compiled.terminal_nodes)}")
    console.print(f"  Parallel levels: {len(graph.analyze_parallelism())}")
    for splitter_id, collectors in compiled.splitter_collectors.items():
        console.print(f"  Fan-out: {splitter_id} -> {', '.join(collectors)}")
    for splitter_id, members in compiled.branch_regions.items():
        console.print(f"  Branch region {splitter_id}: {', '.join(sorted(members)) or '-'}")


@main.command()
@click.argument("graph_file", type=click.Path(exists=True))
def publish(graph_file: str) -> None:
    """Publish a new immutable version of a workflow graph."""
    graph = _load_yaml_model(graph_file, WorkflowGraph)
    runtime = _runtime()
    try:
        version = runtime.engine.graphs.publish(graph)
    except GraphValidationError as e:
        _print_validation_errors(e.errors)
        sys.exit(1)
    finally:
        runtime.engine.close()

    console.print(f"[green]Published {version.id}[/green] ({version.name})")


@main.command()
@click.argument("canvas_file", type=click.Path(exists=True))
def canvas(canvas_file: str) -> None:
    """Save (or replace) a journey canvas."""
    journey_canvas = _load_yaml_model(canvas_file, JourneyCanvas)
    runtime = _runtime()
    try:
        runtime.engine.graphs.save_canvas(journey_canvas)
    except GraphValidationError as e:
        _print_validation_errors(e.errors)
        sys.exit(1)
    finally:
        runtime.engine.close()

    ux_nodes = [n.id for n in journey_canvas.nodes if journey_canvas.is_ux_node(n.id)]
    console.print(f"[green]Saved canvas {journey_canvas.id}[/green]")
    console.print(f"  UX nodes: {', '.join(ux_nodes) or '-'}")
    console.print(f"  System paths: {len(journey_canvas.system_paths)}")


# ========== Runs ==========


def _print_status(runtime: Runtime, run_id: str) -> RunStatus:
    report = runtime.engine.get_status(run_id)
    style = {RunStatus.COMPLETED: "green", RunStatus.FAILED: "red"}.get(report.status, "blue")
    console.print(
        Panel(
            f"[bold]Status:[/] [{style}]{report.status.value}[/]",
            title=f"Run: {run_id}",
        )
    )

    table = Table(title="Nodes")
    table.add_column("Node", style="cyan")
    table.add_column("Status")
    table.add_column("Output / Error", style="white")
    for key, node in sorted(report.nodes.items()):
        detail = node.error if node.error else json.dumps(node.output, default=str)
        table.add_row(key, f"[{STATUS_STYLES[node.status]}]{node.status.value}[/]", detail)
    console.print(table)

    if report.final_outputs is not None:
        console.print("[bold]Final outputs:[/bold]")
        console.print(json.dumps(report.final_outputs, indent=2, default=str))
    return report.status


@main.command()
@click.argument("version_id")
@click.option("--input", "input_json", help="Run input as JSON")
@click.option("--entity", "entity_id", help="Entity the run acts for")
@click.option("--wait", is_flag=True, help="Poll until the run completes or fails")
@click.option("--timeout", type=float, default=None, help="Seconds to wait with --wait")
def run(
    version_id: str,
    input_json: str | None,
    entity_id: str | None,
    wait: bool,
    timeout: float | None,
) -> None:
    """Start a run of a published graph version."""
    run_input = _parse_json(input_json, "--input")
    runtime = _runtime()
    try:
        run_id = runtime.engine.start_run(version_id, run_input=run_input, entity_id=entity_id)
        console.print(f"[blue]Started run: {run_id}[/blue]")

        if wait:
            sweeper = TimeoutSweeper(runtime.engine, poll_interval=runtime.settings.sweep_interval)
            asyncio.run(sweeper.run_until_complete(run_id, timeout=timeout))

        final_status = _print_status(runtime, run_id)
    except StitchError as e:
        _fail(e)
    finally:
        runtime.engine.close()

    if final_status == RunStatus.FAILED:
        sys.exit(1)


@main.command()
@click.argument("run_id")
def status(run_id: str) -> None:
    """Show a run's derived status and node states."""
    runtime = _runtime()
    try:
        _print_status(runtime, run_id)
    except StitchError as e:
        _fail(e)
    finally:
        runtime.engine.close()


@main.command()
@click.option("--entity", "entity_id", help="Only runs acting for this entity")
@click.option("--limit", type=click.IntRange(min=1), default=20, help="Maximum runs to show")
def runs(entity_id: str | None, limit: int) -> None:
    """List recent runs, newest first."""
    runtime = _runtime()
    try:
        recent = runtime.engine.runs.list_runs(entity_id, limit)
    finally:
        runtime.engine.close()

    if not recent:
        console.print("[yellow]No runs found[/yellow]")
        return
    table = Table(title="Runs")
    table.add_column("Run", style="cyan")
    table.add_column("Version", style="green")
    table.add_column("Entity")
    table.add_column("UX node")
    table.add_column("Started", style="dim")
    table.add_column("Completed", style="dim")
    for r in recent:
        table.add_row(
            r.id,
            r.version_id,
            r.entity_id or "-",
            r.trigger.ux_node_id or "-",
            r.created_at.isoformat() if r.created_at else "-",
            r.completed_at.isoformat() if r.completed_at else "-",
        )
    console.print(table)


@main.command()
@click.argument("run_id")
def timeline(run_id: str) -> None:
    """Show the journey events (movements and failures) a run recorded."""
    runtime = _runtime()
    try:
        events = runtime.stitcher.get_timeline(run_id)
    except StitchError as e:
        _fail(e)
    finally:
        runtime.engine.close()
    _print_events(f"Timeline: {run_id}", events)


def _print_events(title: str, events: list[JourneyEvent]) -> None:
    table = Table(title=title)
    table.add_column("#", style="dim")
    table.add_column("Event", style="cyan")
    table.add_column("Node / Edge", style="green")
    table.add_column("Run", style="dim")
    table.add_column("Detail", style="white")
    table.add_column("When", style="white")
    for event in events:
        table.add_row(
            str(event.id),
            event.event_type.value,
            event.node_id or event.edge_id or "-",
            event.run_id or "-",
            event.metadata.get("error") or event.metadata.get("reason") or "",
            event.timestamp.isoformat() if event.timestamp else "-",
        )
    console.print(table)


@main.command()
@click.argument("run_id")
@click.argument("node_key")
@click.option(
    "--status", "outcome", type=click.Choice(["completed", "failed"]), required=True
)
@click.option("--output", "output_json", help="Worker output as JSON")
@click.option("--error", help="Failure message")
def callback(
    run_id: str, node_key: str, outcome: str, output_json: str | None, error: str | None
) -> None:
    """Deliver an async worker outcome by hand."""
    output = _parse_json(output_json, "--output")
    runtime = _runtime()
    try:
        applied = runtime.engine.on_callback(
            run_id, node_key, CallbackOutcome(status=outcome, output=output, error=error)
        )
    except StitchError as e:
        _fail(e)
    finally:
        runtime.engine.close()

    if applied:
        console.print(f"[green]Callback applied to {node_key}[/green]")
    else:
        console.print(f"[yellow]{node_key} already {outcome}; nothing to do[/yellow]")


@main.command()
@click.argument("run_id")
@click.argument("node_key")
def retry(run_id: str, node_key: str) -> None:
    """Re-dispatch a failed node."""
    runtime = _runtime()
    try:
        new_status = runtime.engine.retry(run_id, node_key)
    except StitchError as e:
        _fail(e)
    finally:
        runtime.engine.close()
    console.print(f"Retried {node_key}: [{STATUS_STYLES[new_status]}]{new_status.value}[/]")


@main.command()
@click.argument("run_id")
@click.argument("node_key")
@click.option("--output", "output_json", help="UX output as JSON")
def complete(run_id: str, node_key: str, output_json: str | None) -> None:
    """Complete a UX node that is waiting for user input."""
    output = _parse_json(output_json, "--output")
    runtime = _runtime()
    try:
        runtime.engine.complete(run_id, node_key, output)
    except StitchError as e:
        _fail(e)
    finally:
        runtime.engine.close()
    console.print(f"[green]Completed {node_key}[/green]")


# ========== Entities & Journeys ==========


@main.command()
@click.argument("entity_id")
@click.option("--name", required=True)
@click.option("--canvas", "canvas_id", required=True, help="Canvas the entity travels on")
@click.option("--email")
@click.option(
    "--type",
    "entity_type",
    type=click.Choice([t.value for t in EntityType]),
    default=EntityType.LEAD.value,
)
@click.option("--start", is_flag=True, help="Start the journey at the canvas entry node")
def entity(
    entity_id: str, name: str, canvas_id: str, email: str | None, entity_type: str, start: bool
) -> None:
    """Create an entity on a canvas."""
    runtime = _runtime()
    try:
        runtime.engine.entities.create_entity(
            Entity(
                id=entity_id,
                name=name,
                email=email,
                entity_type=EntityType(entity_type),
                canvas_id=canvas_id,
            )
        )
        console.print(f"[green]Created entity {entity_id}[/green]")
        if start:
            run_id = runtime.stitcher.start_journey(entity_id)
            placed = runtime.engine.entities.get_entity(entity_id)
            console.print(f"  Placed at {placed.current_node_id}")
            if run_id:
                console.print(f"  System path run: {run_id}")
    except StitchError as e:
        _fail(e)
    finally:
        runtime.engine.close()


@main.command()
@click.argument("entity_id")
def journey(entity_id: str) -> None:
    """Show an entity's position and journey history."""
    runtime = _runtime()
    try:
        current = runtime.engine.entities.get_entity(entity_id)
        events = runtime.stitcher.get_journey(entity_id)
    except StitchError as e:
        _fail(e)
    finally:
        runtime.engine.close()

    console.print(
        Panel(
            f"[bold]Canvas:[/] {current.canvas_id or '-'}\n"
            f"[bold]Position:[/] {current.current_node_id or '-'}\n"
            f"[bold]Type:[/] {current.entity_type.value}",
            title=f"Entity: {current.name}",
        )
    )
    _print_events("Journey", events)


@main.command()
@click.argument("entity_id")
@click.argument("node_id")
@click.option("--reason", help="Why the entity was moved")
def move(entity_id: str, node_id: str, reason: str | None) -> None:
    """Manually move an entity to a UX node."""
    runtime = _runtime()
    try:
        runtime.stitcher.manual_move(entity_id, node_id, reason)
    except StitchError as e:
        _fail(e)
    finally:
        runtime.engine.close()
    console.print(f"[green]Moved {entity_id} to {node_id}[/green]")


# ========== Services ==========


@main.command()
@click.option("--once", is_flag=True, help="Sweep once and exit")
def sweep(once: bool) -> None:
    """Expire overdue UX waits (fail or complete with default output)."""
    runtime = _runtime()
    configure_logging(runtime.settings.log_level)
    sweeper = TimeoutSweeper(runtime.engine, poll_interval=runtime.settings.sweep_interval)
    try:
        if once:
            expired = sweeper.sweep_once()
            console.print(f"Expired {expired} overdue wait(s)")
            return
        console.print(
            f"[blue]Sweeping every {runtime.settings.sweep_interval:g}s (Ctrl+C to stop)[/blue]"
        )
        asyncio.run(sweeper.start_daemon())
    except KeyboardInterrupt:
        sweeper.stop()
    finally:
        runtime.engine.close()


@main.command()
@click.option("--host", default="127.0.0.1", help="Interface to bind")
@click.option("--port", default=8000, type=int, help="Port to bind")
def serve(host: str, port: int) -> None:
    """Run the HTTP API (with the timeout sweeper)."""
    import uvicorn

    settings = _settings()
    configure_logging(settings.log_level)
    console.print(f"[blue]Serving Stitch API on http://{host}:{port}[/blue]")
    console.print(f"[dim]Worker callbacks go to {settings.base_url}/callback/...[/dim]")
    uvicorn.run("stitch.api.server:app", host=host, port=port, log_level=settings.log_level.lower())


@main.command()
def version() -> None:
    """Show version information."""
    from stitch import __version__

    console.print(f"Stitch v{__version__}")
    console.print("Durable workflow graphs with journey stitching")


if __name__ == "__main__":
    main()

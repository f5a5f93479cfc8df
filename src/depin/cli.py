"""Depin CLI, command-line entry point for control plane and worker nodes.

Usage::

    depin start control-plane --redis-url redis://localhost:6379/0
    depin start node --node-id w1 --echo
    depin task create "What is 2+2?"
    depin task status 1
    depin node stats 0xabc...
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.markup import escape

from depin.config import Settings
from depin.connection import mask_url
from depin.errors import BrokerConnectionError, DepinError, InferenceError
from depin.inference import EchoInference, InferenceClient, OpenAIInference
from depin.ledger import RedisLedger
from depin.log import configure_from_env, configure_logging
from depin.models import InferenceFailurePolicy, LedgerTaskState

app = typer.Typer(
    name="depin",
    help="Ledger-reconciled task distribution for AI worker nodes.",
    no_args_is_help=True,
)

console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging."),
    ] = False,
    log_format: Annotated[
        str,
        typer.Option("--log-format", help="Log output format: text or json."),
    ] = "text",
) -> None:
    """Depin CLI: run the control plane, worker nodes, and ledger helpers."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    if log_format not in ("text", "json"):
        console.print(f"[red]Invalid log format: {log_format}. Use text or json.[/red]")
        raise typer.Exit(code=1)
    configure_logging("INFO")
    configure_from_env()
    if verbose or log_format != "text":
        configure_logging("DEBUG" if verbose else "INFO", log_format, force=True)


_RedisUrlOption = Annotated[
    str | None,
    typer.Option("--redis-url", help="Redis connection URL (default: DEPIN_REDIS_URL env var)."),
]


def _settings(**overrides: Any) -> Settings:
    try:
        return Settings.from_env(**overrides)
    except ValueError as exc:
        console.print(f"[red]Invalid configuration: {escape(str(exc))}[/red]")
        raise typer.Exit(code=1) from exc


def _format_timestamp(ts: float | None) -> str:
    """Format a Unix timestamp as a human-readable string."""
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts, tz=UTC).strftime("%Y-%m-%d %H:%M:%S UTC")


def _state_color(state: str) -> str:
    colors: dict[str, str] = {
        LedgerTaskState.CREATED: "yellow",
        LedgerTaskState.ASSIGNED: "blue",
        LedgerTaskState.COMPLETED: "green",
    }
    return colors.get(state, "white")


def _ledger(settings: Settings) -> RedisLedger:
    return RedisLedger(
        settings.redis_url, address=settings.node_address, prefix=settings.ledger_prefix
    )


# ---------------------------------------------------------------------------
# Subcommand group: start
# ---------------------------------------------------------------------------

start_app = typer.Typer(
    name="start",
    help="Start long-running services.",
    no_args_is_help=True,
)
app.add_typer(start_app, name="start")


@start_app.command("control-plane")
def start_control_plane(redis_url: _RedisUrlOption = None) -> None:
    """Watch the ledger, dispatch tasks to nodes, and collect results."""
    from depin.control_plane import ControlPlane

    settings = _settings(redis_url=redis_url)
    ledger = _ledger(settings)
    plane = ControlPlane(settings, ledger=ledger, console=console)

    console.print("[bold green]Depin Control Plane Starting[/bold green]")
    console.print(f"  Redis URL:     {mask_url(settings.redis_url)}")
    console.print(f"  Task queue:    {settings.task_queue}")
    console.print(f"  Result queue:  {settings.result_queue}")
    console.print()
    console.print("[dim]Press Ctrl+C to stop.[/dim]")

    async def _run() -> None:
        await ledger.connect()
        try:
            await plane.start()
        finally:
            await ledger.disconnect()

    try:
        asyncio.run(_run())
    except BrokerConnectionError as exc:
        console.print(f"[red]Error: {escape(str(exc))}[/red]")
        raise typer.Exit(code=1) from exc


@start_app.command("node")
def start_node(
    node_id: Annotated[
        str | None,
        typer.Option("--node-id", help="Node identifier (default: NODE_ID or derived from address)."),
    ] = None,
    node_name: Annotated[
        str | None,
        typer.Option("--node-name", help="Display name registered on the ledger."),
    ] = None,
    address: Annotated[
        str | None,
        typer.Option("--address", help="Ledger address this node signs with."),
    ] = None,
    redis_url: _RedisUrlOption = None,
    policy: Annotated[
        InferenceFailurePolicy | None,
        typer.Option("--policy", help="What to do when inference fails."),
    ] = None,
    echo: Annotated[
        bool,
        typer.Option("--echo", help="Answer with an offline echo client instead of OpenAI."),
    ] = False,
) -> None:
    """Start a worker node that answers tasks assigned to it."""
    from depin.node import WorkerNode

    settings = _settings(
        node_id=node_id,
        node_name=node_name,
        node_address=address,
        redis_url=redis_url,
        inference_failure_policy=policy,
    )

    inference: InferenceClient
    if echo:
        inference = EchoInference()
    else:
        try:
            inference = OpenAIInference(settings.openai_api_key, model=settings.inference_model)
        except InferenceError as exc:
            console.print(f"[red]Error: {escape(str(exc))}. Use --echo to run offline.[/red]")
            raise typer.Exit(code=1) from exc

    ledger = _ledger(settings)
    node = WorkerNode(settings, ledger=ledger, inference=inference)

    console.print("[bold green]Depin Worker Node Starting[/bold green]")
    console.print(f"  Node ID:     {node.node_id}")
    console.print(f"  Name:        {settings.node_name}")
    console.print(f"  Address:     {settings.node_address}")
    console.print(f"  Redis URL:   {mask_url(settings.redis_url)}")
    console.print(f"  Inference:   {'echo' if echo else settings.inference_model}")
    console.print(f"  On failure:  {settings.inference_failure_policy}")
    console.print()
    console.print("[dim]Press Ctrl+C to stop.[/dim]")

    async def _run() -> None:
        await ledger.connect()
        try:
            await node.start()
        finally:
            await ledger.disconnect()

    try:
        asyncio.run(_run())
    except DepinError as exc:
        console.print(f"[red]Error: {escape(str(exc))}[/red]")
        raise typer.Exit(code=1) from exc


# ---------------------------------------------------------------------------
# Subcommand group: task
# ---------------------------------------------------------------------------

task_app = typer.Typer(
    name="task",
    help="Create and inspect tasks on the development ledger.",
    no_args_is_help=True,
)
app.add_typer(task_app, name="task")


@task_app.command("create")
def task_create(
    question: Annotated[str, typer.Argument(help="Question for a worker node to answer.")],
    redis_url: _RedisUrlOption = None,
) -> None:
    """Create a task on the ledger, which announces it to the control plane."""
    settings = _settings(redis_url=redis_url)

    async def _create() -> None:
        ledger = _ledger(settings)
        await ledger.connect()
        try:
            task = await ledger.create_task(question)
        finally:
            await ledger.disconnect()
        console.print(f"[green]Task {escape(task.task_id)} created.[/green]")

    try:
        asyncio.run(_create())
    except DepinError as exc:
        console.print(f"[red]Error: {escape(str(exc))}[/red]")
        raise typer.Exit(code=1) from exc


@task_app.command("status")
def task_status(
    task_id: Annotated[str, typer.Argument(help="Task ID to inspect.")],
    redis_url: _RedisUrlOption = None,
) -> None:
    """Show the ledger record of a task."""
    settings = _settings(redis_url=redis_url)

    async def _show() -> None:
        ledger = _ledger(settings)
        await ledger.connect()
        try:
            record = await ledger.get_task(task_id)
        finally:
            await ledger.disconnect()

        color = _state_color(record.state)
        console.print(f"[bold]Task {escape(record.task_id)}[/bold]")
        console.print(f"  State:       [{color}]{record.state}[/{color}]")
        console.print(f"  Question:    {escape(record.question)}")
        console.print(f"  Created:     {_format_timestamp(record.created_at)}")
        console.print(f"  Assigned to: {record.assigned_to or '-'}")
        if record.answer is not None:
            console.print(f"  Answer:      {escape(record.answer)}")

    try:
        asyncio.run(_show())
    except DepinError as exc:
        console.print(f"[yellow]{escape(str(exc))}[/yellow]")
        raise typer.Exit(code=1) from exc


# ---------------------------------------------------------------------------
# Subcommand group: node
# ---------------------------------------------------------------------------

node_app = typer.Typer(
    name="node",
    help="Inspect worker nodes on the development ledger.",
    no_args_is_help=True,
)
app.add_typer(node_app, name="node")


@node_app.command("stats")
def node_stats(
    address: Annotated[str, typer.Argument(help="Ledger address of the node.")],
    redis_url: _RedisUrlOption = None,
) -> None:
    """Show the ledger counters of a node."""
    settings = _settings(redis_url=redis_url)

    async def _show() -> None:
        ledger = _ledger(settings)
        await ledger.connect()
        try:
            stats = await ledger.get_node_stats(address)
        finally:
            await ledger.disconnect()

        if not stats.active:
            console.print(f"[yellow]Node not registered: {escape(address)}[/yellow]")
            raise typer.Exit(code=1)

        console.print(f"[bold]Node {escape(stats.address)}[/bold]")
        console.print(f"  Name:            {escape(stats.name or '-')}")
        console.print(f"  Registered:      {_format_timestamp(stats.registered_at)}")
        console.print(f"  Tasks completed: {stats.tasks_completed}")

    try:
        asyncio.run(_show())
    except DepinError as exc:
        console.print(f"[red]Error: {escape(str(exc))}[/red]")
        raise typer.Exit(code=1) from exc

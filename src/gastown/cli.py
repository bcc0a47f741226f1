"""Gastown operator CLI.

Runs scheduler loops and inspects town state directly from the town databases.
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Annotated, ParamSpec, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from gastown.config import settings
from gastown.registry import TownRegistry


NEON_CYAN = "#80ffea"
ELECTRIC_PURPLE = "#e135ff"
SUCCESS_GREEN = "#50fa7b"
ERROR_RED = "#ff6363"

console = Console()

app = typer.Typer(
    name="gastown",
    help="Town orchestrator for containerized coding agents",
    no_args_is_help=True,
)

P = ParamSpec("P")
R = TypeVar("R")


def run_async(func: Callable[P, Awaitable[R]]) -> Callable[P, R]:
    """Decorator to run async functions in sync context (for Typer commands)."""

    @wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


def create_table(title: str | None, *columns: str) -> Table:
    table = Table(title=title, border_style=NEON_CYAN)
    for i, column in enumerate(columns):
        table.add_column(column, style=ELECTRIC_PURPLE if i == 0 else NEON_CYAN)
    return table


def success(message: str) -> None:
    console.print(f"[{SUCCESS_GREEN}]✓[/{SUCCESS_GREEN}] {message}")


def error(message: str) -> None:
    console.print(f"[{ERROR_RED}]✗[/{ERROR_RED}] {message}")


@app.command()
@run_async
async def run(
    town: Annotated[
        list[str] | None, typer.Option("--town", "-t", help="Town id (repeatable)")
    ] = None,
) -> None:
    """Run scheduler loops for towns until interrupted."""
    town_ids = town or settings.town_ids
    if not town_ids:
        error("No towns given. Pass --town or set GASTOWN_TOWN_IDS.")
        raise typer.Exit(1)

    registry = TownRegistry()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    for town_id in town_ids:
        await registry.start(town_id)
    success(f"Scheduling {len(town_ids)} town(s): {', '.join(town_ids)}")
    try:
        await stop.wait()
    finally:
        await registry.shutdown()
        success("Shut down cleanly")


@app.command()
@run_async
async def tick(town_id: Annotated[str, typer.Argument(help="Town id")]) -> None:
    """Run a single scheduler tick for a town."""
    registry = TownRegistry()
    try:
        orchestrator = await registry.get(town_id)
        report = await orchestrator.tick()
        await orchestrator.drain()
    finally:
        await registry.shutdown()

    table = create_table(f"Tick {town_id}", "Phase", "Result")
    table.add_row("dispatched", str(len(report.dispatched)))
    table.add_row("dispatch failed", str(len(report.dispatch_failed)))
    table.add_row("circuit broken", str(len(report.circuit_broken)))
    table.add_row("reset to idle", str(len(report.reset_to_idle)))
    table.add_row("completed", str(len(report.completed)))
    table.add_row("stale checks", str(len(report.stale_checks)))
    table.add_row("review", report.review_outcome or "-")
    table.add_row("escalations bumped", str(len(report.escalations_bumped)))
    table.add_row("next alarm", str(report.next_alarm_at))
    console.print(table)
    for phase, message in report.errors.items():
        error(f"{phase}: {message}")


@app.command()
@run_async
async def status(town_id: Annotated[str, typer.Argument(help="Town id")]) -> None:
    """Show agents and review queue state for a town."""
    registry = TownRegistry()
    try:
        orchestrator = await registry.get(town_id)
        agents = await orchestrator.list_agents()
        queue = await orchestrator.list_review_queue()
        next_alarm = await orchestrator.scheduler.next_alarm_at()
    finally:
        await registry.shutdown()

    table = create_table(f"Agents in {town_id}", "Name", "Role", "Status", "Hook", "Attempts")
    for agent in agents:
        table.add_row(
            agent.name,
            agent.role,
            agent.status,
            (agent.current_hook_bead_id or "-")[:8],
            str(agent.dispatch_attempts),
        )
    console.print(table)

    counts: dict[str, int] = {}
    for entry in queue:
        counts[entry.status] = counts.get(entry.status, 0) + 1
    summary = ", ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "empty"
    console.print(f"Review queue: {summary}")
    console.print(f"Next alarm: {next_alarm or 'not armed'}")


@app.command()
@run_async
async def escalations(
    town_id: Annotated[str, typer.Argument(help="Town id")],
    show_all: Annotated[bool, typer.Option("--all", help="Include acknowledged")] = False,
) -> None:
    """List escalations for a town."""
    registry = TownRegistry()
    try:
        orchestrator = await registry.get(town_id)
        rows = await orchestrator.list_escalations(acknowledged=None if show_all else False)
    finally:
        await registry.shutdown()

    table = create_table(f"Escalations in {town_id}", "Id", "Severity", "Bumps", "Ack", "Message")
    for row in rows:
        table.add_row(
            row.id[:8],
            row.severity,
            str(row.re_escalation_count),
            "yes" if row.acknowledged else "no",
            row.message[:60],
        )
    console.print(table)


@app.command()
@run_async
async def health(town_id: Annotated[str, typer.Argument(help="Town id")]) -> None:
    """Check the town's container runtime."""
    registry = TownRegistry()
    try:
        healthy = await (await registry.get(town_id)).container_health()
    finally:
        await registry.shutdown()
    if healthy:
        success(f"Container runtime for {town_id} is healthy")
    else:
        error(f"Container runtime for {town_id} is unreachable")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()

from __future__ import annotations

import asyncio
import json
from datetime import date
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from bpo_engine.errors import CycleConflictError, NoEligibleClientsError
from bpo_engine.integrations.container import AppContainer, apply_seed, build_container
from bpo_engine.logging_setup import configure_logging
from bpo_engine.models.enums import CycleStatus
from bpo_engine.models.internal import Cycle
from bpo_engine.settings import get_settings

app = typer.Typer(help="Daily BPO cycle orchestration CLI.")
console = Console()

_STATUS_STYLE = {
    CycleStatus.COMPLETED: "green",
    CycleStatus.PARTIAL: "yellow",
    CycleStatus.FAILED: "red",
}


def _load_seed(path: Path) -> dict:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        console.print(f"[red]Cannot read seed file[/red] {path}: {exc}")
        raise typer.Exit(code=2) from exc
    if not isinstance(payload, dict):
        console.print(f"[red]Seed file must hold a JSON object:[/red] {path}")
        raise typer.Exit(code=2)
    return payload


def _render_cycle(cycle: Cycle) -> None:
    style = _STATUS_STYLE.get(cycle.status, "white")
    console.print(f"Cycle [bold]{cycle.cycle_id}[/bold]: [{style}]{cycle.status.value}[/{style}]")

    table = Table(title="Cycle summary")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("clients total", str(cycle.clients_total))
    table.add_row("clients processed", str(cycle.clients_processed))
    table.add_row("clients failed", str(cycle.clients_failed))
    table.add_row("captured", str(cycle.transactions_captured))
    table.add_row("classified", str(cycle.transactions_classified))
    table.add_row("in review", str(cycle.transactions_review))
    table.add_row("synced", str(cycle.transactions_synced))
    table.add_row("duration (ms)", str(cycle.duration_ms or 0))
    console.print(table)

    if cycle.errors:
        errors = Table(title="Errors")
        errors.add_column("Client")
        errors.add_column("Stage")
        errors.add_column("Transaction")
        errors.add_column("Message")
        for error in cycle.errors:
            errors.add_row(error.client_id, error.stage.value, error.transaction_id or "-", error.message)
        console.print(errors)


async def _run_cycle(
    container: AppContainer,
    *,
    seed: dict | None,
    client_id: str | None,
    force: bool,
    cycle_date: date | None,
) -> Cycle:
    if seed is not None:
        await apply_seed(container, seed)
    return await container.orchestrator.run_cycle(client_id=client_id, force=force, cycle_date=cycle_date)


@app.command("run-cycle")
def run_cycle(
    seed: Optional[Path] = typer.Option(None, help="JSON fixture with clients and capture records."),
    client_id: Optional[str] = typer.Option(None, help="Run a single client."),
    force: bool = typer.Option(False, help="Run again even if a cycle exists for the date."),
    cycle_date: Optional[str] = typer.Option(None, "--date", help="Cycle date (YYYY-MM-DD), default today."),
) -> None:
    """Run one daily cycle to completion and print its summary."""

    settings = get_settings()
    configure_logging(settings)
    parsed_date = None
    if cycle_date:
        try:
            parsed_date = date.fromisoformat(cycle_date)
        except ValueError as exc:
            console.print(f"[red]Invalid --date[/red] {cycle_date!r}, expected YYYY-MM-DD")
            raise typer.Exit(code=2) from exc

    payload = _load_seed(seed) if seed else None
    container = build_container(settings)
    console.print("[cyan]Running daily cycle[/cyan]" + (f" for {client_id}" if client_id else ""))
    try:
        cycle = asyncio.run(
            _run_cycle(container, seed=payload, client_id=client_id, force=force, cycle_date=parsed_date)
        )
    except NoEligibleClientsError as exc:
        console.print(f"[yellow]{exc}[/yellow]")
        raise typer.Exit(code=1) from exc
    except CycleConflictError as exc:
        console.print(f"[yellow]{exc}[/yellow]")
        raise typer.Exit(code=1) from exc

    _render_cycle(cycle)
    if cycle.status == CycleStatus.FAILED:
        raise typer.Exit(code=1)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Bind address."),
    port: int = typer.Option(8000, help="Bind port."),
) -> None:
    """Serve the HTTP API with uvicorn."""

    import uvicorn

    console.print(f"[cyan]Serving API on[/cyan] http://{host}:{port}")
    uvicorn.run("bpo_engine.api.main:app", host=host, port=port, reload=False)


def main() -> None:
    app()


if __name__ == "__main__":
    main()

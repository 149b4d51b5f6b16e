"""``helmsman status RUN_ID``: show the status of a deployment run.

Displays state, step progress, target and previous images, failure reason
and the transition history.  Supports continuous live mode and chain
verification.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from helmsman.config import HelmsmanSettings
from helmsman.core.run_ledger import RunLedger
from helmsman.core.run_store import RunStore
from helmsman.errors import LedgerIntegrityError, RunNotFoundError
from helmsman.monitor.projection import StatusProjection
from helmsman.monitor.renderer import StatusRenderer

console = Console()


def status_cmd(
    run_id: str = typer.Argument(
        ...,
        help="The deployment run ID.",
    ),
    live: bool = typer.Option(
        False,
        "--live",
        "-L",
        help="Refresh continuously until the run finishes (Ctrl+C to exit).",
    ),
    verify_chain: bool = typer.Option(
        False,
        "--verify-chain",
        "-V",
        help="Verify the ledger hash chain before displaying.",
    ),
    refresh_hz: float = typer.Option(
        2.0,
        "--refresh",
        "-r",
        help="Refresh rate in Hz for live mode.",
    ),
    store_db: Path = typer.Option(
        None,
        "--store",
        help="Path to the run store database.",
    ),
    ledger_db: Path = typer.Option(
        None,
        "--ledger",
        "-l",
        help="Path to the ledger database.",
    ),
) -> None:
    """Show the status of a deployment run.

    The status view is a read-only projection; every display re-reads the
    run store and the ledger.
    """
    settings = HelmsmanSettings()
    store_path = store_db or settings.store_path
    ledger_path = ledger_db or settings.ledger_path
    if not Path(store_path).exists():
        console.print(f"[bold red]Run store not found:[/bold red] {store_path}")
        console.print("[dim]Start a deployment first, or try: helmsman demo[/dim]")
        raise typer.Exit(code=1)

    store = RunStore(store_path)
    ledger = RunLedger(ledger_path)
    projection = StatusProjection(store, ledger)
    renderer = StatusRenderer(console=console)

    try:
        status = projection.snapshot(run_id)
    except RunNotFoundError:
        console.print(f"[bold red]Run not found:[/bold red] {run_id}")
        recent = store.list_runs()
        if recent:
            console.print("\n[bold]Recent runs:[/bold]")
            for run in recent[:10]:
                console.print(f"  [cyan]{run.run_id}[/cyan]  {run.workload_id}  {run.state.value}")
            if len(recent) > 10:
                console.print(f"  [dim]... and {len(recent) - 10} more[/dim]")
        raise typer.Exit(code=1)

    if verify_chain:
        console.print("[bold cyan]Verifying hash chain...[/bold cyan]")
        try:
            valid = ledger.verify_chain(run_id)
            renderer.print_chain_verification(run_id, valid)
        except LedgerIntegrityError as exc:
            console.print(f"[bold red]Chain verification failed:[/bold red] {exc}")
            renderer.print_chain_verification(run_id, False)
        console.print()

    if live:
        console.print(
            f"[dim]Live status of run {run_id} at {refresh_hz} Hz. Press Ctrl+C to exit.[/dim]"
        )
        console.print()
        renderer.render_live(run_id, projection, refresh_hz=refresh_hz)
    else:
        renderer.print_status(status)

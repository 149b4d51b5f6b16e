"""``helmsman abort RUN_ID``: request an abort of an in-flight run.

The request is persisted; the process driving the run rolls it back
before its next step and verifies the restored state.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from helmsman.config import HelmsmanSettings
from helmsman.core.deployment_machine import request_abort
from helmsman.core.run_ledger import RunLedger
from helmsman.core.run_store import RunStore
from helmsman.errors import InvalidTransitionError, RunNotFoundError

console = Console()


def abort_cmd(
    run_id: str = typer.Argument(..., help="The deployment run ID to abort."),
    reason: str = typer.Option("", "--reason", "-m", help="Why the run is aborted."),
    store_db: Path = typer.Option(None, "--store", help="Path to the run store database."),
    ledger_db: Path = typer.Option(None, "--ledger", "-l", help="Path to the ledger database."),
) -> None:
    """Request an abort of a deployment run."""
    settings = HelmsmanSettings()
    store_path = store_db or settings.store_path
    if not Path(store_path).exists():
        console.print(f"[bold red]Run store not found:[/bold red] {store_path}")
        raise typer.Exit(code=1)

    store = RunStore(store_path)
    ledger = RunLedger(ledger_db or settings.ledger_path)
    try:
        run = request_abort(store, ledger, run_id, reason)
    except RunNotFoundError:
        console.print(f"[bold red]Run not found:[/bold red] {run_id}")
        raise typer.Exit(code=1)
    except InvalidTransitionError as exc:
        console.print(f"[yellow]{exc}[/yellow]")
        raise typer.Exit(code=2) from exc

    console.print(
        f"[bold magenta]Abort requested[/bold magenta] for run {run.run_id} "
        f"({run.workload_id}, currently {run.state.value})."
    )

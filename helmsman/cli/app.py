"""Main Typer application: imports and registers all CLI commands.

Entry point: ``helmsman`` (configured via pyproject.toml project.scripts).

Commands: plan, status, runs, abort, verify-chain, demo.
"""

from __future__ import annotations

import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from helmsman.cli.commands.abort import abort_cmd
from helmsman.cli.commands.demo import demo_cmd
from helmsman.cli.commands.plan import plan_cmd
from helmsman.cli.commands.status_cmd import status_cmd
from helmsman.config import HelmsmanSettings
from helmsman.core.run_ledger import RunLedger
from helmsman.core.run_store import RunStore
from helmsman.errors import LedgerIntegrityError
from helmsman.monitor.renderer import StatusRenderer

app = typer.Typer(
    name="helmsman",
    help="Helmsman: continuous deployment orchestrator with verified rolling updates.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


def configure_logging(level: str | int = "INFO") -> None:
    """Route stdlib logging through Rich at ``level``."""
    logging.basicConfig(
        level=level.upper() if isinstance(level, str) else level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        None,
        "--log-level",
        help="Log level (defaults to HELMSMAN_LOG_LEVEL or INFO).",
    ),
) -> None:
    configure_logging(log_level or HelmsmanSettings().log_level)


# Register subcommands
app.command(name="plan", help="Preview the rollout plan for a policy.")(plan_cmd)
app.command(name="status", help="Show the status of a deployment run.")(status_cmd)
app.command(name="abort", help="Request an abort of an in-flight run.")(abort_cmd)
app.command(name="demo", help="Run a simulated end-to-end rollout.")(demo_cmd)


@app.command(name="runs", help="List deployment runs, newest first.")
def runs_cmd(
    workload: str = typer.Option(None, "--workload", "-w", help="Only runs for this workload."),
    store_db: Path = typer.Option(None, "--store", help="Path to the run store database."),
) -> None:
    """List deployment runs from the run store."""
    console = Console()
    db_path = store_db or HelmsmanSettings().store_path
    if not Path(db_path).exists():
        console.print(f"[bold red]Run store not found:[/bold red] {db_path}")
        raise typer.Exit(code=1)

    runs = RunStore(db_path).list_runs(workload)
    if not runs:
        console.print("[dim]No deployment runs recorded.[/dim]")
        return
    console.print(StatusRenderer(console=console).render_runs(runs))


@app.command(name="verify-chain", help="Verify the ledger hash chain of a run.")
def verify_chain_cmd(
    run_id: str = typer.Argument(..., help="The deployment run ID."),
    ledger_db: Path = typer.Option(None, "--ledger", "-l", help="Path to the ledger database."),
) -> None:
    """Recompute every entry hash for a run and check the chain links."""
    console = Console()
    db_path = ledger_db or HelmsmanSettings().ledger_path
    if not Path(db_path).exists():
        console.print(f"[bold red]Ledger not found:[/bold red] {db_path}")
        raise typer.Exit(code=1)

    ledger = RunLedger(db_path)
    renderer = StatusRenderer(console=console)
    if not ledger.get_run_entries(run_id):
        console.print(f"[bold red]Run not found in ledger:[/bold red] {run_id}")
        raise typer.Exit(code=1)

    try:
        valid = ledger.verify_chain(run_id)
    except LedgerIntegrityError as exc:
        console.print(f"[bold red]Chain verification failed:[/bold red] {exc}")
        renderer.print_chain_verification(run_id, False)
        raise typer.Exit(code=2) from exc
    renderer.print_chain_verification(run_id, valid)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()

"""Rich terminal renderer for Helmsman run status and rollout plans.

Turns ``RunStatus`` and ``RolloutStep`` sequences into Rich renderables,
with color-coded run states and optional continuous ``Rich.Live`` mode.

Color scheme
------------
- green     : SUCCEEDED
- yellow    : ROLLING_OUT, VERIFYING
- magenta   : ROLLING_BACK
- cyan      : ROLLED_BACK
- bold red  : FAILED
- dim       : PENDING
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from helmsman.models.deployment import DeploymentRun, DeploymentState
from helmsman.models.rollout import RolloutStep

if TYPE_CHECKING:
    from helmsman.monitor.projection import RunStatus, StatusProjection


# ---------------------------------------------------------------------------
# State -> Rich style mapping
# ---------------------------------------------------------------------------

_STATE_STYLES: dict[DeploymentState, str] = {
    DeploymentState.PENDING: "dim",
    DeploymentState.ROLLING_OUT: "bold yellow",
    DeploymentState.VERIFYING: "yellow",
    DeploymentState.SUCCEEDED: "bold green",
    DeploymentState.ROLLING_BACK: "bold magenta",
    DeploymentState.ROLLED_BACK: "cyan",
    DeploymentState.FAILED: "bold red",
}


def _state_markup(state: DeploymentState) -> str:
    style = _STATE_STYLES.get(state, "")
    label = state.value.replace("_", " ").upper()
    return f"[{style}]{label}[/{style}]" if style else label


def _short_digest(digest: str) -> str:
    algo, _, hex_part = digest.partition(":")
    return f"{algo}:{hex_part[:12]}" if hex_part else digest[:19]


class StatusRenderer:
    """Renders run status and plans as Rich terminal output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Run status
    # ------------------------------------------------------------------

    def render_status(self, status: RunStatus) -> Panel:
        """Render a RunStatus as a Rich Panel with its transition history."""
        table = Table(
            show_header=True,
            header_style="bold cyan",
            expand=True,
            show_lines=False,
        )
        table.add_column("Time", style="dim", width=10)
        table.add_column("Transition", min_width=26)
        table.add_column("Step", justify="right", width=6)
        table.add_column("Artifact", min_width=20)
        table.add_column("Details")

        for record in status.history:
            table.add_row(
                record.timestamp.strftime("%H:%M:%S"),
                record.transition,
                str(record.step_index),
                _short_digest(record.artifact_digest) if record.artifact_digest else "[dim]-[/dim]",
                record.detail or "[dim]-[/dim]",
            )

        summary_parts: list[str] = [
            f"[bold]Run:[/bold] {status.run_id}",
            f"[bold]Workload:[/bold] {status.workload_id}",
            f"[bold]Revision:[/bold] {status.revision}",
            f"[bold]State:[/bold] {_state_markup(status.state)}",
            f"[bold]Steps:[/bold] {status.completed_steps}/{status.total_steps}",
        ]
        chain_status = (
            "[green]valid[/green]" if status.chain_valid else "[bold red]BROKEN[/bold red]"
        )
        summary_parts.append(f"[bold]Chain:[/bold] {chain_status}")
        if status.abort_requested:
            summary_parts.append("[magenta]abort requested[/magenta]")

        lines = [
            Text.from_markup("  |  ".join(summary_parts)),
            Text.from_markup(f"[bold]Target:[/bold] {status.target_image}"),
            Text.from_markup(
                f"[bold]Previous:[/bold] {status.previous_image or '[dim]none[/dim]'}"
            ),
        ]
        if status.failure_reason:
            lines.append(
                Text.from_markup(
                    f"[bold red]Failure:[/bold red] {status.failure_reason} "
                    f"[dim]({status.error_code})[/dim]"
                )
            )

        return Panel(
            Group(table, Text(""), *lines),
            title="[bold]Helmsman Deployment[/bold]",
            subtitle=f"Last updated: {status.last_updated.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            border_style="blue",
            padding=(1, 2),
        )

    def render_runs(self, runs: list[DeploymentRun]) -> Table:
        """Render a list of runs, newest first."""
        table = Table(title="Deployment Runs", header_style="bold cyan")
        table.add_column("Run", style="cyan")
        table.add_column("Workload")
        table.add_column("Revision")
        table.add_column("State", justify="center")
        table.add_column("Steps", justify="right")
        table.add_column("Created", style="dim")

        for run in runs:
            table.add_row(
                run.run_id,
                run.workload_id,
                run.revision.short,
                _state_markup(run.state),
                f"{min(run.step_index, len(run.steps))}/{len(run.steps)}",
                run.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            )
        return table

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def render_plan(self, steps: list[RolloutStep], *, plan_hash: str = "") -> Table:
        """Render a rollout plan as one row per step."""
        caption = f"plan {plan_hash[:12]}" if plan_hash else None
        table = Table(
            title=f"Rollout Plan ({len(steps)} step{'s' if len(steps) != 1 else ''})",
            caption=caption,
            header_style="bold cyan",
        )
        table.add_column("#", style="dim", justify="right")
        table.add_column("New", justify="right", style="green")
        table.add_column("Previous", justify="right", style="yellow")
        table.add_column("Total", justify="right")
        table.add_column("Min healthy", justify="right")
        table.add_column("Max unhealthy", justify="right")
        table.add_column("Pause", justify="right", style="dim")

        for step in steps:
            table.add_row(
                str(step.index),
                str(step.replicas),
                str(step.previous_replicas),
                str(step.total_replicas),
                str(step.min_healthy),
                str(step.max_unhealthy),
                f"{step.pause_seconds:g}s",
            )
        return table

    # ------------------------------------------------------------------
    # Continuous live rendering
    # ------------------------------------------------------------------

    def render_live(
        self,
        run_id: str,
        projection: StatusProjection,
        *,
        refresh_hz: float = 2.0,
    ) -> None:
        """Continuously render one run in Rich Live mode.

        Re-reads the store and ledger on every refresh cycle.  Stops when
        the run reaches a terminal state or on Ctrl+C.
        """
        interval = 1.0 / max(refresh_hz, 0.1)

        with Live(
            console=self.console,
            refresh_per_second=refresh_hz,
            transient=False,
        ) as live:
            try:
                while True:
                    status = projection.snapshot(run_id)
                    live.update(self.render_status(status))
                    if status.is_terminal:
                        break
                    time.sleep(interval)
            except KeyboardInterrupt:
                live.update(self.render_status(projection.snapshot(run_id)))

    # ------------------------------------------------------------------
    # Standalone print
    # ------------------------------------------------------------------

    def print_status(self, status: RunStatus) -> None:
        self.console.print(self.render_status(status))

    def print_plan(self, steps: list[RolloutStep], *, plan_hash: str = "") -> None:
        if not steps:
            self.console.print("[dim]Nothing to do: the workload already runs the target.[/dim]")
            return
        self.console.print(self.render_plan(steps, plan_hash=plan_hash))

    def print_chain_verification(self, run_id: str, valid: bool) -> None:
        """Print a chain verification result."""
        if valid:
            self.console.print(
                f"[green]Hash chain for run {run_id} is valid.[/green]"
            )
        else:
            self.console.print(
                f"[bold red]Hash chain for run {run_id} is BROKEN![/bold red]"
            )

"""``helmsman plan``: preview the rollout plan for a replica count and policy.

Runs the planner only; nothing is resolved, applied or persisted.  Policy
options default to the configured ``HELMSMAN_*`` values.
"""

from __future__ import annotations

import typer
from rich.console import Console

from helmsman.config import HelmsmanSettings
from helmsman.core.planner import RolloutPlanner
from helmsman.errors import InvalidPolicy
from helmsman.models.artifacts import ArtifactRef
from helmsman.models.rollout import RolloutPolicy, RolloutStrategy
from helmsman.models.workload import WorkloadSpec
from helmsman.monitor.renderer import StatusRenderer

console = Console()

_PREVIEW_CURRENT = ArtifactRef(repository="preview", tag="current", digest="sha256:" + "a" * 64)
_PREVIEW_TARGET = ArtifactRef(repository="preview", tag="target", digest="sha256:" + "b" * 64)


def plan_cmd(
    replicas: int = typer.Option(
        ...,
        "--replicas",
        "-n",
        help="Desired replica count of the workload.",
    ),
    strategy: RolloutStrategy = typer.Option(
        None,
        "--strategy",
        "-s",
        help="rolling_update or recreate.",
    ),
    max_unavailable: int = typer.Option(
        None,
        "--max-unavailable",
        "-u",
        help="Desired replicas that may be not-ready at once.",
    ),
    max_surge: int = typer.Option(
        None,
        "--max-surge",
        help="Replicas that may exist beyond the desired count.",
    ),
    step_pause: float = typer.Option(
        None,
        "--step-pause",
        help="Seconds to wait between verified steps.",
    ),
    first_deploy: bool = typer.Option(
        False,
        "--first-deploy",
        help="Plan for a workload with no previous artifact.",
    ),
) -> None:
    """Preview the ordered steps of a rollout.

    Shows, per step, the replicas on the new and previous artifact and the
    step's health threshold.
    """
    settings = HelmsmanSettings()
    overrides = {
        key: value
        for key, value in {
            "strategy": strategy,
            "max_unavailable": max_unavailable,
            "max_surge": max_surge,
            "step_pause_seconds": step_pause,
        }.items()
        if value is not None
    }
    try:
        policy = RolloutPolicy.model_validate(
            {**settings.rollout_policy().model_dump(), **overrides}
        )
    except ValueError as exc:
        console.print(f"[bold red]Invalid policy:[/bold red] {exc}")
        raise typer.Exit(code=2) from exc

    current = WorkloadSpec(
        workload_id="preview",
        replicas=replicas,
        image=None if first_deploy else _PREVIEW_CURRENT,
    )
    planner = RolloutPlanner()
    try:
        steps = planner.plan(current, _PREVIEW_TARGET, policy)
    except InvalidPolicy as exc:
        console.print(f"[bold red]Invalid policy:[/bold red] {exc}")
        raise typer.Exit(code=2) from exc

    console.print(
        f"[bold]Strategy:[/bold] {policy.strategy.value}  "
        f"[bold]maxUnavailable:[/bold] {policy.max_unavailable}  "
        f"[bold]maxSurge:[/bold] {policy.max_surge}  "
        f"[bold]Replicas:[/bold] {replicas}"
    )
    StatusRenderer(console=console).print_plan(steps, plan_hash=planner.plan_hash(steps))

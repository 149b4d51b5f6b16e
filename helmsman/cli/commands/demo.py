"""``helmsman demo``: run a simulated end-to-end rollout.

Publishes two revisions to an in-memory registry, seeds a simulated
cluster with the first, then pushes the second through the coordinator.
With ``--fail-at-step K`` the new artifact turns unhealthy when step K is
applied, which demonstrates automatic rollback.
"""

from __future__ import annotations

import hashlib
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel

from helmsman.bridge.cluster import SimulatedCluster
from helmsman.bridge.registry import InMemoryRegistry
from helmsman.config import HelmsmanSettings, TestGate
from helmsman.core.coordinator import PipelineCoordinator
from helmsman.errors import LedgerIntegrityError
from helmsman.models.artifacts import ArtifactRef, Revision
from helmsman.models.deployment import PushEvent
from helmsman.models.rollout import RolloutStrategy
from helmsman.models.workload import WorkloadSpec
from helmsman.monitor.projection import StatusProjection
from helmsman.monitor.renderer import StatusRenderer

console = Console()

_WORKLOAD = "demo-web"
_REPOSITORY = "registry.local/demo-web"


def _fake_commit(label: str) -> str:
    return hashlib.sha1(label.encode("utf-8")).hexdigest()


def _fake_digest(label: str) -> str:
    return "sha256:" + hashlib.sha256(label.encode("utf-8")).hexdigest()


def demo_cmd(
    replicas: int = typer.Option(4, "--replicas", "-n", help="Desired replica count."),
    fail_at_step: int = typer.Option(
        0,
        "--fail-at-step",
        "-f",
        help="Make the new artifact unhealthy when this step (1-based) is applied; 0 = never.",
    ),
    strategy: RolloutStrategy = typer.Option(
        RolloutStrategy.ROLLING_UPDATE, "--strategy", "-s", help="rolling_update or recreate."
    ),
    max_unavailable: int = typer.Option(1, "--max-unavailable", "-u"),
    max_surge: int = typer.Option(0, "--max-surge"),
    store_db: str = typer.Option(
        ".helmsman/demo-runs.db",
        "--store",
        help="Path to the run store database (uses demo-specific default).",
    ),
    ledger_db: str = typer.Option(
        ".helmsman/demo-ledger.db",
        "--ledger",
        help="Path to the ledger database (uses demo-specific default).",
    ),
) -> None:
    """Run a simulated rolling update from revision A to revision B."""
    settings = HelmsmanSettings(
        store_path=Path(store_db),
        ledger_path=Path(ledger_db),
        strategy=strategy,
        max_unavailable=max_unavailable,
        max_surge=max_surge,
        poll_interval_seconds=0.05,
        timeout_seconds=5.0,
        failure_threshold=1,
        test_gate=TestGate.ENFORCE,
        repositories={_WORKLOAD: _REPOSITORY},
    )

    commit_a, commit_b = _fake_commit("demo-a"), _fake_commit("demo-b")
    artifact_a = ArtifactRef(repository=_REPOSITORY, tag=commit_a, digest=_fake_digest("a"))
    registry = InMemoryRegistry(
        {
            (_REPOSITORY, commit_a): artifact_a.digest,
            (_REPOSITORY, commit_b): _fake_digest("b"),
        }
    )

    target_applies = 0

    def _inject_failure(
        cluster: SimulatedCluster, workload_id: str, count: int, artifact: ArtifactRef
    ) -> None:
        nonlocal target_applies
        if artifact.digest != _fake_digest("b") or not fail_at_step:
            return
        target_applies += 1
        if target_applies == fail_at_step:
            console.print(
                f"[bold red]>>> Injecting failure:[/bold red] {artifact.digest[:19]} "
                f"turns unhealthy at step {fail_at_step}"
            )
            cluster.mark_unhealthy(artifact.digest)

    cluster = SimulatedCluster(on_apply=_inject_failure)
    cluster.register_workload(
        WorkloadSpec(workload_id=_WORKLOAD, replicas=replicas, image=artifact_a)
    )
    coordinator = PipelineCoordinator(settings, registry, cluster)
    projection = StatusProjection(coordinator.store, coordinator.ledger)
    renderer = StatusRenderer(console=console)

    console.print()
    console.print(
        Panel(
            "[bold]Helmsman Demo Rollout[/bold]\n\n"
            f"{replicas} x revision A -> revision B ({strategy.value}, "
            f"maxUnavailable={max_unavailable}, maxSurge={max_surge}).",
            border_style="cyan",
            padding=(1, 2),
        )
    )

    planned = coordinator.machine.planner.plan(
        cluster.read_workload(_WORKLOAD),
        ArtifactRef(repository=_REPOSITORY, tag=commit_b, digest=_fake_digest("b")),
        settings.rollout_policy(),
    )
    renderer.print_plan(planned, plan_hash=coordinator.machine.planner.plan_hash(planned))

    record = coordinator.handle_push(
        PushEvent(revision=Revision(commit=commit_b), workload_id=_WORKLOAD, tests_passed=True)
    )
    console.print(f"\n[bold]Push outcome:[/bold] {record.outcome.value}")
    if record.run_id is None:
        console.print(f"[yellow]{record.detail}[/yellow]")
        raise typer.Exit(code=1)

    renderer.print_status(projection.snapshot(record.run_id))

    console.print("[bold cyan]Verifying hash chain integrity...[/bold cyan]")
    try:
        renderer.print_chain_verification(
            record.run_id, coordinator.ledger.verify_chain(record.run_id)
        )
    except LedgerIntegrityError as exc:
        console.print(f"[bold red]Chain verification failed:[/bold red] {exc}")

    counts = cluster.replica_counts(_WORKLOAD)
    console.print(
        Panel(
            "\n".join(
                f"[bold]{digest[:19]}[/bold]  {count} replica(s)"
                for digest, count in counts.items()
            ),
            title="[bold]Cluster State[/bold]",
            border_style="green" if record.outcome.value == "succeeded" else "magenta",
            padding=(1, 2),
        )
    )

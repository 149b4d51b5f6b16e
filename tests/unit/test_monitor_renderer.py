"""Tests for the Rich StatusRenderer."""

from __future__ import annotations

import pytest
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from helmsman.core.planner import RolloutPlanner
from helmsman.models.artifacts import Revision
from helmsman.monitor.projection import StatusProjection
from helmsman.monitor.renderer import StatusRenderer


@pytest.fixture
def console() -> Console:
    return Console(record=True, width=160, force_terminal=False)


@pytest.fixture
def renderer(console: Console) -> StatusRenderer:
    return StatusRenderer(console)


@pytest.fixture
def finished_run(machine, workload, artifact_b, policy):
    run = machine.create_run(Revision(commit=artifact_b.tag), artifact_b, workload, policy)
    return machine.drive(run.run_id)


class TestRenderStatus:
    def test_panel_shows_run_summary(self, renderer: StatusRenderer, console, store, ledger, finished_run):
        status = StatusProjection(store, ledger).snapshot(finished_run.run_id)
        panel = renderer.render_status(status)
        assert isinstance(panel, Panel)
        renderer.print_status(status)
        text = console.export_text()
        assert finished_run.run_id in text
        assert "SUCCEEDED" in text
        assert "4/4" in text
        assert "verifying->succeeded" in text
        assert "valid" in text

    def test_failure_reason_shown(self, renderer: StatusRenderer, console, store, ledger, machine, cluster, workload, artifact_b, policy):
        cluster.mark_unhealthy(artifact_b.digest)
        run = machine.create_run(Revision(commit=artifact_b.tag), artifact_b, workload, policy)
        machine.drive(run.run_id)
        renderer.print_status(StatusProjection(store, ledger).snapshot(run.run_id))
        text = console.export_text()
        assert "ROLLED BACK" in text
        assert "Failure:" in text
        assert "(unhealthy)" in text


class TestRenderRunsAndPlans:
    def test_runs_table(self, renderer: StatusRenderer, console, finished_run):
        table = renderer.render_runs([finished_run])
        assert isinstance(table, Table)
        assert table.row_count == 1
        console.print(table)
        assert finished_run.run_id in console.export_text()

    def test_plan_table(self, renderer: StatusRenderer, console, workload, artifact_b, policy):
        planner = RolloutPlanner()
        steps = planner.plan(workload, artifact_b, policy)
        renderer.print_plan(steps, plan_hash=planner.plan_hash(steps))
        text = console.export_text()
        assert "Rollout Plan (4 steps)" in text
        assert "Min healthy" in text

    def test_empty_plan_message(self, renderer: StatusRenderer, console):
        renderer.print_plan([])
        assert "Nothing to do" in console.export_text()

    def test_chain_verification_messages(self, renderer: StatusRenderer, console):
        renderer.print_chain_verification("dr-1", True)
        renderer.print_chain_verification("dr-2", False)
        text = console.export_text()
        assert "Hash chain for run dr-1 is valid." in text
        assert "Hash chain for run dr-2 is BROKEN!" in text

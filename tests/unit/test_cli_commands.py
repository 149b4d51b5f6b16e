"""Tests for the Typer CLI commands."""

from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from helmsman.cli.app import app
from helmsman.core.coordinator import PipelineCoordinator
from helmsman.core.run_store import RunStore
from helmsman.models.deployment import DeploymentState

runner = CliRunner()


@pytest.fixture
def db_paths(tmp_dir: Path) -> dict[str, Path]:
    return {"store": tmp_dir / "cli-runs.db", "ledger": tmp_dir / "cli-ledger.db"}


def _invoke(*args: str):
    return runner.invoke(app, ["--log-level", "WARNING", *args])


def _demo(db_paths, *extra: str):
    return _invoke(
        "demo",
        "--store", str(db_paths["store"]),
        "--ledger", str(db_paths["ledger"]),
        *extra,
    )


def _only_run(db_paths):
    [run] = RunStore(db_paths["store"]).list_runs()
    return run


class TestHelp:
    def test_help_lists_commands(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("plan", "status", "runs", "abort", "verify-chain", "demo"):
            assert command in result.output


class TestPlanCommand:
    def test_rolling_plan(self):
        result = _invoke("plan", "--replicas", "4", "--max-unavailable", "1", "--max-surge", "0")
        assert result.exit_code == 0
        assert "4 steps" in result.output

    def test_invalid_policy_exits_2(self):
        result = _invoke("plan", "-n", "4", "--max-unavailable", "0", "--max-surge", "0")
        assert result.exit_code == 2
        assert "Invalid policy" in result.output

    def test_recreate_plan(self):
        result = _invoke("plan", "-n", "3", "--strategy", "recreate")
        assert result.exit_code == 0
        assert "2 steps" in result.output


class TestDemoCommand:
    def test_demo_succeeds(self, db_paths):
        result = _demo(db_paths)
        assert result.exit_code == 0, result.output
        assert "Push outcome: succeeded" in result.output
        assert _only_run(db_paths).state == DeploymentState.SUCCEEDED

    def test_demo_with_failure_rolls_back(self, db_paths):
        result = _demo(db_paths, "--fail-at-step", "2")
        assert result.exit_code == 0, result.output
        assert "Push outcome: rolled_back" in result.output
        assert _only_run(db_paths).state == DeploymentState.ROLLED_BACK


class TestQueryCommands:
    def test_status_missing_store(self, db_paths):
        result = _invoke("status", "dr-missing", "--store", str(db_paths["store"]))
        assert result.exit_code == 1
        assert "Run store not found" in result.output

    def test_status_of_demo_run(self, db_paths):
        _demo(db_paths)
        run = _only_run(db_paths)
        result = _invoke(
            "status", run.run_id,
            "--store", str(db_paths["store"]),
            "--ledger", str(db_paths["ledger"]),
            "--verify-chain",
        )
        assert result.exit_code == 0, result.output
        assert "is valid" in result.output
        assert "SUCCEEDED" in result.output

    def test_status_unknown_run_lists_recent(self, db_paths):
        _demo(db_paths)
        result = _invoke(
            "status", "dr-missing",
            "--store", str(db_paths["store"]),
            "--ledger", str(db_paths["ledger"]),
        )
        assert result.exit_code == 1
        assert "Recent runs" in result.output

    def test_runs_lists_demo_run(self, db_paths):
        _demo(db_paths)
        result = _invoke("runs", "--store", str(db_paths["store"]))
        assert result.exit_code == 0
        assert "Deployment Runs" in result.output

    def test_verify_chain(self, db_paths):
        _demo(db_paths)
        run = _only_run(db_paths)
        result = _invoke("verify-chain", run.run_id, "--ledger", str(db_paths["ledger"]))
        assert result.exit_code == 0
        assert "is valid" in result.output

    def test_verify_chain_unknown_run(self, db_paths):
        _demo(db_paths)
        result = _invoke("verify-chain", "dr-missing", "--ledger", str(db_paths["ledger"]))
        assert result.exit_code == 1


class TestAbortCommand:
    def test_abort_finished_run_exits_2(self, db_paths):
        _demo(db_paths)
        run = _only_run(db_paths)
        result = _invoke(
            "abort", run.run_id,
            "--store", str(db_paths["store"]),
            "--ledger", str(db_paths["ledger"]),
        )
        assert result.exit_code == 2

    def test_abort_unknown_run_exits_1(self, db_paths):
        _demo(db_paths)
        result = _invoke(
            "abort", "dr-missing",
            "--store", str(db_paths["store"]),
            "--ledger", str(db_paths["ledger"]),
        )
        assert result.exit_code == 1

    def test_abort_in_flight_run(self, db_paths, make_settings, registry, cluster, make_push):
        # A run left rolling out by a coordinator using the same databases.
        coordinator = PipelineCoordinator(
            make_settings(store_path=db_paths["store"], ledger_path=db_paths["ledger"]),
            registry,
            cluster,
        )
        record = coordinator.handle_push(make_push(), drive=False)

        result = _invoke(
            "abort", record.run_id, "-m", "bad release",
            "--store", str(db_paths["store"]),
            "--ledger", str(db_paths["ledger"]),
        )
        assert result.exit_code == 0, result.output
        assert "Abort requested" in result.output
        assert coordinator.store.is_abort_requested(record.run_id) is True
        assert coordinator.drive(record.run_id).state == DeploymentState.ROLLED_BACK

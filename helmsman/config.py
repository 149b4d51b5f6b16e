"""Orchestrator configuration: env-driven.

Centralized config using pydantic-settings.  Reads from a ``.env`` file and
``HELMSMAN_*`` environment variables.  Component-level settings objects
(rollout policy, verifier timings, coordinator retry policy) are derived
from it so that components never read the environment themselves.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from helmsman.models.rollout import RolloutPolicy, RolloutStrategy


class TestGate(str, Enum):
    """Whether a push without passing tests may be deployed."""

    __test__ = False  # keep pytest from collecting this enum

    ENFORCE = "enforce"  # tests_passed must be True
    ADVISORY = "advisory"  # failures are logged, deployment proceeds


class VerifierConfig(BaseModel):
    """Polling cadence and deadline for one verification window."""

    model_config = ConfigDict(frozen=True)

    poll_interval_seconds: float = Field(default=2.0, ge=0)
    timeout_seconds: float = Field(default=120.0, gt=0)


class RetryPolicy(BaseModel):
    """Bounded exponential backoff: ``base * 2**attempt``."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=5, ge=0)
    backoff_base_seconds: float = Field(default=5.0, ge=0)

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return self.backoff_base_seconds * (2 ** attempt)


class HelmsmanSettings(BaseSettings):
    """Orchestrator configuration with environment variable overrides.

    All settings can be overridden via HELMSMAN_* environment variables
    or a .env file in the working directory.

    Examples
    --------
    Override via environment::

        export HELMSMAN_STRATEGY=recreate
        export HELMSMAN_MAX_UNAVAILABLE=2
        export HELMSMAN_TEST_GATE=advisory
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="HELMSMAN_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False

    # Storage paths
    store_path: Path = Path(".helmsman/runs.db")
    ledger_path: Path = Path(".helmsman/ledger.db")
    retry_queue_path: Path | None = None  # None -> in-memory queue
    retry_queue_depth: int = 1024

    # Rollout policy
    strategy: RolloutStrategy = RolloutStrategy.ROLLING_UPDATE
    max_unavailable: int = Field(default=1, ge=0)
    max_surge: int = Field(default=0, ge=0)
    step_pause_seconds: float = Field(default=0.0, ge=0)
    rollback_enabled: bool = True

    # Health verifier
    poll_interval_seconds: float = Field(default=2.0, ge=0)
    timeout_seconds: float = Field(default=120.0, gt=0)
    success_threshold: int = Field(default=1, ge=1)
    failure_threshold: int = Field(default=3, ge=1)

    # Coordinator retry of unbuilt revisions
    max_retries: int = Field(default=5, ge=0)
    backoff_base_seconds: float = Field(default=5.0, ge=0)

    # Image registry (OciRegistry.from_settings)
    registry_url: str = ""
    registry_token: str = ""

    # Local retries of transient I/O
    registry_max_attempts: int = Field(default=3, ge=1)
    registry_backoff_seconds: float = Field(default=0.5, ge=0)
    registry_timeout_seconds: float = Field(default=10.0, gt=0)
    apply_max_attempts: int = Field(default=3, ge=1)
    apply_backoff_seconds: float = Field(default=0.5, ge=0)

    # Deployment gating on CI test results
    test_gate: TestGate = TestGate.ENFORCE

    # workload_id -> image repository; unmapped workloads use their own id
    repositories: dict[str, str] = {}

    @property
    def is_production(self) -> bool:
        """Whether running in production mode."""
        return self.environment == "production"

    def rollout_policy(self) -> RolloutPolicy:
        return RolloutPolicy(
            strategy=self.strategy,
            max_unavailable=self.max_unavailable,
            max_surge=self.max_surge,
            step_pause_seconds=self.step_pause_seconds,
            rollback_enabled=self.rollback_enabled,
        )

    def verifier_config(self) -> VerifierConfig:
        return VerifierConfig(
            poll_interval_seconds=self.poll_interval_seconds,
            timeout_seconds=self.timeout_seconds,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            backoff_base_seconds=self.backoff_base_seconds,
        )

    def repository_for(self, workload_id: str) -> str:
        return self.repositories.get(workload_id, workload_id)

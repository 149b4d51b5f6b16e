"""Startup checks for production deployments.

``PipelineCoordinator`` calls :func:`enforce_production_constraints` before
it touches the registry or the cluster.  Outside production the call is a
no-op.  Inside production every violated rule is collected and reported in
a single ``ProductionConfigError``.
"""

from __future__ import annotations

import logging

from helmsman.config import HelmsmanSettings, TestGate

logger = logging.getLogger(__name__)


class ProductionConfigError(RuntimeError):
    """The settings are unsafe for a production environment.

    Not meant to be caught: the process should stop.
    """


def _production_violations(settings: HelmsmanSettings) -> list[str]:
    violations: list[str] = []
    if settings.debug:
        violations.append(
            "debug=True is not allowed in production. Set HELMSMAN_DEBUG=false."
        )
    if not settings.rollback_enabled:
        violations.append(
            "rollback_enabled=False would leave unhealthy rollouts serving "
            "traffic. Set HELMSMAN_ROLLBACK_ENABLED=true."
        )
    if settings.test_gate is TestGate.ADVISORY:
        violations.append(
            "test_gate=advisory would deploy commits whose tests failed. "
            "Set HELMSMAN_TEST_GATE=enforce."
        )
    return violations


def enforce_production_constraints(settings: HelmsmanSettings) -> None:
    """Refuse to start in production with unsafe settings.

    Constraints enforced
    --------------------
    1. Debug mode is off.
    2. Automatic rollback is on.
    3. The test gate is enforcing.

    Raises
    ------
    ProductionConfigError
        Listing every violated constraint.
    """
    if not settings.is_production:
        return

    violations = _production_violations(settings)
    if violations:
        msg = "Refusing to start in production:\n" + "\n".join(
            f"  - {v}" for v in violations
        )
        logger.critical(msg)
        raise ProductionConfigError(msg)

    logger.info("Production settings accepted.")

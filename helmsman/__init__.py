"""Helmsman: continuous deployment orchestrator.

Takes a revision-push event, resolves it to an immutable image digest,
plans a bounded rolling update (or recreate), applies it step by step
against a cluster while verifying replica health, and rolls back
automatically when a step does not become healthy:
  - content-addressed artifacts: a digest, never a tag, is deployed
  - deterministic planner: same inputs, same steps, same plan hash
  - persisted, resumable run state machine with a hash-chained ledger
  - one active run per workload; later pushes queue behind it
"""

__version__ = "0.1.0"
__description__ = "Continuous deployment orchestrator with verified rolling updates"

from helmsman.core.coordinator import PipelineCoordinator
from helmsman.core.deployment_machine import DeploymentMachine
from helmsman.monitor.projection import StatusProjection

__all__ = ["PipelineCoordinator", "DeploymentMachine", "StatusProjection", "__version__"]

"""Bridges to the external collaborators: image registry, cluster API, replica probes.

The orchestrator core depends only on the ``Registry``, ``ClusterClient``
and ``Probe`` Protocols; the concrete backends live here.
"""

from helmsman.bridge.cluster import ClusterClient, SimulatedCluster
from helmsman.bridge.probes import Probe, ProbeError, probe_for
from helmsman.bridge.registry import InMemoryRegistry, OciRegistry, Registry

__all__ = [
    "ClusterClient",
    "SimulatedCluster",
    "Probe",
    "ProbeError",
    "probe_for",
    "Registry",
    "InMemoryRegistry",
    "OciRegistry",
]

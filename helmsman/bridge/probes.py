"""Replica probes, polymorphic over probe protocol.

A probe answers one question for one replica: did this check succeed?
``True``/``False`` is a definite answer.  A transport problem raises
``ProbeError``, which the verifier counts as one failed check rather than
aborting verification.  Every probe is bounded by the readiness check's
``timeout_seconds``.
"""

from __future__ import annotations

import logging
import os
import socket
import subprocess
import urllib.error
import urllib.request
from typing import Protocol, runtime_checkable

from helmsman.models.workload import ProbeProtocol, ReadinessCheck, ReplicaReadiness

logger = logging.getLogger(__name__)


class ProbeError(RuntimeError):
    """Raised when a probe could not reach or run against a replica."""


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class Probe(Protocol):
    """Protocol for single-replica probes."""

    def check(self, replica: ReplicaReadiness, readiness: ReadinessCheck) -> bool:
        ...


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


class ClusterReadinessProbe:
    """Trusts the ready flag the cluster already reports for the replica."""

    def check(self, replica: ReplicaReadiness, readiness: ReadinessCheck) -> bool:
        return replica.ready


class HttpProbe:
    """``GET http://<address>:<port><path>``; any 2xx or 3xx is a success."""

    def check(self, replica: ReplicaReadiness, readiness: ReadinessCheck) -> bool:
        if not replica.address:
            raise ProbeError(f"replica {replica.replica_id} has no address")
        path = readiness.path if readiness.path.startswith("/") else f"/{readiness.path}"
        url = f"http://{replica.address}:{readiness.port}{path}"
        try:
            with urllib.request.urlopen(url, timeout=readiness.timeout_seconds) as response:
                status = response.status
        except urllib.error.HTTPError as exc:
            logger.debug("HttpProbe: %s answered HTTP %d", url, exc.code)
            return False
        except (urllib.error.URLError, OSError) as exc:
            raise ProbeError(f"GET {url} failed: {exc}") from exc
        return 200 <= status < 400


class TcpProbe:
    """Succeeds when a TCP connection to ``<address>:<port>`` opens."""

    def check(self, replica: ReplicaReadiness, readiness: ReadinessCheck) -> bool:
        if not replica.address:
            raise ProbeError(f"replica {replica.replica_id} has no address")
        try:
            with socket.create_connection(
                (replica.address, readiness.port), timeout=readiness.timeout_seconds
            ):
                return True
        except OSError as exc:
            raise ProbeError(
                f"connect {replica.address}:{readiness.port} failed: {exc}"
            ) from exc


class ExecProbe:
    """Runs ``readiness.command``; exit status 0 is a success.

    The replica is passed to the command through ``REPLICA_ID`` and
    ``REPLICA_ADDRESS`` environment variables.
    """

    def check(self, replica: ReplicaReadiness, readiness: ReadinessCheck) -> bool:
        if not readiness.command:
            raise ProbeError("exec readiness check has no command")
        env = dict(os.environ)
        env["REPLICA_ID"] = replica.replica_id
        env["REPLICA_ADDRESS"] = replica.address or ""
        try:
            completed = subprocess.run(
                readiness.command,
                env=env,
                capture_output=True,
                timeout=readiness.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ProbeError(
                f"command timed out after {readiness.timeout_seconds}s"
            ) from exc
        except OSError as exc:
            raise ProbeError(f"command could not start: {exc}") from exc
        return completed.returncode == 0


_DEFAULT_PROBES: dict[ProbeProtocol, Probe] = {
    ProbeProtocol.CLUSTER: ClusterReadinessProbe(),
    ProbeProtocol.HTTP: HttpProbe(),
    ProbeProtocol.TCP: TcpProbe(),
    ProbeProtocol.EXEC: ExecProbe(),
}


def probe_for(protocol: ProbeProtocol) -> Probe:
    """Return the default probe for a protocol."""
    return _DEFAULT_PROBES[protocol]

"""Tests for replica probes: cluster flag, HTTP, TCP and exec."""

from __future__ import annotations

import io
import socket
import sys
import urllib.error

import pytest

from helmsman.bridge import probes
from helmsman.bridge.probes import (
    ClusterReadinessProbe,
    ExecProbe,
    HttpProbe,
    ProbeError,
    TcpProbe,
    probe_for,
)
from helmsman.models.workload import ProbeProtocol, ReadinessCheck, ReplicaReadiness


def _replica(address: str | None = "127.0.0.1", ready: bool = True) -> ReplicaReadiness:
    return ReplicaReadiness(
        replica_id="web-1", artifact_digest="sha256:" + "b" * 64, ready=ready, address=address
    )


class _Response:
    def __init__(self, status: int) -> None:
        self.status = status

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class TestClusterProbe:
    def test_reports_cluster_flag(self):
        probe = ClusterReadinessProbe()
        assert probe.check(_replica(ready=True), ReadinessCheck()) is True
        assert probe.check(_replica(ready=False), ReadinessCheck()) is False

    def test_probe_for_protocol(self):
        assert isinstance(probe_for(ProbeProtocol.HTTP), HttpProbe)
        assert isinstance(probe_for(ProbeProtocol.CLUSTER), ClusterReadinessProbe)


class TestHttpProbe:
    def test_2xx_is_success(self, monkeypatch):
        seen = {}

        def fake_urlopen(url, timeout):
            seen["url"] = url
            seen["timeout"] = timeout
            return _Response(204)

        monkeypatch.setattr(probes.urllib.request, "urlopen", fake_urlopen)
        check = ReadinessCheck(protocol=ProbeProtocol.HTTP, path="ready", port=9000)
        assert HttpProbe().check(_replica(), check) is True
        assert seen == {"url": "http://127.0.0.1:9000/ready", "timeout": 2.0}

    def test_http_error_is_failure(self, monkeypatch):
        def fake_urlopen(url, timeout):
            raise urllib.error.HTTPError(url, 503, "unavailable", {}, io.BytesIO())

        monkeypatch.setattr(probes.urllib.request, "urlopen", fake_urlopen)
        assert HttpProbe().check(_replica(), ReadinessCheck()) is False

    def test_connection_error_raises(self, monkeypatch):
        def fake_urlopen(url, timeout):
            raise urllib.error.URLError("refused")

        monkeypatch.setattr(probes.urllib.request, "urlopen", fake_urlopen)
        with pytest.raises(ProbeError):
            HttpProbe().check(_replica(), ReadinessCheck())

    def test_missing_address_raises(self):
        with pytest.raises(ProbeError):
            HttpProbe().check(_replica(address=None), ReadinessCheck())


class TestTcpProbe:
    def test_open_port_is_success(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
            server.bind(("127.0.0.1", 0))
            server.listen(1)
            port = server.getsockname()[1]
            check = ReadinessCheck(protocol=ProbeProtocol.TCP, port=port)
            assert TcpProbe().check(_replica(), check) is True

    def test_closed_port_raises(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]
        check = ReadinessCheck(protocol=ProbeProtocol.TCP, port=port, timeout_seconds=1)
        with pytest.raises(ProbeError):
            TcpProbe().check(_replica(), check)


class TestExecProbe:
    def _check(self, code: str) -> ReadinessCheck:
        return ReadinessCheck(protocol=ProbeProtocol.EXEC, command=[sys.executable, "-c", code])

    def test_exit_zero_is_success(self):
        check = self._check("import os, sys; sys.exit(os.environ['REPLICA_ID'] != 'web-1')")
        assert ExecProbe().check(_replica(), check) is True

    def test_nonzero_exit_is_failure(self):
        assert ExecProbe().check(_replica(), self._check("raise SystemExit(3)")) is False

    def test_empty_command_raises(self):
        with pytest.raises(ProbeError):
            ExecProbe().check(_replica(), ReadinessCheck(protocol=ProbeProtocol.EXEC))

    def test_missing_executable_raises(self):
        check = ReadinessCheck(
            protocol=ProbeProtocol.EXEC, command=["/nonexistent/helmsman-probe"]
        )
        with pytest.raises(ProbeError):
            ExecProbe().check(_replica(), check)

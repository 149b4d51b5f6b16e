"""Image registry lookup backends.

Defines the ``Registry`` Protocol the resolver depends on, along with two
implementations:

1. **OciRegistry**: talks to an OCI distribution API (``HEAD`` on the
   manifest, reads ``Docker-Content-Digest``).
2. **InMemoryRegistry**: a dict of published digests for tests, demos, and
   dry runs.

A backend signals a missing manifest with ``RegistryNotFound`` and any
transport problem with ``RegistryUnavailable``.
"""

from __future__ import annotations

import logging
import threading
import urllib.error
import urllib.request
from typing import Protocol, runtime_checkable

from helmsman.config import HelmsmanSettings
from helmsman.errors import RegistryNotFound, RegistryUnavailable

logger = logging.getLogger(__name__)

_MANIFEST_ACCEPT = ", ".join(
    [
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    ]
)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class Registry(Protocol):
    """Protocol for registry lookup backends."""

    def digest_for(self, repository: str, tag: str) -> str:
        """Return the content digest published under ``repository:tag``.

        Raises
        ------
        RegistryNotFound
            No manifest exists for the tag.
        RegistryUnavailable
            The registry could not be reached.
        """
        ...


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


class InMemoryRegistry:
    """Registry backed by a dict of ``(repository, tag) -> digest``.

    ``fail_next`` makes the next *n* lookups raise ``RegistryUnavailable``,
    which is how tests exercise the resolver's local retries.
    """

    def __init__(self, published: dict[tuple[str, str], str] | None = None) -> None:
        self._published: dict[tuple[str, str], str] = dict(published or {})
        self._lock = threading.Lock()
        self._fail_next = 0
        self.lookups = 0

    def publish(self, repository: str, tag: str, digest: str) -> None:
        with self._lock:
            self._published[(repository, tag)] = digest

    def fail_next(self, count: int = 1) -> None:
        with self._lock:
            self._fail_next = count

    def digest_for(self, repository: str, tag: str) -> str:
        with self._lock:
            self.lookups += 1
            if self._fail_next > 0:
                self._fail_next -= 1
                raise RegistryUnavailable(f"registry unreachable looking up {repository}:{tag}")
            try:
                return self._published[(repository, tag)]
            except KeyError:
                raise RegistryNotFound(f"{repository}:{tag} has no manifest") from None


class OciRegistry:
    """OCI distribution API client.

    Parameters
    ----------
    base_url:
        Registry root, e.g. ``https://registry.example.com``.
    token:
        Optional bearer token sent as ``Authorization``.
    timeout_seconds:
        Socket timeout for each lookup.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str = "",
        timeout_seconds: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout_seconds

    @classmethod
    def from_settings(cls, settings: HelmsmanSettings) -> OciRegistry:
        """Build a client from ``HELMSMAN_REGISTRY_*`` settings.

        Raises
        ------
        ValueError
            If ``registry_url`` is not configured.
        """
        if not settings.registry_url:
            raise ValueError("registry_url is not set (HELMSMAN_REGISTRY_URL).")
        return cls(
            settings.registry_url,
            token=settings.registry_token,
            timeout_seconds=settings.registry_timeout_seconds,
        )

    def manifest_url(self, repository: str, tag: str) -> str:
        return f"{self._base_url}/v2/{repository}/manifests/{tag}"

    def digest_for(self, repository: str, tag: str) -> str:
        request = urllib.request.Request(
            self.manifest_url(repository, tag),
            method="HEAD",
            headers={"Accept": _MANIFEST_ACCEPT},
        )
        if self._token:
            request.add_header("Authorization", f"Bearer {self._token}")

        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                digest = response.headers.get("Docker-Content-Digest", "")
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                raise RegistryNotFound(f"{repository}:{tag} has no manifest") from exc
            raise RegistryUnavailable(
                f"registry returned HTTP {exc.code} for {repository}:{tag}"
            ) from exc
        except (urllib.error.URLError, OSError) as exc:
            raise RegistryUnavailable(f"registry unreachable: {exc}") from exc

        if not digest:
            raise RegistryUnavailable(
                f"registry response for {repository}:{tag} carried no digest header"
            )
        logger.debug("OciRegistry: %s:%s -> %s", repository, tag, digest)
        return digest

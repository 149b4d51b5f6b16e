"""Artifact reference resolver: revision -> content-addressed artifact.

Pure lookup against the registry.  The resolver never builds anything;
resolving the same revision twice returns the same digest for as long as
the registry keeps that tag.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from helmsman.bridge.registry import Registry
from helmsman.errors import NotBuilt, RegistryNotFound, RegistryUnavailable
from helmsman.models.artifacts import ArtifactRef, Revision

logger = logging.getLogger(__name__)


class ArtifactResolver:
    """Resolves revisions to ``ArtifactRef`` via a ``Registry`` backend.

    ``RegistryUnavailable`` is retried locally with exponential backoff
    (``backoff_seconds * 2**attempt``) up to ``max_attempts`` lookups in
    total; after that it propagates.  A missing manifest becomes
    ``NotBuilt`` immediately.

    Parameters
    ----------
    registry:
        Backend implementing ``digest_for(repository, tag)``.
    max_attempts:
        Total lookups per ``resolve`` call when the registry is unreachable.
    backoff_seconds:
        Base delay between lookups.
    sleep:
        Injected for tests; defaults to ``time.sleep``.
    """

    def __init__(
        self,
        registry: Registry,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._registry = registry
        self._max_attempts = max_attempts
        self._backoff = backoff_seconds
        self._sleep = sleep

    @staticmethod
    def tag_for(revision: Revision) -> str:
        """Registry tag the CI pipeline publishes a revision under."""
        return revision.commit

    def resolve(self, revision: Revision, repository: str) -> ArtifactRef:
        """Return the artifact built for ``revision``.

        Raises
        ------
        NotBuilt
            No artifact exists for this revision yet.
        RegistryUnavailable
            The registry stayed unreachable for every attempt.
        """
        tag = self.tag_for(revision)
        for attempt in range(self._max_attempts):
            try:
                digest = self._registry.digest_for(repository, tag)
            except RegistryNotFound as exc:
                raise NotBuilt(
                    f"No artifact for revision {revision.short} in {repository}"
                ) from exc
            except RegistryUnavailable:
                if attempt + 1 >= self._max_attempts:
                    logger.error(
                        "Registry unavailable resolving %s:%s after %d attempts.",
                        repository,
                        tag,
                        self._max_attempts,
                    )
                    raise
                delay = self._backoff * (2 ** attempt)
                logger.warning(
                    "Registry unavailable resolving %s:%s (attempt %d/%d); retrying in %.2fs.",
                    repository,
                    tag,
                    attempt + 1,
                    self._max_attempts,
                    delay,
                )
                self._sleep(delay)
                continue

            ref = ArtifactRef(repository=repository, tag=tag, digest=digest)
            logger.info("Resolved %s to %s.", revision.short, ref.image)
            return ref

        # Unreachable: the loop either returns or raises.
        raise RegistryUnavailable(f"could not resolve {repository}:{tag}")

"""Revision and artifact reference models.

An ``ArtifactRef`` is content-addressed: the digest is its identity.  Tags
are mutable registry metadata and are never compared for identity.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, field_validator


class Revision(BaseModel):
    """A source-control commit observed on a branch."""

    model_config = ConfigDict(frozen=True)

    commit: str
    branch: str = "main"

    @property
    def short(self) -> str:
        return self.commit[:12]


class ArtifactRef(BaseModel):
    """Registry coordinates of a built image plus its content digest.

    The digest uses the ``sha256:<hex>`` form returned by OCI registries.
    """

    model_config = ConfigDict(frozen=True)

    repository: str
    tag: str
    digest: str

    @field_validator("digest")
    @classmethod
    def _digest_has_algorithm(cls, value: str) -> str:
        if ":" not in value:
            raise ValueError(f"digest must be '<algorithm>:<hex>', got {value!r}")
        return value

    @property
    def image(self) -> str:
        """Pullable, immutable image reference (``repository@digest``)."""
        return f"{self.repository}@{self.digest}"

    def same_artifact(self, other: ArtifactRef | None) -> bool:
        """Digest-only identity comparison."""
        return other is not None and self.digest == other.digest

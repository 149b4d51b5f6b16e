"""Canonical hashing helpers for plan identity and ledger sealing."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Sequence
from typing import Any

from helmsman.models.rollout import RolloutStep


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes: deterministic, sorted, compact.

    - sorted keys
    - no whitespace separators (",", ":")
    - ensure_ascii=True
    - UTF-8 encoding
    """
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def compute_plan_hash(steps: Sequence[RolloutStep]) -> str:
    """SHA-256 of the canonical step sequence.

    Two plans hash equal only if every step matches field for field, in
    order.  Used on resume to detect a persisted plan that no longer matches
    what the planner computes.
    """
    payload = [step.model_dump(mode="json") for step in steps]
    return sha256_hex(canonical_json_bytes(payload))


def compute_entry_hash(entry_dict: dict[str, Any]) -> str:
    """SHA-256 of a ledger entry (excluding the entry_hash field itself)."""
    d = {k: v for k, v in entry_dict.items() if k != "entry_hash"}
    return sha256_hex(canonical_json_bytes(d))

"""Transition ledger entry model (append-only, hash-chained).

The ledger is the audit trail of a run: one entry per state transition or
notable event, each sealed with the SHA-256 of the previous entry for the
same run.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class LedgerEntry(BaseModel):
    """A single entry in the append-only transition ledger."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    workload_id: str
    state_transition: str  # "from_state->to_state", e.g. "pending->rolling_out"
    step_index: int = 0
    artifact_digest: str = ""
    detail: str = ""
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed on append, seals this entry

    @property
    def to_state(self) -> str:
        if "->" not in self.state_transition:
            return ""
        return self.state_transition.split("->", 1)[1]

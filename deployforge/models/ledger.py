"""Deployment ledger entry model (append-only, hash-chained).

Every state transition of every attempt becomes one ``LedgerEntry``.
Entries are never updated or deleted; each one carries the hash of the
previous entry of the same attempt so tampering is detectable.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class LedgerEntry(BaseModel):
    """A single entry in the deployment ledger."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    attempt_id: str
    stage: str
    state_transition: str  # "from_state->to_state", e.g. "backing_up->installing"
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    detail: dict[str, Any] = {}
    error_kind: str = ""
    schema_version: str = "2026-10"
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed on append, seals this entry


class AttemptSummary(BaseModel):
    """One row per finished attempt, for ``deployforge history``."""

    model_config = ConfigDict(frozen=True)

    attempt_id: str
    mode: str
    outcome: str
    exit_code: int
    current_version: str = ""
    target_version: str = ""
    strategy: str = ""
    error_kind: str = ""
    started_at: datetime
    finished_at: datetime | None = None

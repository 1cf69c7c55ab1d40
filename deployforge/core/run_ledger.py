"""Append-only, hash-chained deployment ledger backed by SQLite.

The ledger is the post-mortem record of every deployment attempt. It is
written as an attempt progresses and read by ``deployforge history``; it
is never reloaded as live orchestrator state.

- Append-only: ``append()`` and ``record_attempt()`` are the only writes.
- Hash-chained per attempt: each entry carries the previous entry's hash.
- WAL journal mode so ``history`` can read while a deployment runs.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from pathlib import Path

from deployforge.core.hasher import compute_entry_hash
from deployforge.models.attempt import DeploymentAttempt
from deployforge.models.ledger import AttemptSummary, LedgerEntry


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS deploy_ledger (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id            TEXT NOT NULL UNIQUE,
    attempt_id          TEXT NOT NULL,
    stage               TEXT NOT NULL,
    state_transition    TEXT NOT NULL,
    timestamp_utc       TEXT NOT NULL,
    detail_json         TEXT NOT NULL DEFAULT '{}',
    error_kind          TEXT NOT NULL DEFAULT '',
    schema_version      TEXT NOT NULL,
    previous_entry_hash TEXT NOT NULL DEFAULT '',
    entry_hash          TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_ATTEMPT = """
CREATE INDEX IF NOT EXISTS idx_attempt_id ON deploy_ledger(attempt_id, id);
"""

_CREATE_ATTEMPTS = """
CREATE TABLE IF NOT EXISTS attempts (
    attempt_id      TEXT PRIMARY KEY,
    mode            TEXT NOT NULL,
    outcome         TEXT NOT NULL,
    exit_code       INTEGER NOT NULL,
    current_version TEXT NOT NULL DEFAULT '',
    target_version  TEXT NOT NULL DEFAULT '',
    strategy        TEXT NOT NULL DEFAULT '',
    error_kind      TEXT NOT NULL DEFAULT '',
    started_at      TEXT NOT NULL,
    finished_at     TEXT,
    attempt_json    TEXT NOT NULL
);
"""


class LedgerIntegrityError(RuntimeError):
    """Raised when the hash chain is broken."""


class RunLedger:
    """Append-only, hash-chained deployment ledger.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_LEDGER)
            conn.execute(_CREATE_IDX_ATTEMPT)
            conn.execute(_CREATE_ATTEMPTS)
            conn.commit()

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Seal ``entry`` onto its attempt's chain and persist it.

        Returns the entry with ``previous_entry_hash`` and ``entry_hash`` set.
        """
        previous_hash = self._get_latest_hash(entry.attempt_id)

        entry_dict = entry.model_dump(mode="json")
        entry_dict["previous_entry_hash"] = previous_hash
        entry_dict["entry_hash"] = ""

        sealed = entry.model_copy(
            update={
                "previous_entry_hash": previous_hash,
                "entry_hash": compute_entry_hash(entry_dict),
            }
        )
        self._insert(sealed)
        return sealed

    def _insert(self, entry: LedgerEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO deploy_ledger
                    (entry_id, attempt_id, stage, state_transition, timestamp_utc,
                     detail_json, error_kind, schema_version,
                     previous_entry_hash, entry_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.entry_id,
                    entry.attempt_id,
                    entry.stage,
                    entry.state_transition,
                    entry.timestamp_utc.isoformat(),
                    json.dumps(entry.model_dump(mode="json")["detail"]),
                    entry.error_kind,
                    entry.schema_version,
                    entry.previous_entry_hash,
                    entry.entry_hash,
                ),
            )
            conn.commit()

    def _get_latest_hash(self, attempt_id: str) -> str:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT entry_hash FROM deploy_ledger WHERE attempt_id = ? "
                "ORDER BY id DESC LIMIT 1",
                (attempt_id,),
            ).fetchone()
        return row[0] if row else ""

    def record_attempt(self, attempt: DeploymentAttempt) -> None:
        """Store the finished attempt's summary. Written once per attempt."""
        error_kind = (attempt.error or {}).get("kind", "")
        outcome = attempt.outcome.value if attempt.outcome else ""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO attempts
                    (attempt_id, mode, outcome, exit_code, current_version,
                     target_version, strategy, error_kind, started_at,
                     finished_at, attempt_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    attempt.attempt_id,
                    attempt.mode,
                    outcome,
                    int(attempt.exit_code),
                    attempt.current_version,
                    attempt.target_version,
                    attempt.strategy,
                    error_kind,
                    attempt.started_at.isoformat(),
                    attempt.finished_at.isoformat() if attempt.finished_at else None,
                    attempt.model_dump_json(),
                ),
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def get_attempt_entries(self, attempt_id: str) -> list[LedgerEntry]:
        """Return all entries for an attempt, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM deploy_ledger WHERE attempt_id = ? ORDER BY id ASC",
                (attempt_id,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def list_attempts(self, limit: int = 20) -> list[AttemptSummary]:
        """Most recent attempts first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT attempt_id, mode, outcome, exit_code, current_version, "
                "target_version, strategy, error_kind, started_at, finished_at "
                "FROM attempts ORDER BY started_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [
            AttemptSummary(
                attempt_id=r[0],
                mode=r[1],
                outcome=r[2],
                exit_code=r[3],
                current_version=r[4],
                target_version=r[5],
                strategy=r[6],
                error_kind=r[7],
                started_at=datetime.fromisoformat(r[8]),
                finished_at=datetime.fromisoformat(r[9]) if r[9] else None,
            )
            for r in rows
        ]

    def get_attempt(self, attempt_id: str) -> DeploymentAttempt | None:
        """The serialized attempt, for inspection only."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT attempt_json FROM attempts WHERE attempt_id = ?",
                (attempt_id,),
            ).fetchone()
        return DeploymentAttempt.model_validate_json(row[0]) if row else None

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, attempt_id: str) -> bool:
        """Recompute every hash of an attempt's chain.

        Returns True if the chain is valid, raises LedgerIntegrityError otherwise.
        """
        prev_hash = ""
        for entry in self.get_attempt_entries(attempt_id):
            if entry.previous_entry_hash != prev_hash:
                raise LedgerIntegrityError(
                    f"Chain broken at entry {entry.entry_id}: "
                    f"expected previous_hash={prev_hash!r}, "
                    f"got {entry.previous_entry_hash!r}"
                )
            expected_hash = compute_entry_hash(entry.model_dump(mode="json"))
            if entry.entry_hash != expected_hash:
                raise LedgerIntegrityError(
                    f"Tampered entry {entry.entry_id}: "
                    f"expected hash={expected_hash!r}, got {entry.entry_hash!r}"
                )
            prev_hash = entry.entry_hash
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: tuple) -> LedgerEntry:
        (
            _id,
            entry_id,
            attempt_id,
            stage,
            state_transition,
            timestamp_utc,
            detail_json,
            error_kind,
            schema_version,
            previous_entry_hash,
            entry_hash,
        ) = row
        return LedgerEntry(
            entry_id=entry_id,
            attempt_id=attempt_id,
            stage=stage,
            state_transition=state_transition,
            timestamp_utc=timestamp_utc,
            detail=json.loads(detail_json),
            error_kind=error_kind,
            schema_version=schema_version,
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )

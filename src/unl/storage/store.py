"""Durable state for the validators engine.

Two record kinds are persisted:
  validators(identity, label, trusted, score fields, origins, timestamps)
  sources(name, definition, membership snapshot, health counters)

Only dynamic sources are stored; static sources come from configuration
on every start. Records are written through on every change.

Implementations: SqliteStore (production), MemoryStore (tests, tooling).
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Iterable, Protocol, runtime_checkable

from ..validators.models import SourceState, ValidatorRecord

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the store cannot be opened, read or written."""

    pass


@runtime_checkable
class Store(Protocol):
    """Interface for persisting known validators and dynamic sources."""

    def open(self) -> None:
        """Open (creating if needed) the backing storage."""
        ...

    def close(self) -> None:
        ...

    def load_validators(self) -> list[ValidatorRecord]:
        ...

    def load_sources(self) -> list[SourceState]:
        ...

    def save_validators(self, records: Iterable[ValidatorRecord]) -> None:
        """Insert or replace validator records."""
        ...

    def save_source(self, state: SourceState) -> None:
        """Insert or replace a source record."""
        ...

    def delete_source(self, name: str) -> None:
        ...


# =============================================================================
# SQLITE
# =============================================================================


_SCHEMA = """
CREATE TABLE IF NOT EXISTS validators (
    identity TEXT PRIMARY KEY,
    label TEXT,
    trusted INTEGER NOT NULL DEFAULT 0,
    rounds_observed INTEGER NOT NULL DEFAULT 0,
    participated INTEGER NOT NULL DEFAULT 0,
    wasted INTEGER NOT NULL DEFAULT 0,
    origins TEXT NOT NULL DEFAULT '[]',
    first_seen REAL NOT NULL DEFAULT 0,
    last_seen REAL NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS sources (
    name TEXT PRIMARY KEY,
    data TEXT NOT NULL
);
"""


class SqliteStore:
    """SQLite-backed store (a single validators.sqlite file)."""

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()
        self._conn: sqlite3.Connection | None = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> None:
        if self._conn is not None:
            return
        logger.debug(f"Opening database at '{self.path}'")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.path)
            conn.row_factory = sqlite3.Row
            conn.executescript(_SCHEMA)
            conn.commit()
        except (OSError, sqlite3.Error) as e:
            raise StoreError(f"Failed to open '{self.path}': {e}") from e
        self._conn = conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreError("Store is not open")
        return self._conn

    def load_validators(self) -> list[ValidatorRecord]:
        conn = self._require_conn()
        try:
            rows = conn.execute("SELECT * FROM validators ORDER BY identity").fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to load validators: {e}") from e

        records = []
        for row in rows:
            try:
                origins = json.loads(row["origins"])
            except json.JSONDecodeError:
                logger.warning(f"Corrupt origins for validator {row['identity'][:16]}..., resetting")
                origins = []
            records.append(ValidatorRecord(
                identity=row["identity"],
                label=row["label"],
                origins=set(origins),
                trusted=bool(row["trusted"]),
                rounds_observed=row["rounds_observed"],
                participated=row["participated"],
                wasted=row["wasted"],
                first_seen=row["first_seen"],
                last_seen=row["last_seen"],
            ))
        return records

    def load_sources(self) -> list[SourceState]:
        conn = self._require_conn()
        try:
            rows = conn.execute("SELECT name, data FROM sources ORDER BY rowid").fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to load sources: {e}") from e

        states = []
        for row in rows:
            try:
                states.append(SourceState.from_dict(json.loads(row["data"])))
            except (json.JSONDecodeError, ValueError, KeyError) as e:
                # A corrupt source record is skipped; the source is re-added from config
                logger.warning(f"Skipping corrupt source record {row['name']!r}: {e}")
        return states

    def save_validators(self, records: Iterable[ValidatorRecord]) -> None:
        conn = self._require_conn()
        rows = [
            (
                r.identity,
                r.label,
                int(r.trusted),
                r.rounds_observed,
                r.participated,
                r.wasted,
                json.dumps(sorted(r.origins)),
                r.first_seen,
                r.last_seen,
            )
            for r in records
        ]
        if not rows:
            return
        try:
            with conn:
                conn.executemany(
                    "INSERT OR REPLACE INTO validators "
                    "(identity, label, trusted, rounds_observed, participated, wasted, "
                    "origins, first_seen, last_seen) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    rows,
                )
        except sqlite3.Error as e:
            raise StoreError(f"Failed to save {len(rows)} validators: {e}") from e

    def save_source(self, state: SourceState) -> None:
        conn = self._require_conn()
        try:
            with conn:
                # Upsert keeps the original rowid, so load order follows insertion order
                conn.execute(
                    "INSERT INTO sources (name, data) VALUES (?, ?) "
                    "ON CONFLICT(name) DO UPDATE SET data = excluded.data",
                    (state.name, json.dumps(state.to_dict(), sort_keys=True)),
                )
        except sqlite3.Error as e:
            raise StoreError(f"Failed to save source {state.name!r}: {e}") from e

    def delete_source(self, name: str) -> None:
        conn = self._require_conn()
        try:
            with conn:
                conn.execute("DELETE FROM sources WHERE name = ?", (name,))
        except sqlite3.Error as e:
            raise StoreError(f"Failed to delete source {name!r}: {e}") from e


# =============================================================================
# IN-MEMORY
# =============================================================================


class MemoryStore:
    """Dict-backed store. Records are copied in and out like a real store."""

    def __init__(self):
        self.validators: dict[str, dict] = {}
        self.sources: dict[str, dict] = {}
        self.opened = False

    def open(self) -> None:
        self.opened = True

    def close(self) -> None:
        self.opened = False

    def load_validators(self) -> list[ValidatorRecord]:
        return [ValidatorRecord.from_dict(d) for d in self.validators.values()]

    def load_sources(self) -> list[SourceState]:
        return [SourceState.from_dict(d) for d in self.sources.values()]

    def save_validators(self, records: Iterable[ValidatorRecord]) -> None:
        for record in records:
            self.validators[record.identity] = record.to_dict()

    def save_source(self, state: SourceState) -> None:
        self.sources[state.name] = state.to_dict()

    def delete_source(self, name: str) -> None:
        self.sources.pop(name, None)

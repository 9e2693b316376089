"""Persistence for sessions, runs and interval statistics.

Two interchangeable implementations of the :class:`Store` protocol are
provided. :class:`InMemoryStore` keeps copies of every record in
dictionaries and suits tests and throwaway sessions. :class:`SQLiteStore`
writes to a SQLite database whose tables mirror the record types; note
sequences and per-note statistics are stored as JSON text.

All failures surface as :class:`~harmony_trainer.errors.PersistenceError`.

Example
-------
>>> store = SQLiteStore(":memory:")
>>> session = Session()
>>> store.create_session(session)
>>> store.get_session(session.id).total_runs
0
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from .errors import PersistenceError
from .models import IntervalStat, Run, Session

__all__ = [
    "Store",
    "InMemoryStore",
    "SQLiteStore",
    "default_db_path",
    "SCHEMA_VERSION",
]


logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_DB_ENV = "HARMONY_TRAINER_DB"
_DEFAULT_DB = os.path.join(os.path.expanduser("~"), ".harmony_trainer.db")


def default_db_path() -> str:
    """Return ``HARMONY_TRAINER_DB`` or ``~/.harmony_trainer.db``."""

    return os.environ.get(_DB_ENV, _DEFAULT_DB)


class Store(Protocol):
    """Create, read and update-by-key access to the practice history."""

    def create_session(self, session: Session) -> None: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def update_session(self, session: Session) -> None: ...

    def create_run(self, run: Run) -> None: ...

    def get_run(self, run_id: str) -> Optional[Run]: ...

    def runs_for_session(self, session_id: str) -> List[Run]: ...

    def upsert_interval_stat(self, stat: IntervalStat) -> None: ...

    def get_interval_stat(self, interval: int) -> Optional[IntervalStat]: ...

    def all_interval_stats(self) -> List[IntervalStat]: ...


class InMemoryStore:
    """Dictionary backed :class:`Store`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}
        self._runs: Dict[str, Run] = {}
        self._stats: Dict[int, IntervalStat] = {}

    def create_session(self, session: Session) -> None:
        with self._lock:
            if session.id in self._sessions:
                raise PersistenceError(f"Session {session.id} already exists")
            self._sessions[session.id] = replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(session_id)
            return replace(session) if session is not None else None

    def update_session(self, session: Session) -> None:
        with self._lock:
            if session.id not in self._sessions:
                raise PersistenceError(f"Session {session.id} does not exist")
            self._sessions[session.id] = replace(session)

    def create_run(self, run: Run) -> None:
        with self._lock:
            if run.session_id not in self._sessions:
                raise PersistenceError(f"Session {run.session_id} does not exist")
            if run.id in self._runs:
                raise PersistenceError(f"Run {run.id} already exists")
            self._runs[run.id] = run

    def get_run(self, run_id: str) -> Optional[Run]:
        with self._lock:
            return self._runs.get(run_id)

    def runs_for_session(self, session_id: str) -> List[Run]:
        with self._lock:
            runs = [r for r in self._runs.values() if r.session_id == session_id]
        return sorted(runs, key=lambda r: r.created_at)

    def upsert_interval_stat(self, stat: IntervalStat) -> None:
        with self._lock:
            self._stats[stat.interval_degrees] = stat.copy()

    def get_interval_stat(self, interval: int) -> Optional[IntervalStat]:
        with self._lock:
            stat = self._stats.get(interval)
            return stat.copy() if stat is not None else None

    def all_interval_stats(self) -> List[IntervalStat]:
        with self._lock:
            return [self._stats[i].copy() for i in sorted(self._stats)]


_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
  id TEXT PRIMARY KEY,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  total_runs INTEGER DEFAULT 0,
  total_practice_time_ms INTEGER DEFAULT 0,
  average_score REAL DEFAULT 0.0
);

CREATE TABLE IF NOT EXISTS runs (
  id TEXT PRIMARY KEY,
  session_id TEXT NOT NULL,
  created_at TEXT NOT NULL,
  melody_seed INTEGER NOT NULL,
  key TEXT NOT NULL,
  difficulty INTEGER NOT NULL,
  interval INTEGER NOT NULL,
  interval_mode TEXT NOT NULL,
  length_in_notes INTEGER NOT NULL,
  loop_mode INTEGER NOT NULL,
  ghost_harmony INTEGER NOT NULL,
  score REAL NOT NULL,
  duration_ms INTEGER NOT NULL,
  notes_sequence_json TEXT,
  per_note_stats_json TEXT,
  FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_runs_session ON runs(session_id);

CREATE TABLE IF NOT EXISTS interval_stats (
  interval INTEGER PRIMARY KEY,
  total_attempts INTEGER DEFAULT 0,
  average_score REAL DEFAULT 0.0,
  last_attempt_at TEXT,
  struggling INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS schema_version (
  version INTEGER PRIMARY KEY
);
"""


def _to_text(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_text(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteStore:
    """:class:`Store` backed by a SQLite database file.

    Parameters
    ----------
    path:
        Database file, ``":memory:"`` for a private in-memory database, or
        ``None`` for :func:`default_db_path`.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path or default_db_path()
        if self.path != ":memory:":
            parent = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(parent, exist_ok=True)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            with self._conn:
                self._conn.execute("PRAGMA foreign_keys = ON")
                self._conn.executescript(_SCHEMA)
                self._conn.execute(
                    "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
                    (SCHEMA_VERSION,),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not open database {self.path}: {exc}") from exc
        logger.debug("Opened practice database %s", self.path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "SQLiteStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _execute(self, sql: str, params=()) -> sqlite3.Cursor:
        with self._lock:
            try:
                with self._conn:
                    return self._conn.execute(sql, params)
            except sqlite3.Error as exc:
                logger.error("Database operation failed: %s", exc)
                raise PersistenceError(str(exc)) from exc

    def _query(self, sql: str, params=()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                logger.error("Database query failed: %s", exc)
                raise PersistenceError(str(exc)) from exc

    # Sessions ---------------------------------------------------------
    def create_session(self, session: Session) -> None:
        self._execute(
            "INSERT INTO sessions (id, created_at, updated_at, total_runs, "
            "total_practice_time_ms, average_score) VALUES (?, ?, ?, ?, ?, ?)",
            (
                session.id,
                _to_text(session.created_at),
                _to_text(session.updated_at),
                session.total_runs,
                session.total_practice_time_ms,
                session.average_score,
            ),
        )

    def get_session(self, session_id: str) -> Optional[Session]:
        rows = self._query("SELECT * FROM sessions WHERE id = ?", (session_id,))
        if not rows:
            return None
        row = rows[0]
        return Session(
            id=row["id"],
            created_at=_from_text(row["created_at"]),
            updated_at=_from_text(row["updated_at"]),
            total_runs=row["total_runs"],
            total_practice_time_ms=row["total_practice_time_ms"],
            average_score=row["average_score"],
        )

    def update_session(self, session: Session) -> None:
        cursor = self._execute(
            "UPDATE sessions SET updated_at = ?, total_runs = ?, "
            "total_practice_time_ms = ?, average_score = ? WHERE id = ?",
            (
                _to_text(session.updated_at),
                session.total_runs,
                session.total_practice_time_ms,
                session.average_score,
                session.id,
            ),
        )
        if cursor.rowcount == 0:
            raise PersistenceError(f"Session {session.id} does not exist")

    # Runs -------------------------------------------------------------
    def create_run(self, run: Run) -> None:
        self._execute(
            "INSERT INTO runs (id, session_id, created_at, melody_seed, key, "
            "difficulty, interval, interval_mode, length_in_notes, loop_mode, "
            "ghost_harmony, score, duration_ms, notes_sequence_json, "
            "per_note_stats_json) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                run.id,
                run.session_id,
                _to_text(run.created_at),
                run.melody_seed,
                run.key,
                run.difficulty,
                run.harmony_interval_degrees,
                run.interval_mode,
                run.note_count,
                int(run.loop_mode),
                int(run.ghost_harmony_enabled),
                run.score,
                run.duration_ms,
                json.dumps([dict(row) for row in run.note_sequence_snapshot]),
                json.dumps([dict(row) for row in run.per_note_stats_snapshot]),
            ),
        )

    def _row_to_run(self, row: sqlite3.Row) -> Run:
        return Run(
            id=row["id"],
            session_id=row["session_id"],
            created_at=_from_text(row["created_at"]),
            melody_seed=row["melody_seed"],
            key=row["key"],
            difficulty=row["difficulty"],
            harmony_interval_degrees=row["interval"],
            interval_mode=row["interval_mode"],
            note_count=row["length_in_notes"],
            loop_mode=bool(row["loop_mode"]),
            ghost_harmony_enabled=bool(row["ghost_harmony"]),
            score=row["score"],
            duration_ms=row["duration_ms"],
            note_sequence_snapshot=tuple(json.loads(row["notes_sequence_json"] or "[]")),
            per_note_stats_snapshot=tuple(json.loads(row["per_note_stats_json"] or "[]")),
        )

    def get_run(self, run_id: str) -> Optional[Run]:
        rows = self._query("SELECT * FROM runs WHERE id = ?", (run_id,))
        return self._row_to_run(rows[0]) if rows else None

    def runs_for_session(self, session_id: str) -> List[Run]:
        rows = self._query(
            "SELECT * FROM runs WHERE session_id = ? ORDER BY created_at",
            (session_id,),
        )
        return [self._row_to_run(r) for r in rows]

    # Interval statistics -----------------------------------------------
    def upsert_interval_stat(self, stat: IntervalStat) -> None:
        self._execute(
            "INSERT INTO interval_stats (interval, total_attempts, average_score, "
            "last_attempt_at, struggling) VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(interval) DO UPDATE SET "
            "total_attempts = excluded.total_attempts, "
            "average_score = excluded.average_score, "
            "last_attempt_at = excluded.last_attempt_at, "
            "struggling = excluded.struggling",
            (
                stat.interval_degrees,
                stat.total_attempts,
                stat.average_score,
                _to_text(stat.last_attempt_at),
                int(stat.struggling),
            ),
        )

    @staticmethod
    def _row_to_stat(row: sqlite3.Row) -> IntervalStat:
        return IntervalStat(
            interval_degrees=row["interval"],
            total_attempts=row["total_attempts"],
            average_score=row["average_score"],
            last_attempt_at=_from_text(row["last_attempt_at"]),
            struggling=bool(row["struggling"]),
        )

    def get_interval_stat(self, interval: int) -> Optional[IntervalStat]:
        rows = self._query("SELECT * FROM interval_stats WHERE interval = ?", (interval,))
        return self._row_to_stat(rows[0]) if rows else None

    def all_interval_stats(self) -> List[IntervalStat]:
        rows = self._query("SELECT * FROM interval_stats ORDER BY interval")
        return [self._row_to_stat(r) for r in rows]

from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from typing import Any, Iterable

from .runtime import Outcome, PassReport, utc_now
from .settings import settings


_SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  ts TEXT NOT NULL,
  level TEXT NOT NULL,
  service_name TEXT,
  phase TEXT,
  message TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS passes (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  started_at TEXT NOT NULL,
  finished_at TEXT,
  topology_changed INTEGER NOT NULL DEFAULT 0,
  status TEXT NOT NULL -- running|completed|aborted
);

CREATE TABLE IF NOT EXISTS outcomes (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  pass_id INTEGER NOT NULL,
  service_name TEXT NOT NULL,
  status TEXT NOT NULL, -- unchanged|converged|failed
  detail TEXT NOT NULL,
  recorded_at TEXT NOT NULL,
  FOREIGN KEY(pass_id) REFERENCES passes(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
CREATE INDEX IF NOT EXISTS idx_outcomes_pass_id ON outcomes(pass_id);
"""

_initialized: set[str] = set()


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is an existing directory (a bind mount created
    before the file existed, for example), the journal goes inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "journal.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    path = _resolve_db_path()
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    if path not in _initialized:
        conn.executescript(_SCHEMA)
        _initialized.add(path)
    return conn


def log_event(level: str, message: str, service_name: str | None = None, phase: str | None = None) -> None:
    """Print a progress line for the operator and append it to the journal."""
    ts = utc_now()
    level = level.upper()
    prefix = f"[{service_name}] " if service_name else ""
    print(f"{ts} {level:<5} {prefix}{message}", flush=True)
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, service_name, phase, message) VALUES (?, ?, ?, ?, ?)",
            (ts, level, service_name, phase, message),
        )


@dataclass(frozen=True)
class PassRow:
    id: int
    started_at: str
    finished_at: str | None
    topology_changed: int
    status: str


@dataclass(frozen=True)
class OutcomeRow:
    id: int
    pass_id: int
    service_name: str
    status: str
    detail: str
    recorded_at: str


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out


def begin_pass(report: PassReport) -> int:
    with connect() as conn:
        cur = conn.execute(
            "INSERT INTO passes (started_at, topology_changed, status) VALUES (?, ?, ?)",
            (report.started_at, int(report.topology_changed), "running"),
        )
        return int(cur.lastrowid)


def finish_pass(pass_id: int, status: str) -> None:
    with connect() as conn:
        conn.execute("UPDATE passes SET finished_at=?, status=? WHERE id=?", (utc_now(), status, pass_id))


def record_outcome(pass_id: int, outcome: Outcome) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO outcomes (pass_id, service_name, status, detail, recorded_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (pass_id, outcome.service, outcome.status, outcome.detail, utc_now()),
        )


def list_passes(limit: int = 20) -> list[PassRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM passes ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return _rows_to_dataclass(rows, PassRow)


def list_outcomes(pass_id: int) -> list[OutcomeRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM outcomes WHERE pass_id=? ORDER BY id", (pass_id,)).fetchall()
        return _rows_to_dataclass(rows, OutcomeRow)


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]

from __future__ import annotations

import json
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ReplicaState(str, Enum):
    STARTING = "Starting"
    READY = "Ready"
    TERMINATING = "Terminating"
    FAILED = "Failed"


class RolloutStatus(str, Enum):
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"


class WorkloadStatus(str, Enum):
    ACTIVE = "Active"
    STUCK = "Stuck"


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (a bind mount created before the
    file existed), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "ccr.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS config_entries (
              name TEXT PRIMARY KEY,
              entry_class TEXT NOT NULL, -- plain|sensitive
              deleted INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS config_versions (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              name TEXT NOT NULL,
              version INTEGER NOT NULL,
              data TEXT NOT NULL, -- json object
              created_at TEXT NOT NULL,
              UNIQUE(name, version),
              FOREIGN KEY(name) REFERENCES config_entries(name) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS workloads (
              name TEXT PRIMARY KEY,
              spec TEXT NOT NULL, -- json
              status TEXT NOT NULL, -- Active|Stuck
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS replicas (
              seq INTEGER PRIMARY KEY AUTOINCREMENT,
              id TEXT NOT NULL UNIQUE,
              workload TEXT NOT NULL,
              config_versions TEXT NOT NULL, -- json {entry: version}
              state TEXT NOT NULL, -- Starting|Ready|Terminating|Failed
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS rollouts (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              workload TEXT NOT NULL,
              kind TEXT NOT NULL, -- rollout|rollback
              from_versions TEXT NOT NULL,
              to_versions TEXT NOT NULL,
              status TEXT NOT NULL, -- InProgress|Succeeded|Failed|RolledBack
              message TEXT NOT NULL DEFAULT '',
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              workload TEXT,
              entry TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_replicas_workload ON replicas(workload);
            CREATE INDEX IF NOT EXISTS idx_rollouts_workload ON rollouts(workload);
            CREATE UNIQUE INDEX IF NOT EXISTS idx_rollouts_one_in_progress
              ON rollouts(workload) WHERE status = 'InProgress';
            """
        )


def log_event(level: str, message: str, workload: str | None = None, entry: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, workload, entry, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), workload, entry, message),
        )


def latest_events(limit: int = 100, workload: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if workload:
            rows = conn.execute(
                "SELECT * FROM events WHERE workload=? ORDER BY id DESC LIMIT ?", (workload, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


def _dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))


# --- config entries ---


@dataclass(frozen=True)
class ConfigEntryRow:
    name: str
    entry_class: str
    deleted: int
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class ConfigVersionRow:
    name: str
    entry_class: str
    version: int
    data: dict[str, str]
    created_at: str


def get_config_entry(name: str) -> ConfigEntryRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM config_entries WHERE name=?", (name,)).fetchone()
        return ConfigEntryRow(**dict(row)) if row else None


def insert_config_version(name: str, entry_class: str, data: dict[str, str]) -> int:
    """Append a new version for ``name`` and return its number.

    The read of the current maximum and the insert happen inside one
    IMMEDIATE transaction so concurrent writers cannot reuse a number.
    """
    now = utc_now()
    conn = connect()
    try:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute("SELECT * FROM config_entries WHERE name=?", (name,)).fetchone()
        if row is None:
            conn.execute(
                "INSERT INTO config_entries (name, entry_class, deleted, created_at, updated_at) VALUES (?, ?, 0, ?, ?)",
                (name, entry_class, now, now),
            )
        else:
            conn.execute("UPDATE config_entries SET deleted=0, updated_at=? WHERE name=?", (now, name))
        cur = conn.execute("SELECT COALESCE(MAX(version), 0) AS v FROM config_versions WHERE name=?", (name,))
        version = int(cur.fetchone()["v"]) + 1
        conn.execute(
            "INSERT INTO config_versions (name, version, data, created_at) VALUES (?, ?, ?, ?)",
            (name, version, _dumps(data), now),
        )
        conn.commit()
        return version
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def get_config_version(name: str, version: int | None = None) -> ConfigVersionRow | None:
    """Return one version of a live (not deleted) entry, the latest if ``version`` is None."""
    with connect() as conn:
        if version is None:
            row = conn.execute(
                """
                SELECT e.name, e.entry_class, v.version, v.data, v.created_at
                FROM config_versions v JOIN config_entries e ON e.name = v.name
                WHERE e.name=? AND e.deleted=0
                ORDER BY v.version DESC LIMIT 1
                """,
                (name,),
            ).fetchone()
        else:
            row = conn.execute(
                """
                SELECT e.name, e.entry_class, v.version, v.data, v.created_at
                FROM config_versions v JOIN config_entries e ON e.name = v.name
                WHERE e.name=? AND e.deleted=0 AND v.version=?
                """,
                (name, int(version)),
            ).fetchone()
        if not row:
            return None
        d = dict(row)
        d["data"] = json.loads(d["data"])
        return ConfigVersionRow(**d)


def mark_config_deleted(name: str) -> bool:
    with connect() as conn:
        cur = conn.execute(
            "UPDATE config_entries SET deleted=1, updated_at=? WHERE name=? AND deleted=0", (utc_now(), name)
        )
        return cur.rowcount > 0


def list_config_entries() -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute(
            """
            SELECT e.name, e.entry_class, MAX(v.version) AS latest_version, e.updated_at
            FROM config_entries e JOIN config_versions v ON v.name = e.name
            WHERE e.deleted=0
            GROUP BY e.name
            ORDER BY e.name
            """
        ).fetchall()
        return [dict(r) for r in rows]


# --- workloads ---


@dataclass(frozen=True)
class WorkloadRow:
    name: str
    spec: dict[str, Any]
    status: str
    created_at: str
    updated_at: str


def _workload_row(row: sqlite3.Row) -> WorkloadRow:
    d = dict(row)
    d["spec"] = json.loads(d["spec"])
    return WorkloadRow(**d)


def upsert_workload(name: str, spec: dict[str, Any]) -> WorkloadRow:
    now = utc_now()
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO workloads (name, spec, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
              spec=excluded.spec,
              updated_at=excluded.updated_at
            """,
            (name, _dumps(spec), WorkloadStatus.ACTIVE.value, now, now),
        )
        row = conn.execute("SELECT * FROM workloads WHERE name=?", (name,)).fetchone()
        return _workload_row(row)


def get_workload(name: str) -> WorkloadRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM workloads WHERE name=?", (name,)).fetchone()
        return _workload_row(row) if row else None


def list_workloads() -> list[WorkloadRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM workloads ORDER BY name").fetchall()
        return [_workload_row(r) for r in rows]


def set_workload_status(name: str, status: WorkloadStatus) -> None:
    with connect() as conn:
        conn.execute("UPDATE workloads SET status=?, updated_at=? WHERE name=?", (status.value, utc_now(), name))


def delete_workload(name: str) -> bool:
    with connect() as conn:
        cur = conn.execute("DELETE FROM workloads WHERE name=?", (name,))
        return cur.rowcount > 0


# --- replicas ---


@dataclass(frozen=True)
class ReplicaRow:
    seq: int
    id: str
    workload: str
    config_versions: dict[str, int]
    state: str
    created_at: str
    updated_at: str


def _replica_row(row: sqlite3.Row) -> ReplicaRow:
    d = dict(row)
    d["config_versions"] = {k: int(v) for k, v in json.loads(d["config_versions"]).items()}
    return ReplicaRow(**d)


def _rows_to_replicas(rows: Iterable[sqlite3.Row]) -> list[ReplicaRow]:
    return [_replica_row(r) for r in rows]


def insert_replica(replica_id: str, workload: str, config_versions: dict[str, int], state: ReplicaState) -> ReplicaRow:
    now = utc_now()
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO replicas (id, workload, config_versions, state, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (replica_id, workload, _dumps(config_versions), state.value, now, now),
        )
        row = conn.execute("SELECT * FROM replicas WHERE id=?", (replica_id,)).fetchone()
        return _replica_row(row)


def get_replica(replica_id: str) -> ReplicaRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM replicas WHERE id=?", (replica_id,)).fetchone()
        return _replica_row(row) if row else None


def list_replicas(workload: str | None = None, state: ReplicaState | None = None) -> list[ReplicaRow]:
    sql = "SELECT * FROM replicas"
    clauses: list[str] = []
    params: list[Any] = []
    if workload is not None:
        clauses.append("workload=?")
        params.append(workload)
    if state is not None:
        clauses.append("state=?")
        params.append(state.value)
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY seq"
    with connect() as conn:
        return _rows_to_replicas(conn.execute(sql, params).fetchall())


def replica_workloads() -> list[str]:
    with connect() as conn:
        rows = conn.execute("SELECT DISTINCT workload FROM replicas ORDER BY workload").fetchall()
        return [r["workload"] for r in rows]


def set_replica_state(replica_id: str, state: ReplicaState) -> None:
    with connect() as conn:
        conn.execute("UPDATE replicas SET state=?, updated_at=? WHERE id=?", (state.value, utc_now(), replica_id))


def update_replica_versions(replica_id: str, config_versions: dict[str, int]) -> None:
    with connect() as conn:
        conn.execute(
            "UPDATE replicas SET config_versions=?, updated_at=? WHERE id=?",
            (_dumps(config_versions), utc_now(), replica_id),
        )


def delete_replica(replica_id: str) -> None:
    with connect() as conn:
        conn.execute("DELETE FROM replicas WHERE id=?", (replica_id,))


# --- rollout records ---


@dataclass(frozen=True)
class RolloutRecord:
    id: int
    workload: str
    kind: str  # rollout|rollback
    from_versions: dict[str, int]
    to_versions: dict[str, int]
    status: str
    message: str
    created_at: str
    updated_at: str


def _rollout_row(row: sqlite3.Row) -> RolloutRecord:
    d = dict(row)
    d["from_versions"] = {k: int(v) for k, v in json.loads(d["from_versions"]).items()}
    d["to_versions"] = {k: int(v) for k, v in json.loads(d["to_versions"]).items()}
    return RolloutRecord(**d)


def insert_rollout(
    workload: str,
    kind: str,
    from_versions: dict[str, int],
    to_versions: dict[str, int],
    message: str = "",
) -> RolloutRecord:
    """Append an InProgress record.

    Raises sqlite3.IntegrityError if the workload already has one in flight.
    """
    now = utc_now()
    with connect() as conn:
        cur = conn.execute(
            """
            INSERT INTO rollouts (workload, kind, from_versions, to_versions, status, message, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                workload,
                kind,
                _dumps(from_versions),
                _dumps(to_versions),
                RolloutStatus.IN_PROGRESS.value,
                message,
                now,
                now,
            ),
        )
        row = conn.execute("SELECT * FROM rollouts WHERE id=?", (cur.lastrowid,)).fetchone()
        return _rollout_row(row)


def finish_rollout(rollout_id: int, status: RolloutStatus, message: str) -> None:
    with connect() as conn:
        conn.execute(
            "UPDATE rollouts SET status=?, message=?, updated_at=? WHERE id=?",
            (status.value, message, utc_now(), rollout_id),
        )


def get_rollout(rollout_id: int) -> RolloutRecord | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM rollouts WHERE id=?", (rollout_id,)).fetchone()
        return _rollout_row(row) if row else None


def list_rollouts(workload: str | None = None, status: RolloutStatus | None = None) -> list[RolloutRecord]:
    sql = "SELECT * FROM rollouts"
    clauses: list[str] = []
    params: list[Any] = []
    if workload is not None:
        clauses.append("workload=?")
        params.append(workload)
    if status is not None:
        clauses.append("status=?")
        params.append(status.value)
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY id"
    with connect() as conn:
        return [_rollout_row(r) for r in conn.execute(sql, params).fetchall()]


def last_rollout(workload: str, status: RolloutStatus | None = None) -> RolloutRecord | None:
    with connect() as conn:
        if status is None:
            row = conn.execute(
                "SELECT * FROM rollouts WHERE workload=? ORDER BY id DESC LIMIT 1", (workload,)
            ).fetchone()
        else:
            row = conn.execute(
                "SELECT * FROM rollouts WHERE workload=? AND status=? ORDER BY id DESC LIMIT 1",
                (workload, status.value),
            ).fetchone()
        return _rollout_row(row) if row else None


def in_progress_rollout(workload: str) -> RolloutRecord | None:
    return last_rollout(workload, RolloutStatus.IN_PROGRESS)


INTERRUPTED = "Interrupted by reconciler restart"


def fail_interrupted_rollouts() -> int:
    """Mark records left InProgress by a previous process as Failed."""
    with connect() as conn:
        cur = conn.execute(
            "UPDATE rollouts SET status=?, message=?, updated_at=? WHERE status=?",
            (
                RolloutStatus.FAILED.value,
                INTERRUPTED,
                utc_now(),
                RolloutStatus.IN_PROGRESS.value,
            ),
        )
        return cur.rowcount

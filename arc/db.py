from __future__ import annotations

import json
import os
import sqlite3
from typing import Any

from .models import Workload, utc_now
from .settings import settings


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a bind
    mounted file does not exist yet), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "arc.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS workloads (
              id TEXT PRIMARY KEY,
              revision TEXT NOT NULL,
              target_replicas INTEGER NOT NULL,
              min_replicas INTEGER NOT NULL,
              max_replicas INTEGER NOT NULL,
              target_utilization REAL NOT NULL,
              max_surge INTEGER NOT NULL,
              max_unavailable INTEGER NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              kind TEXT NOT NULL,
              workload_id TEXT,
              message TEXT NOT NULL,
              data TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_events_workload ON events(workload_id);
            """
        )


def log_event(
    level: str,
    kind: str,
    message: str,
    workload_id: str | None = None,
    data: dict[str, Any] | None = None,
    ts: str | None = None,
) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, kind, workload_id, message, data) VALUES (?, ?, ?, ?, ?, ?)",
            (ts or utc_now(), level.upper(), kind, workload_id, message, json.dumps(data or {}, default=str)),
        )


def latest_events(limit: int = 100, workload_id: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if workload_id:
            rows = conn.execute(
                "SELECT * FROM events WHERE workload_id=? ORDER BY id DESC LIMIT ?",
                (workload_id, limit),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
    out: list[dict[str, Any]] = []
    for r in rows:
        item = dict(r)
        item["data"] = json.loads(item["data"]) if item.get("data") else {}
        out.append(item)
    return out


def save_workload(w: Workload) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO workloads (id, revision, target_replicas, min_replicas, max_replicas,
                                   target_utilization, max_surge, max_unavailable, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              revision=excluded.revision,
              target_replicas=excluded.target_replicas,
              min_replicas=excluded.min_replicas,
              max_replicas=excluded.max_replicas,
              target_utilization=excluded.target_utilization,
              max_surge=excluded.max_surge,
              max_unavailable=excluded.max_unavailable,
              updated_at=excluded.updated_at
            """,
            (
                w.id,
                w.revision,
                w.target_replicas,
                w.min_replicas,
                w.max_replicas,
                w.target_utilization,
                w.max_surge,
                w.max_unavailable,
                utc_now(),
            ),
        )


def list_workloads() -> list[Workload]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM workloads ORDER BY id").fetchall()
    out: list[Workload] = []
    for r in rows:
        d = dict(r)
        d.pop("updated_at", None)
        out.append(Workload(**d))
    return out


def delete_workload(workload_id: str) -> None:
    with connect() as conn:
        conn.execute("DELETE FROM workloads WHERE id=?", (workload_id,))

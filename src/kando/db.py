"""SQLite connection, schema, and daemon bookkeeping rows."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import Optional

from . import config


def get_connection() -> sqlite3.Connection:
    """Get a database connection (WAL, row factory, busy timeout)."""
    config.ensure_data_dirs()
    conn = sqlite3.connect(str(config.DB_PATH), timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=30000")
    return conn


def init_db() -> None:
    """Initialize the database schema."""
    conn = get_connection()
    try:
        conn.executescript(SCHEMA_SQL)
        conn.commit()
    finally:
        conn.close()


SCHEMA_SQL = """
-- Daemon health, single row
CREATE TABLE IF NOT EXISTS daemon_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    pid INTEGER,
    started_at TEXT,
    last_heartbeat TEXT,
    modules TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL DEFAULT 'stopped',
    poller TEXT NOT NULL DEFAULT '{}'
);

-- One row per scheduled module run
CREATE TABLE IF NOT EXISTS daemon_execution_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    module_name TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    result_summary TEXT NOT NULL DEFAULT '',
    error_message TEXT NOT NULL DEFAULT '',
    duration_ms INTEGER
);

CREATE INDEX IF NOT EXISTS idx_execution_log_module
    ON daemon_execution_log(module_name, started_at);
"""


def now_iso() -> str:
    """Return current UTC time as ISO string."""
    return datetime.now(timezone.utc).isoformat()


def insert_execution(conn: sqlite3.Connection, module_name: str, started_at: str) -> int:
    cur = conn.execute(
        """INSERT INTO daemon_execution_log (module_name, started_at, status)
        VALUES (?, ?, 'running')""",
        (module_name, started_at),
    )
    conn.commit()
    return cur.lastrowid


def finish_execution(
    conn: sqlite3.Connection,
    row_id: int,
    status: str,
    result_summary: str = "",
    error_message: str = "",
    duration_ms: Optional[int] = None,
) -> None:
    conn.execute(
        """UPDATE daemon_execution_log SET
        finished_at=?, status=?, result_summary=?, error_message=?, duration_ms=?
        WHERE id=?""",
        (now_iso(), status, result_summary, error_message, duration_ms, row_id),
    )
    conn.commit()


def recent_executions(
    conn: sqlite3.Connection, module_name: Optional[str] = None, limit: int = 20
) -> list[dict]:
    """Latest module runs, newest first."""
    query = "SELECT * FROM daemon_execution_log"
    params: list = []
    if module_name:
        query += " WHERE module_name = ?"
        params.append(module_name)
    query += " ORDER BY id DESC LIMIT ?"
    params.append(limit)
    return [dict(r) for r in conn.execute(query, params).fetchall()]


def get_daemon_row(conn: sqlite3.Connection) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM daemon_state WHERE id = 1").fetchone()


def upsert_daemon_state(
    conn: sqlite3.Connection,
    pid: int,
    status: str,
    modules_json: str,
    poller_json: str = "{}",
    started: bool = False,
) -> None:
    """Write the daemon row. ``started`` also resets pid and started_at."""
    now = now_iso()
    if started:
        conn.execute(
            """INSERT INTO daemon_state
            (id, pid, started_at, last_heartbeat, modules, status, poller)
            VALUES (1, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                pid = excluded.pid,
                started_at = excluded.started_at,
                last_heartbeat = excluded.last_heartbeat,
                modules = excluded.modules,
                status = excluded.status,
                poller = excluded.poller""",
            (pid, now, now, modules_json, status, poller_json),
        )
    else:
        conn.execute(
            """INSERT INTO daemon_state
            (id, pid, started_at, last_heartbeat, modules, status, poller)
            VALUES (1, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                last_heartbeat = excluded.last_heartbeat,
                modules = excluded.modules,
                status = excluded.status,
                poller = excluded.poller""",
            (pid, now, now, modules_json, status, poller_json),
        )
    conn.commit()

"""
db_local.py
SQLite local database utilities (offline-first).

- connect / init schema / settings key-value
- Every synced table carries syncStatus, lastSyncedAt and syncAttempts
- Deletions are kept as tombstones until the server acknowledged them
"""
from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from ..storage import SqliteTable, create_table_sql
from ..tables import SYNC_STATUS_PENDING, TABLE_SPECS, TableSpec

LOCAL_DB_DEFAULT_PATH = os.path.join(os.path.dirname(__file__), "data", "local.db")


def _local_spec(spec: TableSpec) -> TableSpec:
    cols = dict(spec.columns)
    cols["syncStatus"] = f"TEXT NOT NULL DEFAULT '{SYNC_STATUS_PENDING}'"
    cols["syncAttempts"] = "INTEGER NOT NULL DEFAULT 0"
    return replace(spec, columns=cols)


LOCAL_SPECS: Dict[str, TableSpec] = {name: _local_spec(spec) for name, spec in TABLE_SPECS.items()}


@contextmanager
def connect(db_path: str = LOCAL_DB_DEFAULT_PATH):
    db_dir = os.path.dirname(db_path)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


def fetch_all(conn: sqlite3.Connection, sql: str, params: Tuple[Any, ...] = ()) -> List[Dict[str, Any]]:
    cur = conn.execute(sql, params)
    return [dict(r) for r in cur.fetchall()]


def fetch_one(conn: sqlite3.Connection, sql: str, params: Tuple[Any, ...] = ()) -> Optional[Dict[str, Any]]:
    cur = conn.execute(sql, params)
    row = cur.fetchone()
    return dict(row) if row else None


def init_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    for spec in LOCAL_SPECS.values():
        conn.executescript(create_table_sql(spec))
        conn.execute(
            f'CREATE INDEX IF NOT EXISTS "idx_{spec.name}_sync" ON "{spec.name}"("syncStatus")'
        )
    conn.execute("INSERT OR IGNORE INTO settings (key, value) VALUES ('server_url', '')")
    conn.execute("INSERT OR IGNORE INTO settings (key, value) VALUES ('auth_token', '')")
    conn.execute("INSERT OR IGNORE INTO settings (key, value) VALUES ('tenant_id', '')")
    conn.execute("INSERT OR IGNORE INTO settings (key, value) VALUES ('user_email', '')")
    conn.execute("INSERT OR IGNORE INTO settings (key, value) VALUES ('dark_mode', '1')")


def local_table(conn: sqlite3.Connection, name: str) -> SqliteTable:
    # the caller owns the transaction (connect() commits once at the end)
    return SqliteTable(conn, LOCAL_SPECS[name], autocommit=False)


def get_setting(conn: sqlite3.Connection, key: str, default: str = "") -> str:
    row = fetch_one(conn, "SELECT value FROM settings WHERE key = ?", (key,))
    return (row["value"] if row else default) or default


def set_setting(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        "INSERT INTO settings(key, value) VALUES(?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, value),
    )


def delete_setting(conn: sqlite3.Connection, key: str) -> None:
    conn.execute("DELETE FROM settings WHERE key = ?", (key,))


def add_tombstone(conn: sqlite3.Connection, table: str, record_id: str, deleted_at: str) -> None:
    conn.execute(
        "INSERT OR REPLACE INTO deletions(tableName, recordId, deletedAt) VALUES (?, ?, ?)",
        (table, record_id, deleted_at),
    )


def list_tombstones(conn: sqlite3.Connection, table: str) -> List[str]:
    rows = fetch_all(
        conn,
        "SELECT recordId FROM deletions WHERE tableName = ? ORDER BY deletedAt",
        (table,),
    )
    return [r["recordId"] for r in rows]


def clear_tombstones(conn: sqlite3.Connection, table: str, record_ids: List[str]) -> None:
    conn.executemany(
        "DELETE FROM deletions WHERE tableName = ? AND recordId = ?",
        [(table, rid) for rid in record_ids],
    )


SCHEMA_SQL = r"""
CREATE TABLE IF NOT EXISTS settings (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);

-- local deletions waiting to be pushed
CREATE TABLE IF NOT EXISTS deletions (
  tableName TEXT NOT NULL,
  recordId TEXT NOT NULL,
  deletedAt TEXT NOT NULL,
  PRIMARY KEY (tableName, recordId)
);
"""

"""
db_server.py
SQLite access for the FastAPI server.
"""
from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple

from ..storage import SqliteTable, create_table_sql
from ..tables import TABLE_SPECS

SERVER_DB_DEFAULT_PATH = os.getenv(
    "STORE_SERVER_DB",
    os.path.join(os.path.dirname(__file__), "data", "server.db"),
)

TENANTS_SQL = r"""
CREATE TABLE IF NOT EXISTS tenants (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active','trial','suspended','expired')),
  trialEndsAt TEXT,
  createdAt TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_users_email ON users(email);
"""


@contextmanager
def connect(db_path: str = SERVER_DB_DEFAULT_PATH):
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


def schema_sql() -> str:
    parts = [create_table_sql(spec) for spec in TABLE_SPECS.values()]
    parts.append(TENANTS_SQL)
    return "\n".join(parts)


def init_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(schema_sql())


def fetch_one(conn: sqlite3.Connection, sql: str, params: Tuple[Any, ...] = ()) -> Optional[Dict[str, Any]]:
    cur = conn.execute(sql, params)
    row = cur.fetchone()
    return dict(row) if row else None


def fetch_all(conn: sqlite3.Connection, sql: str, params: Tuple[Any, ...] = ()) -> List[Dict[str, Any]]:
    cur = conn.execute(sql, params)
    return [dict(r) for r in cur.fetchall()]


def sync_tables(conn: sqlite3.Connection) -> Dict[str, SqliteTable]:
    """Accessor mapping handed to the reconciliation engine."""
    return {name: SqliteTable(conn, spec, autocommit=True) for name, spec in TABLE_SPECS.items()}

"""
storage.py
SQLite table accessor used on both sides of the sync.

- One accessor per logical table: find_many / get / upsert / update / delete / count
- Column names are checked against the table spec before they reach SQL
- Canonical UTC ISO timestamps (fixed width, so text order == time order)
"""
from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .tables import TableSpec

_OPERATORS = {"gt": ">", "gte": ">=", "lt": "<", "lte": "<=", "ne": "!="}


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid timestamp: {value!r}")
    dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_iso(value: str) -> str:
    return parse_iso(value).isoformat(timespec="microseconds")


def create_table_sql(spec: TableSpec) -> str:
    cols = ",\n  ".join(f'"{name}" {sql_type}' for name, sql_type in spec.columns.items())
    sql = f'CREATE TABLE IF NOT EXISTS "{spec.name}" (\n  {cols}\n);\n'
    sql += (
        f'CREATE INDEX IF NOT EXISTS "idx_{spec.name}_tenant_wm" '
        f'ON "{spec.name}"("tenantId", "{spec.watermark_field}");\n'
    )
    return sql


class SqliteTable:
    """
    Key-value-per-table view of one SQLite table.

    autocommit=True commits (or rolls back) every write on its own; the server
    uses it so each synced row succeeds or fails independently. With
    autocommit=False the caller owns the transaction.
    """

    def __init__(self, conn: sqlite3.Connection, spec: TableSpec, autocommit: bool = True):
        self.conn = conn
        self.spec = spec
        self.autocommit = autocommit

    @property
    def name(self) -> str:
        return self.spec.name

    def _col(self, column: str) -> str:
        if not self.spec.has_column(column):
            raise ValueError(f"Unknown column '{column}' for table {self.spec.name}")
        return f'"{column}"'

    def _where(self, where: Optional[Dict[str, Any]]) -> Tuple[str, List[Any]]:
        if not where:
            return "", []
        clauses: List[str] = []
        params: List[Any] = []
        for column, cond in where.items():
            col = self._col(column)
            if cond is None:
                clauses.append(f"{col} IS NULL")
            elif isinstance(cond, dict):
                for op, value in cond.items():
                    if op == "in":
                        values = list(value)
                        if not values:
                            clauses.append("0")
                            continue
                        clauses.append(f"{col} IN ({', '.join(['?'] * len(values))})")
                        params.extend(values)
                    elif op in _OPERATORS:
                        clauses.append(f"{col} {_OPERATORS[op]} ?")
                        params.append(value)
                    else:
                        raise ValueError(f"Unsupported filter operator '{op}'")
            else:
                clauses.append(f"{col} = ?")
                params.append(cond)
        return " WHERE " + " AND ".join(clauses), params

    def _write(self, sql: str, params: Iterable[Any]) -> sqlite3.Cursor:
        if self.autocommit:
            with self.conn:
                return self.conn.execute(sql, tuple(params))
        return self.conn.execute(sql, tuple(params))

    def find_many(self, where: Optional[Dict[str, Any]] = None, order_by: Optional[str] = None) -> List[Dict[str, Any]]:
        clause, params = self._where(where)
        sql = f'SELECT * FROM "{self.name}"{clause}'
        if order_by:
            sql += f" ORDER BY {self._col(order_by)}"
        cur = self.conn.execute(sql, params)
        return [dict(r) for r in cur.fetchall()]

    def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        cur = self.conn.execute(f'SELECT * FROM "{self.name}" WHERE "id" = ?', (record_id,))
        row = cur.fetchone()
        return dict(row) if row else None

    def count(self, where: Optional[Dict[str, Any]] = None) -> int:
        clause, params = self._where(where)
        cur = self.conn.execute(f'SELECT COUNT(*) FROM "{self.name}"{clause}', params)
        return int(cur.fetchone()[0])

    def upsert(self, record_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Insert, or overwrite the provided fields of an existing row."""
        if not record_id:
            raise ValueError(f"Missing id for table {self.name}")
        row = dict(data)
        row["id"] = record_id
        cols = list(row.keys())
        for c in cols:
            self._col(c)

        # existing row: only the provided columns change
        if self.get(record_id) is not None:
            self.update(record_id, {c: row[c] for c in cols if c != "id"})
            return row

        col_list = ", ".join(self._col(c) for c in cols)
        placeholders = ", ".join(["?"] * len(cols))
        self._write(f'INSERT INTO "{self.name}" ({col_list}) VALUES ({placeholders})', (row[c] for c in cols))
        return row

    def update(self, record_id: str, fields: Dict[str, Any]) -> int:
        if not fields:
            return 0
        set_clause = ", ".join(f"{self._col(c)} = ?" for c in fields)
        params = list(fields.values()) + [record_id]
        cur = self._write(f'UPDATE "{self.name}" SET {set_clause} WHERE "id" = ?', params)
        return cur.rowcount

    def delete(self, record_id: str, where: Optional[Dict[str, Any]] = None) -> bool:
        clause, params = self._where(where)
        clause = f'{clause} AND "id" = ?' if clause else ' WHERE "id" = ?'
        cur = self._write(f'DELETE FROM "{self.name}"{clause}', params + [record_id])
        return cur.rowcount > 0

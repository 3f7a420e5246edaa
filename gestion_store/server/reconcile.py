"""
reconcile.py
Server side of the sync: apply one request's change-sets and compute pulls.

Per table, in order:
1) deletions (tenant-scoped, best effort)
2) pushes (strip client fields, stamp tenant, upsert by id)
3) pull (rows changed after the client's watermark, same for every device)

A bad row never fails its table, and a bad table never fails the request.
Conflict policy is last-write-wins: whichever upsert commits last is the row.
"""
from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..storage import SqliteTable, normalize_iso, now_iso
from ..tables import CLIENT_ONLY_FIELDS, SYNC_STATUS_SYNCED, TableSpec

logger = logging.getLogger(__name__)


class RecordRejected(ValueError):
    """A pushed row that cannot be applied (tenant, shape or required fields)."""


# what a single bad row or id can raise; anything else is a server bug
ROW_ERRORS = (sqlite3.Error, ValueError, TypeError, OverflowError)


@dataclass(frozen=True)
class SyncScope:
    """Already-validated data scope of the caller; privilege is decided at the boundary."""

    tenant_id: Optional[str] = None
    is_global: bool = False

    @classmethod
    def tenant(cls, tenant_id: str) -> "SyncScope":
        if not tenant_id:
            raise ValueError("tenant scope requires a tenant id")
        return cls(tenant_id=tenant_id, is_global=False)

    @classmethod
    def global_(cls) -> "SyncScope":
        return cls(tenant_id=None, is_global=True)

    def filter(self) -> Dict[str, Any]:
        if self.is_global:
            return {}
        return {"tenantId": self.tenant_id}


def _empty_result() -> Dict[str, Any]:
    return {"pushed": 0, "deleted": 0, "pulled": [], "failed": [], "failedDeletions": []}


def apply_deletions(table: SqliteTable, ids: Iterable[Any], scope: SyncScope, result: Dict[str, Any]) -> None:
    for record_id in ids:
        try:
            if not record_id or not isinstance(record_id, str):
                raise RecordRejected("deletion id is not a string")
            if table.delete(record_id, where=scope.filter()):
                result["deleted"] += 1
            else:
                logger.info("Sync delete %s/%s: not found in scope", table.name, record_id)
                result["failedDeletions"].append(record_id)
        except ROW_ERRORS as exc:
            logger.warning("Sync delete error for %s/%s: %s", table.name, record_id, exc)
            result["failedDeletions"].append(record_id)


def prepare_record(spec: TableSpec, record: Any, scope: SyncScope) -> Dict[str, Any]:
    """Server-side shape of a pushed row (without status stamps)."""
    if not isinstance(record, dict):
        raise RecordRejected("record is not an object")
    record_id = record.get("id")
    if not record_id or not isinstance(record_id, str):
        raise RecordRejected("missing id")

    data: Dict[str, Any] = {}
    for key, value in record.items():
        if key in CLIENT_ONLY_FIELDS:
            continue
        if key in spec.private_fields or key in spec.server_fields:
            logger.debug("Sync %s/%s: ignoring server-managed field '%s'", spec.name, record_id, key)
            continue
        if not spec.writable_by_sync(key):
            logger.debug("Sync %s: dropping unknown field '%s'", spec.name, key)
            continue
        data[key] = value

    if not scope.is_global:
        owner = data.get("tenantId")
        if owner is None:
            data["tenantId"] = scope.tenant_id
        elif owner != scope.tenant_id:
            raise RecordRejected("record belongs to another tenant")

    for ts_field in ("createdAt", "updatedAt"):
        if data.get(ts_field) and spec.has_column(ts_field):
            data[ts_field] = normalize_iso(data[ts_field])
    return data


def push_record(table: SqliteTable, record: Any, scope: SyncScope, now: str) -> None:
    spec = table.spec
    data = prepare_record(spec, record, scope)
    record_id = data["id"]

    existing = table.get(record_id)
    if existing is not None:
        if not scope.is_global and existing.get("tenantId") != scope.tenant_id:
            raise RecordRejected("id already owned by another tenant")
        if "tenantId" in data and data["tenantId"] != existing.get("tenantId"):
            # tenant ownership is fixed at creation
            data.pop("tenantId")
        if spec.append_only:
            # history rows have no update path; a replay is a no-op
            return
    else:
        data.setdefault("createdAt", now)
        missing = [f for f in spec.required if data.get(f) is None]
        if missing:
            raise RecordRejected(f"missing required fields: {', '.join(missing)}")

    if spec.watermark_field == "updatedAt":
        data["updatedAt"] = now
    data["syncStatus"] = SYNC_STATUS_SYNCED
    data["lastSyncedAt"] = now
    table.upsert(record_id, data)


def push_records(
    table: SqliteTable,
    records: Iterable[Any],
    scope: SyncScope,
    now: Optional[str],
    result: Dict[str, Any],
) -> None:
    # stamped per row unless pinned, so concurrent requests interleave in commit order
    for record in records:
        record_id = record.get("id") if isinstance(record, dict) else None
        try:
            push_record(table, record, scope, now or now_iso())
            result["pushed"] += 1
        except ROW_ERRORS as exc:
            logger.warning("Sync error for %s/%s: %s", table.name, record_id, exc)
            if record_id:
                result["failed"].append(record_id)


def pull_records(table: SqliteTable, scope: SyncScope, watermark: Optional[str]) -> List[Dict[str, Any]]:
    where = scope.filter()
    if watermark:
        where[table.spec.watermark_field] = {"gt": watermark}
    rows = table.find_many(where, order_by=table.spec.watermark_field)
    return [table.spec.public(r) for r in rows]


def reconcile_table(table: SqliteTable, change: Any, scope: SyncScope, now: Optional[str]) -> Dict[str, Any]:
    result = _empty_result()
    try:
        apply_deletions(table, change.deletions or [], scope, result)
        push_records(table, change.records or [], scope, now, result)
        result["pulled"] = pull_records(table, scope, change.lastSyncedAt)
    except ROW_ERRORS as exc:
        logger.error("Sync table %s aborted: %s", table.name, exc)
        result["error"] = str(exc)
    return result


def reconcile(
    changes: Iterable[Any],
    scope: SyncScope,
    tables: Mapping[str, SqliteTable],
    now: Optional[str] = None,
) -> Dict[str, Dict[str, Any]]:
    """
    Apply every change-set and return {table: {pushed, deleted, pulled, failed, failedDeletions}}.

    `changes` items expose .table, .records, .deletions and .lastSyncedAt
    (see schemas.ChangeSet). Unknown tables are skipped.
    """
    results: Dict[str, Dict[str, Any]] = {}
    for change in changes:
        table = tables.get(change.table)
        if table is None:
            logger.debug("Sync: skipping unknown table '%s'", change.table)
            continue
        result = reconcile_table(table, change, scope, now)
        if change.table in results:
            # same table twice in one request: merge counts, keep the latest pull
            prev = results[change.table]
            result["pushed"] += prev["pushed"]
            result["deleted"] += prev["deleted"]
            result["failed"] = prev["failed"] + result["failed"]
            result["failedDeletions"] = prev["failedDeletions"] + result["failedDeletions"]
        results[change.table] = result
        logger.info(
            "Sync %s: pushed=%d deleted=%d pulled=%d failed=%d",
            change.table, result["pushed"], result["deleted"], len(result["pulled"]), len(result["failed"]),
        )
    return results

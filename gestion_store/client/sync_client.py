"""
sync_client.py
Client side of the sync: one POST /sync per cycle, push and pull together.

Cycle:
1) build one change-set per table (pending rows, tombstones, watermark)
2) POST /sync
3) mark acknowledged rows synced, apply pulled rows, clear sent tombstones
4) advance each table's watermark to the server time of the request

Conflict rule: last write wins. Pulled rows overwrite local ones, no field merge.
Steps 3-4 run in one local transaction: a failed cycle leaves nothing behind.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from typing import Any, Callable, Dict, List, Optional

import requests

from ..storage import now_iso
from ..tables import (
    SYNC_STATUS_FAILED,
    SYNC_STATUS_PENDING,
    SYNC_STATUS_SYNCED,
    SYNC_TABLES,
    watermark_key,
)
from .db_local import (
    LOCAL_DB_DEFAULT_PATH,
    clear_tombstones,
    connect,
    get_setting,
    list_tombstones,
    local_table,
    set_setting,
)
from .services import local_store_is_empty

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
HEALTH_TIMEOUT = 5
MAX_SYNC_ATTEMPTS = 5

ERROR_NOT_CONFIGURED = "Serveur non configuré"
ERROR_OFFLINE = "Hors ligne"
ERROR_IN_FLIGHT = "Synchronisation déjà en cours"
ERROR_BAD_RESPONSE = "Réponse de synchronisation invalide"


class SyncError(Exception):
    pass


def build_changes(conn, force: bool = False) -> List[Dict[str, Any]]:
    """One change-set per table, even when empty, so the pull always runs."""
    changes: List[Dict[str, Any]] = []
    for name in SYNC_TABLES:
        table = local_table(conn, name)
        change: Dict[str, Any] = {
            "table": name,
            "records": table.find_many({"syncStatus": SYNC_STATUS_PENDING}, order_by="createdAt"),
            "deletions": list_tombstones(conn, name),
        }
        if not force:
            last_sync = get_setting(conn, watermark_key(name))
            if last_sync:
                change["lastSyncedAt"] = last_sync
        changes.append(change)
    return changes


def post_changes(
    session,
    server_url: str,
    token: str,
    changes: List[Dict[str, Any]],
    timeout: float = DEFAULT_TIMEOUT,
) -> Dict[str, Any]:
    url = server_url.rstrip("/") + "/sync"
    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    resp = session.post(url, json={"changes": changes}, headers=headers, timeout=timeout)
    if resp.status_code >= 400:
        raise SyncError(f"HTTP {resp.status_code}")
    data = resp.json()
    if not isinstance(data, dict) or not data.get("success"):
        error = data.get("error") if isinstance(data, dict) else None
        raise SyncError(error or ERROR_BAD_RESPONSE)
    return data


def _check_result(name: str, result: Any) -> None:
    """Reject a per-table result the apply step cannot read; the whole cycle then rolls back."""
    if not isinstance(result, dict):
        raise SyncError(f"{ERROR_BAD_RESPONSE} ({name})")
    pulled = result.get("pulled") or []
    failed = result.get("failed") or []
    if not isinstance(pulled, list) or not all(isinstance(r, dict) for r in pulled):
        raise SyncError(f"{ERROR_BAD_RESPONSE} ({name})")
    if not isinstance(failed, list) or not all(isinstance(r, str) for r in failed):
        raise SyncError(f"{ERROR_BAD_RESPONSE} ({name})")


def apply_results(
    conn,
    changes: List[Dict[str, Any]],
    data: Dict[str, Any],
    now: Optional[str] = None,
) -> Dict[str, Dict[str, int]]:
    now = now or now_iso()
    watermark = data.get("serverTime") or now
    results = data.get("results") or {}
    if not isinstance(results, dict):
        raise SyncError(ERROR_BAD_RESPONSE)
    summary: Dict[str, Dict[str, int]] = {}

    for change in changes:
        name = change["table"]
        result = results.get(name)
        if not result:
            continue
        _check_result(name, result)
        if result.get("error"):
            # table aborted server-side: keep rows pending and the old watermark
            logger.warning("Sync %s aborted by server: %s", name, result["error"])
            continue
        table = local_table(conn, name)
        sent = {r["id"]: r for r in change["records"]}
        failed = set(result.get("failed") or [])

        # pending rows re-read after the round trip
        for record in table.find_many({"syncStatus": SYNC_STATUS_PENDING}):
            rid = record["id"]
            if rid not in sent:
                # written during the round trip, goes out next cycle
                continue
            if rid in failed:
                attempts = int(record.get("syncAttempts") or 0) + 1
                status = SYNC_STATUS_FAILED if attempts >= MAX_SYNC_ATTEMPTS else SYNC_STATUS_PENDING
                table.update(rid, {"syncAttempts": attempts, "syncStatus": status})
                if status == SYNC_STATUS_FAILED:
                    logger.warning("Sync %s/%s rejected %d times, marked failed", name, rid, attempts)
                continue
            if record.get("updatedAt") != sent[rid].get("updatedAt"):
                continue
            table.update(rid, {"syncStatus": SYNC_STATUS_SYNCED, "lastSyncedAt": now, "syncAttempts": 0})

        pulled = result.get("pulled") or []
        for remote in pulled:
            row = {k: v for k, v in remote.items() if table.spec.has_column(k)}
            if not row.get("id"):
                continue
            row["syncStatus"] = SYNC_STATUS_SYNCED
            row["syncAttempts"] = 0
            table.upsert(row["id"], row)

        if change.get("deletions"):
            clear_tombstones(conn, name, change["deletions"])
        set_setting(conn, watermark_key(name), watermark)

        summary[name] = {
            "pushed": int(result.get("pushed") or 0),
            "deleted": int(result.get("deleted") or 0),
            "pulled": len(pulled),
            "failed": len(failed),
        }
    return summary


def pending_counts(conn) -> Dict[str, int]:
    return {name: local_table(conn, name).count({"syncStatus": SYNC_STATUS_PENDING}) for name in SYNC_TABLES}


def failed_records(conn) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for name in SYNC_TABLES:
        for row in local_table(conn, name).find_many({"syncStatus": SYNC_STATUS_FAILED}):
            out.append({"table": name, **row})
    return out


def retry_failed(conn, table: str, record_id: str) -> bool:
    """Put a failed row back in the queue with a fresh attempt budget."""
    updated = local_table(conn, table).update(
        record_id, {"syncStatus": SYNC_STATUS_PENDING, "syncAttempts": 0}
    )
    return updated > 0


class SyncClient:
    """
    Owns the sync cycle for one local database.

    Only one cycle runs at a time: a call made while another is in flight
    returns immediately with ERROR_IN_FLIGHT.
    """

    def __init__(
        self,
        db_path: str = LOCAL_DB_DEFAULT_PATH,
        session=None,
        timeout: float = DEFAULT_TIMEOUT,
        online_check: Optional[Callable[[], bool]] = None,
    ):
        self.db_path = db_path
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout
        self._online_check = online_check
        self._lock = threading.Lock()
        self.last_result: Optional[Dict[str, Any]] = None

    def server_url(self) -> str:
        with connect(self.db_path) as conn:
            return get_setting(conn, "server_url")

    def is_configured(self) -> bool:
        return bool(self.server_url())

    def is_online(self) -> bool:
        if self._online_check is not None:
            return bool(self._online_check())
        server_url = self.server_url()
        if not server_url:
            return False
        try:
            resp = self.session.get(server_url.rstrip("/") + "/health", timeout=HEALTH_TIMEOUT)
            return resp.status_code < 500
        except requests.RequestException:
            return False

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    def sync_all(self, force: bool = False) -> Dict[str, Any]:
        """Run one full cycle; force=True ignores watermarks (full pull)."""
        with connect(self.db_path) as conn:
            server_url = get_setting(conn, "server_url")
            token = get_setting(conn, "auth_token")
        if not server_url:
            return self._done({"success": False, "error": ERROR_NOT_CONFIGURED})
        if not self.is_online():
            return self._done({"success": False, "error": ERROR_OFFLINE})
        if not self._lock.acquire(blocking=False):
            return {"success": False, "error": ERROR_IN_FLIGHT}

        try:
            with connect(self.db_path) as conn:
                changes = build_changes(conn, force=force)
                data = post_changes(self.session, server_url, token, changes, timeout=self.timeout)
                summary = apply_results(conn, changes, data)
            logger.info(
                "Sync done: pushed=%d pulled=%d",
                sum(s["pushed"] for s in summary.values()),
                sum(s["pulled"] for s in summary.values()),
            )
            return self._done({"success": True, "results": summary, "serverTime": data.get("serverTime")})
        except (requests.RequestException, SyncError, ValueError, TypeError, sqlite3.Error) as exc:
            logger.warning("Sync failed: %s", exc)
            return self._done({"success": False, "error": str(exc)})
        finally:
            self._lock.release()

    def bootstrap_if_empty(self) -> Optional[Dict[str, Any]]:
        """Fresh device: pull the tenant's full dataset once."""
        with connect(self.db_path) as conn:
            empty = local_store_is_empty(conn)
        if not empty:
            return None
        logger.info("Local store empty, running full resync")
        return self.sync_all(force=True)

    def pending_count(self) -> int:
        with connect(self.db_path) as conn:
            return sum(pending_counts(conn).values())

    def _done(self, result: Dict[str, Any]) -> Dict[str, Any]:
        self.last_result = result
        return result

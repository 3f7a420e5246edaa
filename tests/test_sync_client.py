"""Tests for the client sync cycle (change-set builder + apply engine)."""
from __future__ import annotations

from unittest.mock import MagicMock

import requests

from gestion_store.client.db_local import connect, get_setting, init_schema, list_tombstones, local_table, set_setting
from gestion_store.client.services import add_product, delete_record, get_record, update_record
from gestion_store.client.sync_client import (
    ERROR_IN_FLIGHT,
    ERROR_NOT_CONFIGURED,
    ERROR_OFFLINE,
    MAX_SYNC_ATTEMPTS,
    SyncClient,
    build_changes,
    failed_records,
    pending_counts,
    retry_failed,
)
from gestion_store.tables import SYNC_TABLES, watermark_key

SERVER_TIME = "2024-06-01T08:00:00.000000+00:00"


def configure(db_path: str, server_url: str = "http://testserver", token: str = "jwt", tenant: str = "tenant-a"):
    with connect(db_path) as conn:
        set_setting(conn, "server_url", server_url)
        set_setting(conn, "auth_token", token)
        set_setting(conn, "tenant_id", tenant)


def response(status: int = 200, payload=None):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload
    return resp


def ack(results: dict, server_time: str = SERVER_TIME) -> dict:
    return {"success": True, "serverTime": server_time, "results": results}


def table_result(pushed=0, deleted=0, pulled=None, failed=None, **extra) -> dict:
    out = {"pushed": pushed, "deleted": deleted, "pulled": pulled or [], "failed": failed or [], "failedDeletions": []}
    out.update(extra)
    return out


def sent_change(session, table: str) -> dict:
    changes = session.post.call_args.kwargs["json"]["changes"]
    return next(c for c in changes if c["table"] == table)


def new_product(db_path: str, name: str = "Riz 5kg") -> str:
    with connect(db_path) as conn:
        return add_product(conn, name, 6500, 5200, 10)["id"]


def test_not_configured(local_db):
    session = MagicMock()
    client = SyncClient(local_db, session=session, online_check=lambda: True)

    result = client.sync_all()

    assert result == {"success": False, "error": ERROR_NOT_CONFIGURED}
    assert client.last_result == result
    session.post.assert_not_called()


def test_offline_leaves_everything_pending(local_db):
    configure(local_db)
    pid = new_product(local_db)
    session = MagicMock()
    client = SyncClient(local_db, session=session, online_check=lambda: False)

    result = client.sync_all()

    assert result["error"] == ERROR_OFFLINE
    session.post.assert_not_called()
    with connect(local_db) as conn:
        assert get_record(conn, "products", pid)["syncStatus"] == "pending"


def test_health_check_decides_online(local_db):
    configure(local_db)
    session = MagicMock()
    session.get.return_value = response(200)
    client = SyncClient(local_db, session=session)
    assert client.is_online() is True
    session.get.assert_called_once_with("http://testserver/health", timeout=5)

    session.get.side_effect = requests.ConnectionError("refused")
    assert client.is_online() is False


def test_http_error_does_not_advance_watermark(local_db):
    configure(local_db)
    pid = new_product(local_db)
    session = MagicMock()
    session.post.return_value = response(500)
    client = SyncClient(local_db, session=session, online_check=lambda: True)

    result = client.sync_all()

    assert result == {"success": False, "error": "HTTP 500"}
    with connect(local_db) as conn:
        assert get_setting(conn, watermark_key("products")) == ""
        assert get_record(conn, "products", pid)["syncStatus"] == "pending"


def test_transport_exception_is_reported(local_db):
    configure(local_db)
    session = MagicMock()
    session.post.side_effect = requests.ConnectionError("connection reset")
    client = SyncClient(local_db, session=session, online_check=lambda: True)

    result = client.sync_all()

    assert result["success"] is False
    assert "connection reset" in result["error"]
    assert not client.in_flight


def test_server_error_payload_is_reported(local_db):
    configure(local_db)
    session = MagicMock()
    session.post.return_value = response(200, {"success": False, "error": "Requête de synchronisation invalide"})
    client = SyncClient(local_db, session=session, online_check=lambda: True)

    assert client.sync_all()["error"] == "Requête de synchronisation invalide"


def test_change_sets_cover_every_table(local_db):
    configure(local_db)
    pid = new_product(local_db)
    with connect(local_db) as conn:
        set_setting(conn, watermark_key("products"), SERVER_TIME)
        changes = build_changes(conn)
        forced = build_changes(conn, force=True)

    assert [c["table"] for c in changes] == list(SYNC_TABLES)
    products = next(c for c in changes if c["table"] == "products")
    assert [r["id"] for r in products["records"]] == [pid]
    assert products["lastSyncedAt"] == SERVER_TIME
    assert products["deletions"] == []
    assert "lastSyncedAt" not in next(c for c in changes if c["table"] == "sales")
    assert all("lastSyncedAt" not in c for c in forced)


def test_successful_cycle(local_db):
    configure(local_db)
    pid = new_product(local_db)
    remote = {
        "id": "remote-1", "tenantId": "tenant-a", "name": "Huile 1L", "sellPrice": 1800,
        "createdAt": SERVER_TIME, "updatedAt": SERVER_TIME, "syncStatus": "synced", "lastSyncedAt": SERVER_TIME,
    }
    session = MagicMock()
    session.post.return_value = response(200, ack({"products": table_result(pushed=1, pulled=[remote])}))
    client = SyncClient(local_db, session=session, online_check=lambda: True)

    result = client.sync_all()

    assert result["success"] is True
    assert result["results"]["products"] == {"pushed": 1, "deleted": 0, "pulled": 1, "failed": 0}
    kwargs = session.post.call_args.kwargs
    assert session.post.call_args.args[0] == "http://testserver/sync"
    assert kwargs["headers"]["Authorization"] == "Bearer jwt"
    assert kwargs["timeout"] == 30
    with connect(local_db) as conn:
        mine = get_record(conn, "products", pid)
        assert mine["syncStatus"] == "synced"
        assert mine["lastSyncedAt"]
        assert get_record(conn, "products", "remote-1")["name"] == "Huile 1L"
        assert get_setting(conn, watermark_key("products")) == SERVER_TIME
        # tables missing from the response keep their watermark
        assert get_setting(conn, watermark_key("sales")) == ""


def test_pulled_row_overwrites_local_state(local_db):
    configure(local_db)
    pid = new_product(local_db, name="Local")
    with connect(local_db) as conn:
        local = get_record(conn, "products", pid)
    remote = dict(local, name="Serveur", updatedAt=SERVER_TIME, syncStatus="synced", unknownColumn=1)
    remote.pop("syncAttempts")
    session = MagicMock()
    session.post.return_value = response(200, ack({"products": table_result(pushed=1, pulled=[remote])}))

    SyncClient(local_db, session=session, online_check=lambda: True).sync_all()

    with connect(local_db) as conn:
        row = get_record(conn, "products", pid)
    assert row["name"] == "Serveur"
    assert row["syncStatus"] == "synced"


def test_aborted_table_keeps_rows_pending(local_db):
    configure(local_db)
    pid = new_product(local_db)
    session = MagicMock()
    session.post.return_value = response(
        200, ack({"products": table_result(error="database is locked"), "sales": table_result()})
    )

    result = SyncClient(local_db, session=session, online_check=lambda: True).sync_all()

    assert result["success"] is True
    assert "products" not in result["results"]
    with connect(local_db) as conn:
        assert get_record(conn, "products", pid)["syncStatus"] == "pending"
        assert get_setting(conn, watermark_key("products")) == ""
        assert get_setting(conn, watermark_key("sales")) == SERVER_TIME


def test_write_during_round_trip_stays_pending(local_db):
    configure(local_db)
    pid = new_product(local_db)

    def edit_then_ack(*args, **kwargs):
        with connect(local_db) as other:
            update_record(other, "products", pid, {"name": "Modifié pendant l'envoi"})
        return response(200, ack({"products": table_result(pushed=1)}))

    session = MagicMock()
    session.post.side_effect = edit_then_ack
    SyncClient(local_db, session=session, online_check=lambda: True).sync_all()

    with connect(local_db) as conn:
        row = get_record(conn, "products", pid)
    assert row["syncStatus"] == "pending"
    assert row["name"] == "Modifié pendant l'envoi"


def test_rejected_row_becomes_failed_after_bounded_retries(local_db):
    configure(local_db)
    pid = new_product(local_db)
    session = MagicMock()
    session.post.return_value = response(200, ack({"products": table_result(failed=[pid])}))
    client = SyncClient(local_db, session=session, online_check=lambda: True)

    for attempt in range(1, MAX_SYNC_ATTEMPTS):
        client.sync_all()
        with connect(local_db) as conn:
            row = get_record(conn, "products", pid)
        assert row["syncStatus"] == "pending"
        assert row["syncAttempts"] == attempt

    client.sync_all()
    with connect(local_db) as conn:
        assert get_record(conn, "products", pid)["syncStatus"] == "failed"
        assert [r["id"] for r in failed_records(conn)] == [pid]
        assert pending_counts(conn)["products"] == 0

    client.sync_all()
    assert sent_change(session, "products")["records"] == []

    with connect(local_db) as conn:
        assert retry_failed(conn, "products", pid) is True
    with connect(local_db) as conn:
        row = get_record(conn, "products", pid)
    assert row["syncStatus"] == "pending"
    assert row["syncAttempts"] == 0


def test_tombstones_are_pushed_then_cleared(local_db):
    configure(local_db)
    synced_id = new_product(local_db, name="Déjà envoyé")
    local_only = new_product(local_db, name="Jamais envoyé")
    with connect(local_db) as conn:
        local_table(conn, "products").update(synced_id, {"syncStatus": "synced", "lastSyncedAt": SERVER_TIME})
        assert delete_record(conn, "products", synced_id) is True
        assert delete_record(conn, "products", local_only) is True
        assert delete_record(conn, "products", "missing") is False
        assert list_tombstones(conn, "products") == [synced_id]

    session = MagicMock()
    session.post.return_value = response(200, ack({"products": table_result(deleted=1)}))
    SyncClient(local_db, session=session, online_check=lambda: True).sync_all()

    assert sent_change(session, "products")["deletions"] == [synced_id]
    with connect(local_db) as conn:
        assert list_tombstones(conn, "products") == []


def test_failed_cycle_keeps_tombstones(local_db):
    configure(local_db)
    pid = new_product(local_db)
    with connect(local_db) as conn:
        local_table(conn, "products").update(pid, {"lastSyncedAt": SERVER_TIME})
        delete_record(conn, "products", pid)

    session = MagicMock()
    session.post.return_value = response(503)
    SyncClient(local_db, session=session, online_check=lambda: True).sync_all()

    with connect(local_db) as conn:
        assert list_tombstones(conn, "products") == [pid]


def test_second_cycle_is_refused_while_one_is_in_flight(local_db):
    configure(local_db)
    nested = []
    session = MagicMock()
    client = SyncClient(local_db, session=session, online_check=lambda: True)

    def slow_post(*args, **kwargs):
        nested.append((client.in_flight, client.sync_all()))
        return response(200, ack({}))

    session.post.side_effect = slow_post
    result = client.sync_all()

    assert result["success"] is True
    assert nested == [(True, {"success": False, "error": ERROR_IN_FLIGHT})]
    assert session.post.call_count == 1
    assert not client.in_flight


def test_end_to_end_with_server(api, register, local_db, tmp_path):
    # another device seeds three products
    token, tenant_id = register()
    seed = [
        {"id": f"p{i}", "name": f"Produit {i}", "sellPrice": 100 * i, "createdAt": SERVER_TIME, "updatedAt": SERVER_TIME}
        for i in (1, 2, 3)
    ]
    resp = api.post(
        "/sync",
        json={"changes": [{"table": "products", "records": seed}]},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert resp.json()["results"]["products"]["pushed"] == 3

    configure(local_db, token=token, tenant=tenant_id)
    client = SyncClient(local_db, session=api, online_check=lambda: True)

    first = client.bootstrap_if_empty()
    assert first["success"] is True
    assert first["results"]["products"]["pulled"] == 3
    with connect(local_db) as conn:
        assert local_table(conn, "products").count() == 3
        assert get_setting(conn, watermark_key("products")) == first["serverTime"]
        update_record(conn, "products", "p2", {"sellPrice": 250})
    assert client.bootstrap_if_empty() is None
    assert client.pending_count() == 1

    second = client.sync_all()
    assert second["success"] is True
    assert second["results"]["products"]["pushed"] == 1
    with connect(local_db) as conn:
        p2 = get_record(conn, "products", "p2")
        assert p2["syncStatus"] == "synced"
        assert p2["sellPrice"] == 250
        assert p2["tenantId"] == tenant_id
    assert client.pending_count() == 0

    # a second device converges on the edited price
    other_db = str(tmp_path / "device-b.db")
    with connect(other_db) as conn:
        init_schema(conn)
    configure(other_db, token=token, tenant=tenant_id)
    other = SyncClient(other_db, session=api, online_check=lambda: True)
    assert other.sync_all()["success"] is True
    with connect(other_db) as conn:
        assert get_record(conn, "products", "p2")["sellPrice"] == 250
        assert local_table(conn, "products").count() == 3


def test_unreadable_response_is_a_structured_failure(local_db):
    configure(local_db)
    pid = new_product(local_db)
    session = MagicMock()
    client = SyncClient(local_db, session=session, online_check=lambda: True)
    bad_payloads = [
        ack({"products": ["not", "a", "result"]}),
        ack({"categories": table_result(), "products": table_result(pushed=1, pulled=["not-a-row"])}),
        ack({"products": table_result(pushed=1, failed=[{"id": pid}])}),
        ack(["products"]),
    ]

    for payload in bad_payloads:
        session.post.return_value = response(200, payload)
        result = client.sync_all()
        assert result["success"] is False
        assert result["error"].startswith("Réponse de synchronisation invalide")

    with connect(local_db) as conn:
        assert get_record(conn, "products", pid)["syncStatus"] == "pending"
        # earlier tables of a rejected response are rolled back too
        assert get_setting(conn, watermark_key("categories")) == ""
    assert not client.in_flight

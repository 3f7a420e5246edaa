"""Shared pytest fixtures."""
from __future__ import annotations

import os
import tempfile

# main.py builds a module-level app on import; keep its database out of the tree
os.environ.setdefault("STORE_SERVER_DB", os.path.join(tempfile.mkdtemp(prefix="gestion-store-"), "server.db"))

from pathlib import Path  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from gestion_store.client import db_local  # noqa: E402
from gestion_store.server import db_server  # noqa: E402
from gestion_store.server.main import create_app  # noqa: E402


@pytest.fixture
def server_conn(tmp_path: Path):
    """Initialized server database connection."""
    with db_server.connect(str(tmp_path / "server.db")) as conn:
        db_server.init_schema(conn)
        yield conn


@pytest.fixture
def server_tables(server_conn):
    return db_server.sync_tables(server_conn)


@pytest.fixture
def local_db(tmp_path: Path) -> str:
    """Path of an initialized, empty local store."""
    path = str(tmp_path / "local.db")
    with db_local.connect(path) as conn:
        db_local.init_schema(conn)
    return path


@pytest.fixture
def server_db_path(tmp_path: Path) -> str:
    return str(tmp_path / "server.db")


@pytest.fixture
def api(server_db_path: str) -> TestClient:
    return TestClient(create_app(server_db_path))


@pytest.fixture
def register(api: TestClient):
    """Register a shop and log its manager in; returns (token, tenant_id)."""

    def _register(shop: str = "Boutique A", email: str = "gerant@boutique-a.com", password: str = "secret123"):
        resp = api.post(
            "/auth/register",
            json={"shopName": shop, "name": "Gérant", "email": email, "password": password},
        )
        assert resp.status_code == 200, resp.text
        login = api.post("/auth/login", json={"email": email, "password": password})
        assert login.status_code == 200, login.text
        return login.json()["access_token"], resp.json()["tenantId"]

    return _register
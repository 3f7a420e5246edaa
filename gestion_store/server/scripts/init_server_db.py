"""
Initialize the server database and, optionally, the platform super-admin.

Run:
  SUPERADMIN_EMAIL=admin@store.com SUPERADMIN_PASSWORD=secret \
    python -m gestion_store.server.scripts.init_server_db
"""
import os

from gestion_store.server.auth import ROLE_SUPER_ADMIN, create_user
from gestion_store.server.db_server import SERVER_DB_DEFAULT_PATH, connect, fetch_one, init_schema

if __name__ == "__main__":
    email = os.getenv("SUPERADMIN_EMAIL", "").strip().lower()
    password = os.getenv("SUPERADMIN_PASSWORD", "")

    with connect() as conn:
        init_schema(conn)
        if email and password and not fetch_one(conn, "SELECT id FROM users WHERE email=?", (email,)):
            create_user(conn, email, password, "Super admin", role=ROLE_SUPER_ADMIN, tenant_id=None)
            print(f"✅ Super-admin créé: {email}")

    print(f"✅ Base serveur initialisée: {SERVER_DB_DEFAULT_PATH}")

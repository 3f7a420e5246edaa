"""
FastAPI server (multi-tenant store backend):
- Auth (register shop / login) with JWT
- Sync endpoints: POST /sync and GET /sync/status

Run:
  uvicorn gestion_store.server.main:app --reload
"""
from __future__ import annotations

import logging
import os
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, EmailStr

from ..storage import now_iso
from .auth import (
    ROLE_MANAGER,
    create_access_token,
    create_user,
    get_current_user,
    get_db_path,
    new_id,
    verify_password,
)
from .db_server import SERVER_DB_DEFAULT_PATH, connect, fetch_one, init_schema
from .sync_api import router as sync_router

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

logger = logging.getLogger(__name__)


class RegisterBody(BaseModel):
    shopName: str
    name: str
    email: EmailStr
    password: str


class LoginBody(BaseModel):
    email: EmailStr
    password: str


def register(body: RegisterBody, request: Request):
    email = body.email.strip().lower()
    if len(body.password) < 6:
        raise HTTPException(status_code=400, detail="Mot de passe trop court (min. 6)")
    if not body.shopName.strip():
        raise HTTPException(status_code=400, detail="Nom de boutique requis")

    with connect(get_db_path(request)) as conn:
        existing = fetch_one(conn, "SELECT id FROM users WHERE email=?", (email,))
        if existing:
            raise HTTPException(status_code=400, detail="E-mail déjà utilisé")

        tenant_id = new_id()
        conn.execute(
            "INSERT INTO tenants(id, name, status, createdAt) VALUES (?,?,?,?)",
            (tenant_id, body.shopName.strip(), "active", now_iso()),
        )
        user = create_user(conn, email, body.password, body.name, role=ROLE_MANAGER, tenant_id=tenant_id)

    logger.info("Tenant %s registered by %s", tenant_id, email)
    return {"ok": True, "tenantId": tenant_id, "user": user}


def login(body: LoginBody, request: Request):
    email = body.email.strip().lower()
    with connect(get_db_path(request)) as conn:
        user = fetch_one(conn, "SELECT * FROM users WHERE email=?", (email,))
    if not user or not user["active"] or not verify_password(body.password, user["passwordHash"]):
        raise HTTPException(status_code=401, detail="Identifiants invalides")

    token = create_access_token(user["id"], user["role"], user["tenantId"])
    return {
        "access_token": token,
        "user": {k: user[k] for k in ("id", "tenantId", "name", "email", "role")},
    }


def me(request: Request, user=Depends(get_current_user)):
    tenant = None
    if user.get("tenantId"):
        with connect(get_db_path(request)) as conn:
            tenant = fetch_one(conn, "SELECT id, name, status FROM tenants WHERE id=?", (user["tenantId"],))
    return {"user": user, "tenant": tenant}


def health():
    return {"status": "healthy"}


def create_app(db_path: Optional[str] = None) -> FastAPI:
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)

    app = FastAPI(title="Gestion Store Sync Server")
    app.state.db_path = db_path or SERVER_DB_DEFAULT_PATH
    with connect(app.state.db_path) as conn:
        init_schema(conn)

    app.add_api_route("/health", health, methods=["GET"])
    app.add_api_route("/auth/register", register, methods=["POST"])
    app.add_api_route("/auth/login", login, methods=["POST"])
    app.add_api_route("/me", me, methods=["GET"])
    app.include_router(sync_router)
    return app


app = create_app()

"""
auth.py
JWT + password hashing (passlib[bcrypt]) and the authenticated caller.
"""
from __future__ import annotations

import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext

from ..storage import SqliteTable, now_iso
from ..tables import TABLE_SPECS
from .db_server import SERVER_DB_DEFAULT_PATH, connect, fetch_one

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
ACCESS_TOKEN_MINUTES = int(os.getenv("ACCESS_TOKEN_MINUTES", str(60 * 24 * 7)))  # 7 days

ROLE_MANAGER = "gerant"
ROLE_SELLER = "vendeur"
ROLE_SUPER_ADMIN = "super_admin"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer = HTTPBearer(auto_error=False)


def new_id() -> str:
    return str(uuid.uuid4())


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def create_access_token(user_id: str, role: str, tenant_id: Optional[str]) -> str:
    exp = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_MINUTES)
    payload = {"sub": user_id, "role": role, "tenantId": tenant_id, "exp": exp}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expiré")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token invalide")


def create_user(
    conn,
    email: str,
    password: str,
    name: str,
    role: str = ROLE_SELLER,
    tenant_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Users live in the synced `users` table; only auth writes passwordHash."""
    ts = now_iso()
    users = SqliteTable(conn, TABLE_SPECS["users"])
    user = users.upsert(
        new_id(),
        dict(
            tenantId=tenant_id,
            name=name,
            email=email.strip().lower(),
            passwordHash=hash_password(password),
            role=role,
            active=1,
            createdAt=ts,
            updatedAt=ts,
            syncStatus="synced",
        ),
    )
    return TABLE_SPECS["users"].public(user)


def get_db_path(request: Request) -> str:
    return getattr(request.app.state, "db_path", SERVER_DB_DEFAULT_PATH)


def get_current_user(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> Dict[str, Any]:
    if not creds:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token manquant")
    payload = decode_token(creds.credentials)
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token invalide")

    with connect(get_db_path(request)) as conn:
        user = fetch_one(
            conn,
            "SELECT id, tenantId, name, email, role, active FROM users WHERE id=?",
            (user_id,),
        )
    if not user or not user["active"]:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Utilisateur introuvable")
    return user

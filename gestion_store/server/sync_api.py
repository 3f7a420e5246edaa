"""
sync_api.py
Sync endpoints: POST /sync (push + pull in one round trip) and GET /sync/status.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ..storage import now_iso
from .auth import ROLE_SUPER_ADMIN, get_current_user, get_db_path
from .db_server import connect, fetch_one, sync_tables
from .reconcile import SyncScope, reconcile
from .schemas import SyncRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


def resolve_scope(conn, user: Dict[str, Any], tenant_param: Optional[str] = None) -> SyncScope:
    """
    Privilege check at the boundary.

    - gerant/vendeur: their own tenant, which must exist and not be suspended
    - super_admin: the tenant given as ?tenantId=, otherwise every tenant
    """
    if user.get("role") == ROLE_SUPER_ADMIN:
        tenant_id = tenant_param or user.get("tenantId")
        return SyncScope.tenant(tenant_id) if tenant_id else SyncScope.global_()

    tenant_id = user.get("tenantId")
    if not tenant_id:
        raise HTTPException(status_code=403, detail="Aucune boutique associée à ce compte")

    tenant = fetch_one(conn, "SELECT id, status FROM tenants WHERE id=?", (tenant_id,))
    if not tenant:
        raise HTTPException(status_code=404, detail="Boutique introuvable")
    if tenant["status"] in ("suspended", "expired"):
        raise HTTPException(status_code=403, detail="Votre boutique est suspendue ou expirée")
    return SyncScope.tenant(tenant_id)


@router.post("")
def sync(
    request: Request,
    body: Any = Body(default=None),
    tenantId: Optional[str] = Query(default=None),
    user=Depends(get_current_user),
):
    try:
        payload = SyncRequest.model_validate(body)
    except ValidationError as exc:
        logger.warning("Malformed sync request from user %s: %s", user["id"], exc.error_count())
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Requête de synchronisation invalide"},
        )

    # watermark handed back to the client: taken before any row is written
    server_time = now_iso()
    with connect(get_db_path(request)) as conn:
        scope = resolve_scope(conn, user, tenantId)
        results = reconcile(payload.changes, scope, sync_tables(conn))

    return {"success": True, "serverTime": server_time, "results": results}


@router.get("/status")
def sync_status(
    request: Request,
    tenantId: Optional[str] = Query(default=None),
    user=Depends(get_current_user),
) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    with connect(get_db_path(request)) as conn:
        scope = resolve_scope(conn, user, tenantId)
        for name, table in sync_tables(conn).items():
            counts[name] = table.count(scope.filter())
    return counts

"""
tables.py
Entity table registry shared by the server and the offline client.

Every synced entity flows through the same generic upsert path, so the only
per-table knowledge lives here: column shape, required fields, the field the
pull delta is computed on, and fields that must never travel over sync.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

SYNC_STATUS_SYNCED = "synced"
SYNC_STATUS_PENDING = "pending"
SYNC_STATUS_CONFLICT = "conflict"  # declared, never set by the last-write-wins policy
SYNC_STATUS_FAILED = "failed"

# client bookkeeping, stripped by the server before any write
CLIENT_ONLY_FIELDS = ("syncStatus", "lastSyncedAt", "syncAttempts")

WATERMARK_KEY_PREFIX = "lastSync_"


@dataclass(frozen=True)
class TableSpec:
    name: str
    columns: Dict[str, str]
    required: Tuple[str, ...] = ()
    watermark_field: str = "updatedAt"
    private_fields: Tuple[str, ...] = ()
    # pulled like any column, but only the auth routes may write them
    server_fields: Tuple[str, ...] = ()
    append_only: bool = False

    def has_column(self, column: str) -> bool:
        return column in self.columns

    def public(self, row: Dict) -> Dict:
        """Row as it may leave the server."""
        return {k: v for k, v in row.items() if k not in self.private_fields}

    def writable_by_sync(self, column: str) -> bool:
        return self.has_column(column) and column not in self.private_fields and column not in self.server_fields


def _columns(*domain: Tuple[str, str], history: bool = False) -> Dict[str, str]:
    cols: Dict[str, str] = {"id": "TEXT PRIMARY KEY", "tenantId": "TEXT"}
    for name, sql_type in domain:
        cols[name] = sql_type
    cols["createdAt"] = "TEXT NOT NULL"
    if not history:
        cols["updatedAt"] = "TEXT NOT NULL"
    cols["syncStatus"] = "TEXT NOT NULL DEFAULT 'synced'"
    cols["lastSyncedAt"] = "TEXT"
    return cols


def _spec(name: str, *domain: Tuple[str, str], required: Tuple[str, ...] = (), **kw) -> TableSpec:
    history = kw.get("append_only", False)
    return TableSpec(
        name=name,
        columns=_columns(*domain, history=history),
        required=required,
        watermark_field="createdAt" if history else "updatedAt",
        **kw,
    )


TABLE_SPECS: Dict[str, TableSpec] = {}

for _s in (
    _spec(
        "users",
        ("name", "TEXT NOT NULL"),
        ("email", "TEXT NOT NULL"),
        ("passwordHash", "TEXT"),
        ("role", "TEXT NOT NULL DEFAULT 'vendeur'"),
        ("active", "INTEGER NOT NULL DEFAULT 1"),
        required=("name", "email"),
        private_fields=("passwordHash",),
        server_fields=("role", "active"),
    ),
    _spec("categories", ("name", "TEXT NOT NULL"), required=("name",)),
    _spec(
        "products",
        ("name", "TEXT NOT NULL"),
        ("barcode", "TEXT"),
        ("categoryId", "TEXT"),
        ("buyPrice", "REAL NOT NULL DEFAULT 0"),
        ("sellPrice", "REAL NOT NULL DEFAULT 0"),
        ("quantity", "REAL NOT NULL DEFAULT 0"),
        ("alertThreshold", "REAL NOT NULL DEFAULT 0"),
        required=("name",),
    ),
    _spec(
        "customers",
        ("name", "TEXT NOT NULL"),
        ("phone", "TEXT"),
        ("creditBalance", "REAL NOT NULL DEFAULT 0"),
        required=("name",),
    ),
    _spec(
        "suppliers",
        ("name", "TEXT NOT NULL"),
        ("phone", "TEXT"),
        ("address", "TEXT"),
        required=("name",),
    ),
    _spec(
        "sales",
        ("userId", "TEXT"),
        ("customerId", "TEXT"),
        ("date", "TEXT NOT NULL"),
        ("total", "REAL NOT NULL DEFAULT 0"),
        ("paymentMethod", "TEXT NOT NULL DEFAULT 'cash'"),
        ("status", "TEXT NOT NULL DEFAULT 'completed'"),
        required=("date",),
    ),
    _spec(
        "saleItems",
        ("saleId", "TEXT NOT NULL"),
        ("productId", "TEXT NOT NULL"),
        ("productName", "TEXT"),
        ("quantity", "REAL NOT NULL"),
        ("unitPrice", "REAL NOT NULL"),
        ("total", "REAL NOT NULL"),
        required=("saleId", "productId", "quantity", "unitPrice", "total"),
    ),
    _spec(
        "supplierOrders",
        ("supplierId", "TEXT NOT NULL"),
        ("date", "TEXT NOT NULL"),
        ("total", "REAL NOT NULL DEFAULT 0"),
        ("status", "TEXT NOT NULL DEFAULT 'en_attente'"),
        required=("supplierId", "date"),
    ),
    _spec(
        "orderItems",
        ("orderId", "TEXT NOT NULL"),
        ("productId", "TEXT NOT NULL"),
        ("productName", "TEXT"),
        ("quantity", "REAL NOT NULL"),
        ("unitPrice", "REAL NOT NULL"),
        ("total", "REAL NOT NULL"),
        required=("orderId", "productId", "quantity", "unitPrice", "total"),
    ),
    _spec(
        "stockMovements",
        ("productId", "TEXT NOT NULL"),
        ("productName", "TEXT"),
        ("type", "TEXT NOT NULL"),
        ("quantity", "REAL NOT NULL"),
        ("date", "TEXT NOT NULL"),
        ("reason", "TEXT"),
        required=("productId", "type", "quantity", "date"),
    ),
    _spec(
        "creditTransactions",
        ("customerId", "TEXT NOT NULL"),
        ("saleId", "TEXT"),
        ("amount", "REAL NOT NULL"),
        ("type", "TEXT NOT NULL"),
        ("date", "TEXT NOT NULL"),
        ("note", "TEXT"),
        required=("customerId", "amount", "type", "date"),
    ),
    _spec(
        "auditLogs",
        ("userId", "TEXT"),
        ("userName", "TEXT"),
        ("action", "TEXT NOT NULL"),
        ("entity", "TEXT NOT NULL"),
        ("entityId", "TEXT"),
        ("entityName", "TEXT"),
        ("details", "TEXT"),
        ("date", "TEXT NOT NULL"),
        required=("action", "entity", "date"),
    ),
    _spec(
        "expenses",
        ("category", "TEXT NOT NULL"),
        ("amount", "REAL NOT NULL"),
        ("description", "TEXT"),
        ("date", "TEXT NOT NULL"),
        ("recurring", "INTEGER NOT NULL DEFAULT 0"),
        required=("category", "amount", "date"),
    ),
    _spec(
        "customerOrders",
        ("customerId", "TEXT NOT NULL"),
        ("date", "TEXT NOT NULL"),
        ("total", "REAL NOT NULL DEFAULT 0"),
        ("status", "TEXT NOT NULL DEFAULT 'en_attente'"),
        ("note", "TEXT"),
        required=("customerId", "date"),
    ),
    _spec(
        "customerOrderItems",
        ("orderId", "TEXT NOT NULL"),
        ("productId", "TEXT NOT NULL"),
        ("productName", "TEXT"),
        ("quantity", "REAL NOT NULL"),
        ("unitPrice", "REAL NOT NULL"),
        ("total", "REAL NOT NULL"),
        required=("orderId", "productId", "quantity", "unitPrice", "total"),
    ),
    # immutable history: no update path, pulled by createdAt
    _spec(
        "priceHistory",
        ("productId", "TEXT NOT NULL"),
        ("buyPrice", "REAL NOT NULL"),
        ("sellPrice", "REAL NOT NULL"),
        ("userId", "TEXT"),
        required=("productId", "buyPrice", "sellPrice"),
        append_only=True,
    ),
):
    TABLE_SPECS[_s.name] = _s

SYNC_TABLES: Tuple[str, ...] = tuple(TABLE_SPECS)


def get_spec(name: str) -> Optional[TableSpec]:
    return TABLE_SPECS.get(name)


def watermark_key(table: str) -> str:
    return f"{WATERMARK_KEY_PREFIX}{table}"

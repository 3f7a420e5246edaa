"""
services.py
Local mutations (offline-first) in small, named functions.

Every write tags the row `pending`; the sync client pushes it later.
"""
from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from ..storage import now_iso
from ..tables import SYNC_STATUS_PENDING
from .db_local import LOCAL_SPECS, add_tombstone, get_setting, local_table


def new_id() -> str:
    return str(uuid.uuid4())


def create_record(conn, table: str, data: Dict[str, Any]) -> Dict[str, Any]:
    spec = LOCAL_SPECS[table]
    ts = now_iso()
    row = dict(data)
    row.setdefault("id", new_id())
    row.setdefault("tenantId", get_setting(conn, "tenant_id") or None)
    row["createdAt"] = ts
    if spec.has_column("updatedAt"):
        row["updatedAt"] = ts
    row["syncStatus"] = SYNC_STATUS_PENDING
    row["syncAttempts"] = 0
    return local_table(conn, table).upsert(row["id"], row)


def update_record(conn, table: str, record_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    spec = LOCAL_SPECS[table]
    if spec.append_only:
        raise ValueError(f"{table} is append-only")
    t = local_table(conn, table)
    if t.get(record_id) is None:
        raise KeyError(f"{table}/{record_id} not found")

    changes = {k: v for k, v in fields.items() if k not in ("id", "tenantId", "createdAt")}
    changes["updatedAt"] = now_iso()
    changes["syncStatus"] = SYNC_STATUS_PENDING
    changes["syncAttempts"] = 0
    t.update(record_id, changes)
    return t.get(record_id)


def delete_record(conn, table: str, record_id: str) -> bool:
    t = local_table(conn, table)
    row = t.get(record_id)
    if row is None:
        return False
    t.delete(record_id)
    # never reached the server -> nothing to propagate
    if row.get("lastSyncedAt"):
        add_tombstone(conn, table, record_id, now_iso())
    return True


def get_record(conn, table: str, record_id: str) -> Optional[Dict[str, Any]]:
    return local_table(conn, table).get(record_id)


def list_records(conn, table: str, where: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    return local_table(conn, table).find_many(where, order_by="createdAt")


def local_store_is_empty(conn) -> bool:
    return all(local_table(conn, name).count() == 0 for name in LOCAL_SPECS)


# ----------------------------
# Store operations
# ----------------------------

def add_product(
    conn,
    name: str,
    sell_price: float,
    buy_price: float = 0.0,
    quantity: float = 0.0,
    category_id: Optional[str] = None,
    barcode: Optional[str] = None,
    alert_threshold: float = 0.0,
) -> Dict[str, Any]:
    return create_record(
        conn,
        "products",
        dict(
            name=name,
            barcode=barcode,
            categoryId=category_id,
            buyPrice=float(buy_price or 0),
            sellPrice=float(sell_price or 0),
            quantity=float(quantity or 0),
            alertThreshold=float(alert_threshold or 0),
        ),
    )


def change_price(
    conn,
    product_id: str,
    buy_price: float,
    sell_price: float,
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Update a product's prices and append the change to priceHistory."""
    product = update_record(
        conn, "products", product_id, dict(buyPrice=float(buy_price), sellPrice=float(sell_price))
    )
    create_record(
        conn,
        "priceHistory",
        dict(productId=product_id, buyPrice=float(buy_price), sellPrice=float(sell_price), userId=user_id),
    )
    return product


def record_sale(
    conn,
    items: List[Tuple[str, float]],
    payment_method: str = "cash",
    customer_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Record a sale from (product_id, quantity) pairs.

    Writes the sale, its items, one stock movement per item and, for credit
    sales, a credit transaction on the customer.
    """
    if not items:
        raise ValueError("empty sale")
    if payment_method == "credit" and not customer_id:
        raise ValueError("credit sale requires a customer")

    ts = now_iso()
    sale = create_record(
        conn,
        "sales",
        dict(userId=user_id, customerId=customer_id, date=ts, total=0.0, paymentMethod=payment_method, status="completed"),
    )

    total = 0.0
    for product_id, qty in items:
        product = get_record(conn, "products", product_id)
        if product is None:
            raise KeyError(f"products/{product_id} not found")
        line_total = float(qty) * float(product["sellPrice"])
        total += line_total
        create_record(
            conn,
            "saleItems",
            dict(
                saleId=sale["id"],
                productId=product_id,
                productName=product["name"],
                quantity=float(qty),
                unitPrice=float(product["sellPrice"]),
                total=line_total,
            ),
        )
        create_record(
            conn,
            "stockMovements",
            dict(
                productId=product_id,
                productName=product["name"],
                type="sortie",
                quantity=float(qty),
                date=ts,
                reason=f"Vente {sale['id'][:8]}",
            ),
        )
        update_record(conn, "products", product_id, dict(quantity=float(product["quantity"]) - float(qty)))

    sale = update_record(conn, "sales", sale["id"], dict(total=total))

    if payment_method == "credit":
        customer = get_record(conn, "customers", customer_id)
        if customer is None:
            raise KeyError(f"customers/{customer_id} not found")
        create_record(
            conn,
            "creditTransactions",
            dict(customerId=customer_id, saleId=sale["id"], amount=total, type="credit", date=ts),
        )
        update_record(
            conn, "customers", customer_id, dict(creditBalance=float(customer["creditBalance"]) + total)
        )
    return sale


# ----------------------------
# Queries for the sync console
# ----------------------------

def df_table(conn, table: str) -> pd.DataFrame:
    rows = list_records(conn, table)
    return pd.DataFrame(rows)

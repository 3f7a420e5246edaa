"""
Seed demo data in the local store (optional). Rows start `pending` and go to
the server on the next sync.

Run:
  python -m gestion_store.client.scripts.seed_demo
"""
import random

from gestion_store.client.db_local import connect, init_schema
from gestion_store.client.services import add_product, change_price, create_record, record_sale

if __name__ == "__main__":
    with connect() as conn:
        init_schema(conn)

        boissons = create_record(conn, "categories", {"name": "Boissons"})
        epicerie = create_record(conn, "categories", {"name": "Épicerie"})

        products = [
            add_product(conn, "Eau 1.5L", 500, 350, 120, category_id=boissons["id"], alert_threshold=20),
            add_product(conn, "Jus d'orange", 1200, 900, 40, category_id=boissons["id"], alert_threshold=10),
            add_product(conn, "Riz 5kg", 6500, 5200, 25, category_id=epicerie["id"], alert_threshold=5),
            add_product(conn, "Huile 1L", 1800, 1400, 30, category_id=epicerie["id"], alert_threshold=5),
        ]
        change_price(conn, products[2]["id"], 5300, 6800)

        client = create_record(conn, "customers", {"name": "Awa Diallo", "phone": "+221 77 000 00 00", "creditBalance": 0})

        for i in range(10):
            picks = random.sample(products, k=2)
            record_sale(conn, [(p["id"], random.randint(1, 3)) for p in picks])
        record_sale(conn, [(products[0]["id"], 6)], payment_method="credit", customer_id=client["id"])

    print("✅ Données de démonstration insérées (en attente de synchronisation).")

"""
Streamlit client app (offline-first store console).
Run: streamlit run gestion_store/client/app.py
"""
from __future__ import annotations

import pandas as pd
import requests
import streamlit as st

from gestion_store.client.analytics import (
    local_vs_server_bar,
    local_vs_server_frame,
    sync_status_bar,
    sync_status_frame,
)
from gestion_store.client.db_local import LOCAL_DB_DEFAULT_PATH, connect, get_setting, init_schema, local_table, set_setting
from gestion_store.client.scheduler import AutoSync
from gestion_store.client.services import add_product, change_price, delete_record, df_table, list_records
from gestion_store.client.sync_client import SyncClient, failed_records, pending_counts, retry_failed
from gestion_store.client.ui import apply_theme, sidebar_controls, table
from gestion_store.tables import SYNC_TABLES


st.set_page_config(page_title="Gestion Store (hors ligne)", layout="wide")


def api_post(server_url: str, path: str, json: dict, token: str | None = None):
    url = server_url.rstrip("/") + path
    headers = {}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    resp = requests.post(url, json=json, headers=headers, timeout=30)
    resp.raise_for_status()
    return resp.json()


def api_get(server_url: str, path: str, params: dict | None = None, token: str | None = None):
    url = server_url.rstrip("/") + path
    headers = {}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    resp = requests.get(url, params=params, headers=headers, timeout=30)
    resp.raise_for_status()
    return resp.json()


def get_sync_client() -> SyncClient:
    if "sync_client" not in st.session_state:
        st.session_state["sync_client"] = SyncClient(LOCAL_DB_DEFAULT_PATH)
    return st.session_state["sync_client"]


def ensure_auto_sync(client: SyncClient) -> None:
    if "auto_sync" not in st.session_state:
        client.bootstrap_if_empty()
        auto = AutoSync(client)
        auto.start()
        st.session_state["auto_sync"] = auto


def login_screen(conn):
    st.title("🔐 Connexion")
    st.caption("Travaillez hors ligne, ou connectez un serveur pour synchroniser.")

    server_url = st.text_input("URL du serveur", value=get_setting(conn, "server_url", "http://127.0.0.1:8000"))
    email = st.text_input("E-mail", value=get_setting(conn, "user_email", ""))
    password = st.text_input("Mot de passe", type="password")

    with st.expander("Créer une boutique"):
        shop_name = st.text_input("Nom de la boutique")
        name = st.text_input("Votre nom")
        if st.button("Créer la boutique", use_container_width=True):
            try:
                api_post(server_url, "/auth/register", {"shopName": shop_name, "name": name, "email": email, "password": password})
                set_setting(conn, "server_url", server_url)
                set_setting(conn, "user_email", email)
                st.success("Boutique créée ! Connectez-vous.")
            except requests.RequestException as e:
                st.error(f"Échec de la création: {e}")

    col1, col2 = st.columns(2)
    with col1:
        if st.button("Se connecter", use_container_width=True):
            try:
                data = api_post(server_url, "/auth/login", {"email": email, "password": password})
                set_setting(conn, "server_url", server_url)
                set_setting(conn, "user_email", email)
                set_setting(conn, "auth_token", data["access_token"])
                set_setting(conn, "tenant_id", data["user"].get("tenantId") or "")
                st.session_state["logged_in"] = True
                conn.commit()
                st.rerun()
            except requests.RequestException as e:
                st.error(f"Échec de connexion: {e}")
    with col2:
        if st.button("Continuer hors ligne", use_container_width=True):
            set_setting(conn, "user_email", email or "hors-ligne@local")
            st.session_state["logged_in"] = True
            conn.commit()
            st.rerun()


def page_produits(conn):
    st.header("📦 Produits")

    with st.form("form_product", clear_on_submit=True):
        name = st.text_input("Nom")
        barcode = st.text_input("Code-barres (optionnel)")
        buy = st.number_input("Prix d'achat", min_value=0.0, step=50.0)
        sell = st.number_input("Prix de vente", min_value=0.0, step=50.0)
        qty = st.number_input("Quantité", min_value=0.0, step=1.0)
        ok = st.form_submit_button("Enregistrer")
    if ok and name:
        add_product(conn, name, sell, buy, qty, barcode=barcode or None)
        st.success("Produit enregistré (en attente de synchronisation).")

    products = list_records(conn, "products")
    if products:
        labels = {p["id"]: p["name"] for p in products}
        st.subheader("Modifier")
        pid = st.selectbox("Produit", options=list(labels.keys()), format_func=lambda x: labels.get(x, x))
        current = next(p for p in products if p["id"] == pid)
        c1, c2, c3 = st.columns(3)
        new_buy = c1.number_input("Nouveau prix d'achat", value=float(current["buyPrice"]), key="np_buy")
        new_sell = c2.number_input("Nouveau prix de vente", value=float(current["sellPrice"]), key="np_sell")
        if c3.button("Changer le prix", use_container_width=True):
            change_price(conn, pid, new_buy, new_sell)
            conn.commit()
            st.rerun()
        if c3.button("Supprimer", use_container_width=True):
            delete_record(conn, "products", pid)
            conn.commit()
            st.rerun()

    table(df_table(conn, "products"), height=360)


def page_sync(conn, client: SyncClient):
    st.header("🔄 Synchronisation")

    st.write("Serveur:", get_setting(conn, "server_url") or "—")
    st.write("Jeton:", "✅" if get_setting(conn, "auth_token") else "—")
    last = client.last_result
    if last:
        st.write("Dernier résultat:", "✅" if last.get("success") else f"❌ {last.get('error')}")

    col1, col2 = st.columns(2)
    with col1:
        if st.button("Synchroniser maintenant", use_container_width=True):
            result = client.sync_all()
            if result["success"]:
                st.success("Synchronisation terminée.")
            else:
                st.error(result["error"])
    with col2:
        if st.button("Resynchronisation complète", use_container_width=True):
            result = client.sync_all(force=True)
            if result["success"]:
                st.success("Resynchronisation terminée.")
            else:
                st.error(result["error"])

    counts = pending_counts(conn)
    st.subheader("En attente par table")
    table(pd.DataFrame([{"table": t, "pending": n} for t, n in counts.items() if n]), height=220)

    fig = sync_status_bar(sync_status_frame(conn))
    if fig:
        st.plotly_chart(fig, use_container_width=True)

    st.subheader("Rejetés par le serveur")
    failed = failed_records(conn)
    if not failed:
        st.caption("Aucun enregistrement rejeté.")
    for row in failed:
        c1, c2 = st.columns([4, 1])
        c1.write(f"{row['table']} / {row['id']} ({row.get('syncAttempts', 0)} essais)")
        if c2.button("Réessayer", key=f"retry_{row['table']}_{row['id']}"):
            retry_failed(conn, row["table"], row["id"])
            conn.commit()
            st.rerun()


def page_serveur(conn):
    st.header("🌐 Serveur")
    server_url = get_setting(conn, "server_url")
    token = get_setting(conn, "auth_token")
    if not server_url or not token:
        st.info("Connectez-vous au serveur pour comparer les données.")
        return
    try:
        server_counts = api_get(server_url, "/sync/status", token=token)
    except requests.RequestException as e:
        st.error(f"Serveur injoignable: {e}")
        return
    local_counts = {t: local_table(conn, t).count() for t in SYNC_TABLES}
    df = local_vs_server_frame(local_counts, server_counts)
    table(df, height=420)
    fig = local_vs_server_bar(df)
    if fig:
        st.plotly_chart(fig, use_container_width=True)


def main():
    client = get_sync_client()
    with connect(client.db_path) as conn:
        init_schema(conn)
        apply_theme(conn)

        if not st.session_state.get("logged_in") and not get_setting(conn, "user_email"):
            login_screen(conn)
            return

    ensure_auto_sync(client)
    online = client.is_online()

    with connect(client.db_path) as conn:
        ctrl = sidebar_controls(conn, online, sum(pending_counts(conn).values()))
        menu = ctrl["menu"]
        if menu == "Produits":
            page_produits(conn)
        elif menu == "Synchronisation":
            page_sync(conn, client)
        elif menu == "Serveur":
            page_serveur(conn)


if __name__ == "__main__":
    main()

"""
ui.py
Streamlit UI helpers (simple + reusable).
"""
from __future__ import annotations

from typing import Any, Dict

import pandas as pd
import streamlit as st

from .db_local import get_setting, set_setting


DARK_CSS = """
<style>
:root {
  --store-bg: #101418;
  --store-side: #161c22;
  --store-ink: #eef2f5;
  --store-dim: #94a3b8;
  --store-line: rgba(238,242,245,0.10);
}

.stApp { background-color: var(--store-bg); color: var(--store-ink); }
section[data-testid="stSidebar"] { background-color: var(--store-side); border-right: 1px solid var(--store-line); }
div[data-testid="stMetricLabel"] { color: var(--store-dim); }
.stButton>button { border-radius: 6px; border: 1px solid var(--store-line); }
</style>
"""

LIGHT_CSS = """
<style>
.stButton>button { border-radius: 6px; }
</style>
"""

# sidebar network badge
BADGE_HTML = '<span style="padding:2px 8px;border-radius:8px;background:{bg};color:#fff;font-size:0.85em">{label}</span>'


def apply_theme(conn):
    dark = get_setting(conn, "dark_mode", "1") == "1"
    st.markdown(DARK_CSS if dark else LIGHT_CSS, unsafe_allow_html=True)


def sidebar_controls(conn, online: bool, pending: int) -> Dict[str, Any]:
    st.sidebar.title("🏪 Gestion Store")

    dark = get_setting(conn, "dark_mode", "1") == "1"
    new_dark = st.sidebar.toggle("🌙 Mode sombre", value=dark)
    if new_dark != dark:
        set_setting(conn, "dark_mode", "1" if new_dark else "0")
        conn.commit()
        st.rerun()

    st.sidebar.markdown(badge("En ligne", "#15803d") if online else badge("Hors ligne", "#b91c1c"), unsafe_allow_html=True)
    st.sidebar.markdown(f"**En attente:** {pending}")
    st.sidebar.divider()

    menu = st.sidebar.radio("Menu", ["Produits", "Synchronisation", "Serveur"], index=0)
    return {"menu": menu}


def table(df: pd.DataFrame, height: int = 320):
    if df is None or df.empty:
        st.info("Aucune donnée.")
        return
    st.dataframe(df, use_container_width=True, height=height)


def badge(label: str, color: str) -> str:
    return BADGE_HTML.format(bg=color, label=label)

"""
analytics.py
Sync console charts (Plotly) + small helpers.
"""
from __future__ import annotations

from typing import Dict

import pandas as pd
import plotly.express as px

from ..tables import SYNC_TABLES
from .db_local import fetch_all


def sync_status_frame(conn) -> pd.DataFrame:
    """Row count per table and syncStatus (local store)."""
    rows = []
    for name in SYNC_TABLES:
        for r in fetch_all(
            conn,
            f'SELECT "syncStatus" AS status, COUNT(*) AS n FROM "{name}" GROUP BY "syncStatus"',
        ):
            rows.append({"table": name, "status": r["status"], "count": r["n"]})
    return pd.DataFrame(rows, columns=["table", "status", "count"])


def local_vs_server_frame(local_counts: Dict[str, int], server_counts: Dict[str, int]) -> pd.DataFrame:
    df = pd.DataFrame(
        {
            "table": list(SYNC_TABLES),
            "local": [int(local_counts.get(t, 0)) for t in SYNC_TABLES],
            "server": [int(server_counts.get(t, 0)) for t in SYNC_TABLES],
        }
    )
    df["gap"] = df["server"] - df["local"]
    return df


def sync_status_bar(df_status: pd.DataFrame):
    if df_status.empty:
        return None
    fig = px.bar(df_status, x="table", y="count", color="status", title="Enregistrements locaux par statut")
    fig.update_layout(height=380, margin=dict(l=10, r=10, t=45, b=10), xaxis_title="")
    return fig


def local_vs_server_bar(df_cmp: pd.DataFrame):
    if df_cmp.empty:
        return None
    df_long = df_cmp.melt(id_vars=["table"], value_vars=["local", "server"], var_name="side", value_name="count")
    fig = px.bar(df_long, x="table", y="count", color="side", barmode="group", title="Local vs serveur")
    fig.update_layout(height=380, margin=dict(l=10, r=10, t=45, b=10), xaxis_title="")
    return fig

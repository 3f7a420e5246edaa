"""
schemas.py
Wire models for the sync endpoint.
"""
from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..storage import normalize_iso


class ChangeSet(BaseModel):
    table: str
    # items are checked one by one by the engine
    records: List[Any] = Field(default_factory=list)
    deletions: List[Any] = Field(default_factory=list)
    lastSyncedAt: Optional[str] = None

    @field_validator("lastSyncedAt")
    @classmethod
    def _canonical_watermark(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        return normalize_iso(v)

    @field_validator("records", "deletions", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return [] if v is None else v


class SyncRequest(BaseModel):
    changes: List[ChangeSet]

"""SQLModel tables for sync bookkeeping."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class ProviderSyncState(SQLModel, table=True):
    """Last remote payload observed for a task, replaced wholesale on each sync."""

    __tablename__ = "provider_sync_state"

    task_id: str = Field(primary_key=True)
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    content_hash: Optional[str] = None
    synced_at: datetime


class SyncCheckpoint(SQLModel, table=True):
    """Holds the single incremental sync token."""

    __tablename__ = "sync_checkpoint"

    id: int = Field(default=1, primary_key=True)
    token: Optional[str] = None
    updated_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None


__all__ = ["ProviderSyncState", "SyncCheckpoint"]

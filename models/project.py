"""Mirrored remote projects and labels."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class Project(SQLModel, table=True):
    id: str = Field(primary_key=True)
    name: str = Field(index=True)
    color: Optional[str] = None
    parent_id: Optional[str] = None
    order: Optional[int] = None
    is_favorite: bool = False
    is_inbox_project: bool = False
    raw_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    last_synced_at: Optional[datetime] = None


class Label(SQLModel, table=True):
    id: str = Field(primary_key=True)
    name: str = Field(index=True)
    color: Optional[str] = None
    order: Optional[int] = None
    is_favorite: bool = False
    last_synced_at: Optional[datetime] = None


__all__ = ["Label", "Project"]

"""Mirrored remote tasks."""
from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from core.priorities import DEFAULT_PRIORITY

# Tasks created while running standalone carry this prefix until pushed.
LOCAL_ID_PREFIX = "local-"


def compute_content_hash(content: Optional[str]) -> str:
    return hashlib.sha256((content or "").encode("utf-8")).hexdigest()


class Task(SQLModel, table=True):
    """Canonical record of a task as last confirmed by the remote service."""

    id: str = Field(primary_key=True)
    content: str
    description: str = ""
    project_id: Optional[str] = Field(default=None, index=True)
    parent_id: Optional[str] = None
    priority: int = Field(default=DEFAULT_PRIORITY, index=True)
    labels: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    due_date: Optional[str] = None
    due_datetime: Optional[datetime] = None
    due_string: Optional[str] = None
    due_timezone: Optional[str] = None
    due_is_recurring: bool = False
    is_completed: bool = Field(default=False, index=True)
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    content_hash: str = ""
    raw_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    last_synced_at: Optional[datetime] = None

    @property
    def is_local(self) -> bool:
        return self.id.startswith(LOCAL_ID_PREFIX)

    def refresh_hash(self) -> "Task":
        self.content_hash = compute_content_hash(self.content)
        return self

    def state_payload(self) -> Dict[str, Any]:
        """Fields compared when deciding whether a task changed between syncs."""

        return {
            "content": self.content,
            "description": self.description,
            "project_id": self.project_id,
            "parent_id": self.parent_id,
            "priority": self.priority,
            "labels": sorted(self.labels or []),
            "due_date": self.due_date,
            "due_string": self.due_string,
            "due_is_recurring": self.due_is_recurring,
            "is_completed": self.is_completed,
        }


__all__ = ["LOCAL_ID_PREFIX", "Task", "compute_content_hash"]

"""Task comments as delivered by the remote service.

Comments are never persisted; they live in the snapshot cache only.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from sqlmodel import SQLModel


class Comment(SQLModel):
    id: str
    task_id: Optional[str] = None
    project_id: Optional[str] = None
    content: str = ""
    posted_at: Optional[str] = None
    attachment: Optional[Dict[str, Any]] = None


__all__ = ["Comment"]

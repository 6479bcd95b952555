"""Capability interfaces for the remote task service.

The sync engine depends on two narrow protocols instead of one loosely typed
provider object: :class:`ReadClient` for the bulk snapshot stream and
:class:`WriteClient` for single-entity mutations. A concrete adapter such as
:class:`services.todoist_client.TodoistClient` implements both.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from models.comment import Comment
from models.project import Label, Project
from models.task import LOCAL_ID_PREFIX, Task


@dataclass
class Snapshot:
    """One consolidated read: everything the remote changed since a checkpoint."""

    tasks: List[Task] = field(default_factory=list)
    projects: List[Project] = field(default_factory=list)
    labels: List[Label] = field(default_factory=list)
    comments_by_task_id: Dict[str, List[Comment]] = field(default_factory=dict)
    sync_token: str = ""
    is_full_sync: bool = True
    deleted_task_ids: List[str] = field(default_factory=list)
    deleted_project_ids: List[str] = field(default_factory=list)
    deleted_label_ids: List[str] = field(default_factory=list)
    deleted_comment_ids: List[str] = field(default_factory=list)

    @property
    def task_ids(self) -> set[str]:
        return {task.id for task in self.tasks}


@dataclass
class TaskDraft:
    """Fields accepted by :meth:`WriteClient.create_task`."""

    content: str
    description: Optional[str] = None
    project_id: Optional[str] = None
    parent_id: Optional[str] = None
    priority: Optional[int] = None
    labels: Optional[List[str]] = None
    due_string: Optional[str] = None
    due_date: Optional[str] = None

    @classmethod
    def from_task(cls, task: Task) -> "TaskDraft":
        project_id = task.project_id
        if project_id and project_id.startswith(LOCAL_ID_PREFIX):
            project_id = None
        return cls(
            content=task.content,
            description=task.description or None,
            project_id=project_id,
            priority=task.priority,
            labels=list(task.labels or []) or None,
            due_string=task.due_string,
            due_date=None if task.due_string else task.due_date,
        )

    def as_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"content": self.content}
        for key in ("description", "project_id", "parent_id", "priority", "labels"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        # The remote treats due_string and due_date as mutually exclusive.
        if self.due_string:
            payload["due_string"] = self.due_string
        elif self.due_date:
            payload["due_date"] = self.due_date
        return payload


@runtime_checkable
class ReadClient(Protocol):
    async def fetch_snapshot(self, checkpoint: Optional[str]) -> Snapshot:
        ...

    async def fetch_comments(self, task_id: str) -> List[Comment]:
        ...


@runtime_checkable
class WriteClient(Protocol):
    async def create_task(self, draft: TaskDraft) -> Task:
        ...

    async def update_task(self, task_id: str, changes: Dict[str, Any]) -> Task:
        ...

    async def delete_task(self, task_id: str) -> bool:
        ...

    async def complete_task(self, task_id: str) -> bool:
        ...

    async def reopen_task(self, task_id: str) -> bool:
        ...

    async def add_comment(self, task_id: str, content: str) -> Comment:
        ...


__all__ = ["ReadClient", "Snapshot", "TaskDraft", "WriteClient"]

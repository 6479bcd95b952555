"""Write path for tasks.

In connected mode every mutation goes to the remote first and the confirmed
result is upserted into the mirror. In standalone mode, and for tasks that
were never pushed, writes stay local.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from core.priorities import normalize_priority
from datetime_utils import utc_now
from models.comment import Comment
from models.task import LOCAL_ID_PREFIX, Task
from services.errors import NotFound, TaskMirrorError
from services.remote import TaskDraft, WriteClient
from storage.config import SYNC_MODE_CONNECTED, load_config
from storage.queries import TaskQuery
from storage.store import MirrorStore


logger = logging.getLogger("taskmirror.tasks")

EDITABLE_FIELDS = frozenset(
    {"content", "description", "project_id", "priority", "labels", "due_string", "due_date"}
)


def new_local_id() -> str:
    return f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}"


def _apply_changes(task: Task, changes: Dict[str, Any]) -> Task:
    for key, value in changes.items():
        setattr(task, key, value)
    if "due_string" in changes and changes["due_string"]:
        task.due_date = None
        task.due_datetime = None
    if "due_date" in changes:
        task.due_string = None
        task.due_datetime = None
    return task.refresh_hash()


class TaskService:
    def __init__(
        self,
        store: MirrorStore,
        writer: Optional[WriteClient] = None,
        *,
        mode_source: Optional[Callable[[], str]] = None,
    ) -> None:
        self.store = store
        self.writer = writer
        self._mode_source = mode_source or (lambda: load_config().sync_mode)
        self._listeners: Dict[str, set] = {
            "after_create": set(),
            "after_update": set(),
            "after_delete": set(),
        }

    # ------------------------------------------------------------------
    # Listeners
    def subscribe(self, event: str, callback) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unsupported event: {event}")
        self._listeners[event].add(callback)

    def unsubscribe(self, event: str, callback) -> None:
        if event not in self._listeners:
            return
        self._listeners[event].discard(callback)

    def _emit(self, event: str, task_id: str) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(task_id)
            except Exception:
                logger.exception("Listener for %s failed", event)

    @property
    def connected(self) -> bool:
        return self.writer is not None and self._mode_source() == SYNC_MODE_CONNECTED

    def _remote_for(self, task: Task) -> Optional[WriteClient]:
        if task.is_local or not self.connected:
            return None
        return self.writer

    async def _confirm(self, task: Task) -> Task:
        now = utc_now()
        await self.store.save_tasks([task], synced_at=now)
        await self.store.save_last_synced_state(task, now)
        return task

    async def _require(self, task_id: str) -> Task:
        task = await self.store.get_task(task_id)
        if task is None:
            raise NotFound(f"Task {task_id} is not in the mirror")
        return task

    # ------------------------------------------------------------------
    # Queries
    async def get(self, task_id: str) -> Optional[Task]:
        return await self.store.get_task(task_id)

    async def list(self, query: Optional[TaskQuery] = None) -> List[Task]:
        return await self.store.list_tasks(query)

    # ------------------------------------------------------------------
    # Mutations
    async def add(
        self,
        content: str,
        *,
        description: str = "",
        project_id: Optional[str] = None,
        priority: Optional[int] = None,
        labels: Optional[List[str]] = None,
        due_string: Optional[str] = None,
        due_date: Optional[str] = None,
    ) -> Task:
        content = content.strip()
        if not content:
            raise ValueError("Task content must not be empty")
        if self.connected:
            draft = TaskDraft(
                content=content,
                description=description or None,
                project_id=project_id,
                priority=normalize_priority(priority) if priority is not None else None,
                labels=labels,
                due_string=due_string,
                due_date=due_date,
            )
            task = await self._confirm(await self.writer.create_task(draft))
        else:
            task = Task(
                id=new_local_id(),
                content=content,
                description=description,
                project_id=project_id,
                priority=normalize_priority(priority),
                labels=list(labels or []),
                due_string=due_string,
                due_date=None if due_string else due_date,
                created_at=utc_now(),
            ).refresh_hash()
            await self.store.save_tasks([task])
        logger.info("Created task %s", task.id)
        self._emit("after_create", task.id)
        return task

    async def update(self, task_id: str, **changes: Any) -> Task:
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported task fields: {', '.join(sorted(unknown))}")
        if "priority" in changes:
            changes["priority"] = normalize_priority(changes["priority"])

        task = await self._require(task_id)
        writer = self._remote_for(task)
        if writer is not None:
            confirmed = await writer.update_task(task_id, changes)
            task = await self._confirm(confirmed)
        else:
            task = _apply_changes(task, changes)
            await self.store.save_tasks([task])
        self._emit("after_update", task.id)
        return task

    async def complete(self, task_id: str) -> Task:
        return await self._set_completed(task_id, True)

    async def reopen(self, task_id: str) -> Task:
        return await self._set_completed(task_id, False)

    async def _set_completed(self, task_id: str, completed: bool) -> Task:
        task = await self._require(task_id)
        writer = self._remote_for(task)
        if writer is not None:
            if completed:
                await writer.complete_task(task_id)
            else:
                await writer.reopen_task(task_id)
        task.is_completed = completed
        task.completed_at = utc_now() if completed else None
        if writer is not None:
            await self._confirm(task)
        else:
            await self.store.save_tasks([task])
        self._emit("after_update", task.id)
        return task

    async def delete(self, task_id: str) -> bool:
        task = await self._require(task_id)
        writer = self._remote_for(task)
        if writer is not None:
            try:
                await writer.delete_task(task_id)
            except NotFound:
                logger.info("Task %s already gone remotely", task_id)
        self._emit("after_delete", task_id)
        return await self.store.delete_task(task_id)

    async def add_comment(self, task_id: str, content: str) -> Comment:
        task = await self._require(task_id)
        writer = self._remote_for(task)
        if writer is None:
            raise TaskMirrorError("Comments can only be added to tasks on the remote service")
        comment = await writer.add_comment(task_id, content)
        logger.info("Comment %s added to task %s", comment.id, task_id)
        return comment


__all__ = ["EDITABLE_FIELDS", "TaskService", "new_local_id"]

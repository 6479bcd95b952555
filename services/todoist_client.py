"""Async client for the Todoist Sync and REST APIs.

One instance implements both :class:`services.remote.ReadClient` (a single
``/sync`` POST per snapshot, comments inline) and
:class:`services.remote.WriteClient` (one REST call per mutation, never
retried here).
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

import httpx

from core.priorities import normalize_priority
from core.settings import FULL_SYNC_TOKEN, REMOTE, SYNC, RemoteSettings
from datetime_utils import parse_rfc3339
from models.comment import Comment
from models.project import Label, Project
from models.task import Task
from services.errors import (
    AuthError,
    NotFound,
    SyncProtocolError,
    SyncUnavailable,
    TaskMirrorError,
)
from services.remote import Snapshot, TaskDraft


logger = logging.getLogger("taskmirror.remote")


def raise_for_status(response: httpx.Response, what: str) -> None:
    status = response.status_code
    if status < 400:
        return
    if status in (401, 403):
        raise AuthError(f"{what}: credentials rejected (HTTP {status})", status=status)
    if status == 404:
        raise NotFound(f"{what}: not found", status=status)
    if status in SYNC.retryable_status or status >= 500:
        raise SyncUnavailable(f"{what}: remote unavailable (HTTP {status})", status=status)
    raise TaskMirrorError(f"{what}: rejected with HTTP {status}", status=status)


def _require_list(payload: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
    value = payload.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, dict) for item in value):
        raise SyncProtocolError(f"Snapshot field '{key}' is not a list of objects")
    return value


def _require_id(record: Dict[str, Any], kind: str) -> str:
    value = record.get("id")
    if value is None or value == "":
        raise SyncProtocolError(f"{kind} record without id")
    return str(value)


# ----------------------------------------------------------------------
# Payload conversion
def task_from_item(item: Dict[str, Any]) -> Task:
    due = item.get("due") or None
    if due is not None and not isinstance(due, dict):
        raise SyncProtocolError("Task due field is not an object")
    labels = item.get("labels") or []
    if not isinstance(labels, list):
        raise SyncProtocolError("Task labels field is not a list")

    task = Task(
        id=_require_id(item, "Task"),
        content=str(item.get("content") or ""),
        description=str(item.get("description") or ""),
        project_id=str(item["project_id"]) if item.get("project_id") else None,
        parent_id=str(item["parent_id"]) if item.get("parent_id") else None,
        priority=normalize_priority(item.get("priority")),
        labels=[str(label) for label in labels],
        due_date=(due or {}).get("date"),
        due_datetime=parse_rfc3339((due or {}).get("datetime")),
        due_string=(due or {}).get("string"),
        due_timezone=(due or {}).get("timezone"),
        due_is_recurring=bool((due or {}).get("is_recurring", False)),
        is_completed=bool(item.get("checked") or item.get("is_completed")),
        completed_at=parse_rfc3339(item.get("completed_at")),
        created_at=parse_rfc3339(item.get("added_at") or item.get("created_at")),
        raw_data=dict(item),
    )
    return task.refresh_hash()


def project_from_payload(record: Dict[str, Any]) -> Project:
    return Project(
        id=_require_id(record, "Project"),
        name=str(record.get("name") or ""),
        color=record.get("color"),
        parent_id=str(record["parent_id"]) if record.get("parent_id") else None,
        order=record.get("child_order", record.get("order")),
        is_favorite=bool(record.get("is_favorite", False)),
        is_inbox_project=bool(record.get("inbox_project", record.get("is_inbox_project", False))),
        raw_data=dict(record),
    )


def label_from_payload(record: Dict[str, Any]) -> Label:
    return Label(
        id=_require_id(record, "Label"),
        name=str(record.get("name") or ""),
        color=record.get("color"),
        order=record.get("item_order", record.get("order")),
        is_favorite=bool(record.get("is_favorite", False)),
    )


def comment_from_note(note: Dict[str, Any]) -> Comment:
    attachment = note.get("file_attachment")
    return Comment(
        id=_require_id(note, "Comment"),
        task_id=str(note.get("item_id") or note.get("task_id") or "") or None,
        project_id=note.get("project_id"),
        content=str(note.get("content") or ""),
        posted_at=note.get("posted_at"),
        attachment=attachment if isinstance(attachment, dict) else None,
    )


def parse_snapshot(payload: Any, requested_token: str) -> Snapshot:
    """Turn a decoded ``/sync`` response into a :class:`Snapshot`."""

    if not isinstance(payload, dict):
        raise SyncProtocolError("Snapshot payload is not an object")
    token = payload.get("sync_token")
    if not isinstance(token, str) or not token:
        raise SyncProtocolError("Snapshot payload has no sync_token")
    full_sync = payload.get("full_sync")
    if full_sync is None:
        full_sync = requested_token == FULL_SYNC_TOKEN
    if not isinstance(full_sync, bool):
        raise SyncProtocolError("Snapshot full_sync flag is not a boolean")

    snapshot = Snapshot(sync_token=token, is_full_sync=full_sync)

    for item in _require_list(payload, "items"):
        if item.get("is_deleted"):
            snapshot.deleted_task_ids.append(_require_id(item, "Task"))
            continue
        task = task_from_item(item)
        snapshot.tasks.append(task)
        snapshot.comments_by_task_id.setdefault(task.id, [])

    for record in _require_list(payload, "projects"):
        if record.get("is_deleted") or record.get("is_archived"):
            snapshot.deleted_project_ids.append(_require_id(record, "Project"))
            continue
        snapshot.projects.append(project_from_payload(record))

    for record in _require_list(payload, "labels"):
        if record.get("is_deleted"):
            snapshot.deleted_label_ids.append(_require_id(record, "Label"))
            continue
        snapshot.labels.append(label_from_payload(record))

    for note in _require_list(payload, "notes"):
        if note.get("is_deleted"):
            snapshot.deleted_comment_ids.append(_require_id(note, "Comment"))
            continue
        comment = comment_from_note(note)
        if not comment.task_id:
            continue
        snapshot.comments_by_task_id.setdefault(comment.task_id, []).append(comment)

    return snapshot


def _decode(response: httpx.Response, what: str) -> Any:
    try:
        return response.json()
    except (json.JSONDecodeError, ValueError) as exc:
        raise SyncProtocolError(f"{what}: response is not valid JSON") from exc


class TodoistClient:
    """Remote adapter implementing both the read and the write capability."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        settings: RemoteSettings = REMOTE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key or settings.api_key()
        self.settings = settings
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    # ------------------------------------------------------------------
    # Initialisation helpers
    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        if not self.api_key:
            raise AuthError("Todoist API key is not configured")
        self._client = httpx.AsyncClient(
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.settings.timeout_sec,
            transport=self._transport,
        )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "TodoistClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(self, method: str, url: str, *, what: str, **kwargs) -> httpx.Response:
        client = self._ensure_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise SyncUnavailable(f"{what}: request timed out") from exc
        except httpx.TransportError as exc:
            raise SyncUnavailable(f"{what}: {exc.__class__.__name__}: {exc}") from exc
        except httpx.DecodingError as exc:
            raise SyncProtocolError(f"{what}: undecodable response body: {exc}") from exc
        except httpx.HTTPError as exc:
            raise SyncUnavailable(f"{what}: {exc.__class__.__name__}: {exc}") from exc
        raise_for_status(response, what)
        return response

    def _url(self, path: str) -> str:
        return f"{self.settings.api_url.rstrip('/')}/{path.lstrip('/')}"

    # ------------------------------------------------------------------
    # Read capability
    async def fetch_snapshot(self, checkpoint: Optional[str]) -> Snapshot:
        token = checkpoint or FULL_SYNC_TOKEN
        mode = "full" if token == FULL_SYNC_TOKEN else "incremental"
        logger.info("Requesting %s snapshot", mode)
        response = await self._request(
            "POST",
            self.settings.sync_url,
            what="sync",
            data={
                "sync_token": token,
                "resource_types": json.dumps(list(self.settings.resource_types)),
            },
        )
        snapshot = parse_snapshot(_decode(response, "sync"), token)
        logger.info(
            "Snapshot received: %d tasks, %d projects, %d labels, %d tasks with comments (full=%s)",
            len(snapshot.tasks),
            len(snapshot.projects),
            len(snapshot.labels),
            sum(1 for comments in snapshot.comments_by_task_id.values() if comments),
            snapshot.is_full_sync,
        )
        return snapshot

    async def fetch_comments(self, task_id: str) -> List[Comment]:
        comments: List[Comment] = []
        params: Dict[str, Any] = {"task_id": task_id}
        while True:
            response = await self._request(
                "GET", self._url("comments"), what=f"comments for {task_id}", params=params
            )
            payload = _decode(response, "comments")
            if isinstance(payload, list):
                records: Iterable[Any] = payload
                cursor = None
            elif isinstance(payload, dict):
                records = payload.get("results") or []
                cursor = payload.get("next_cursor")
            else:
                raise SyncProtocolError("comments: unexpected payload")
            for record in records:
                if isinstance(record, dict) and not record.get("is_deleted"):
                    comments.append(comment_from_note(record))
            if not cursor:
                break
            params = {"task_id": task_id, "cursor": cursor}
        return comments

    async def test_connection(self) -> bool:
        try:
            await self._request(
                "POST",
                self.settings.sync_url,
                what="connection test",
                data={"sync_token": FULL_SYNC_TOKEN, "resource_types": json.dumps(["user"])},
            )
        except TaskMirrorError as exc:
            logger.warning("Connection test failed: %s", exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Write capability
    async def create_task(self, draft: TaskDraft) -> Task:
        response = await self._request(
            "POST", self._url("tasks"), what="create task", json=draft.as_payload()
        )
        task = task_from_item(_decode(response, "create task"))
        logger.info("Created remote task %s", task.id)
        return task

    async def update_task(self, task_id: str, changes: Dict[str, Any]) -> Task:
        response = await self._request(
            "POST", self._url(f"tasks/{task_id}"), what=f"update task {task_id}", json=changes
        )
        return task_from_item(_decode(response, "update task"))

    async def delete_task(self, task_id: str) -> bool:
        await self._request("DELETE", self._url(f"tasks/{task_id}"), what=f"delete task {task_id}")
        return True

    async def complete_task(self, task_id: str) -> bool:
        await self._request(
            "POST", self._url(f"tasks/{task_id}/close"), what=f"complete task {task_id}"
        )
        return True

    async def reopen_task(self, task_id: str) -> bool:
        await self._request(
            "POST", self._url(f"tasks/{task_id}/reopen"), what=f"reopen task {task_id}"
        )
        return True

    async def add_comment(self, task_id: str, content: str) -> Comment:
        response = await self._request(
            "POST",
            self._url("comments"),
            what=f"comment on {task_id}",
            json={"task_id": task_id, "content": content},
        )
        return comment_from_note(_decode(response, "add comment"))


__all__ = [
    "TodoistClient",
    "comment_from_note",
    "label_from_payload",
    "parse_snapshot",
    "project_from_payload",
    "raise_for_status",
    "task_from_item",
]

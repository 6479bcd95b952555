import asyncio
import os
import tempfile
from typing import Dict, List, Optional

# Keep logs and config of the code under test out of the real user data dir.
os.environ.setdefault("TASKMIRROR_DATA_DIR", tempfile.mkdtemp(prefix="taskmirror-tests-"))

import pytest
import pytest_asyncio

from models.comment import Comment
from models.task import Task
from services.errors import NotFound
from services.remote import Snapshot, TaskDraft
from storage.db import create_engine_for, init_db, session_factory
from storage.store import MirrorStore


_DEFAULT = object()


def make_task(task_id: str, content=_DEFAULT, **fields) -> Task:
    task = Task(id=task_id, content=f"Task {task_id}" if content is _DEFAULT else content, **fields)
    if task.content is not None:
        task.refresh_hash()
    return task


def make_comment(comment_id: str, task_id: str, content: str = "note", posted_at: str = "2024-01-01T00:00:00Z") -> Comment:
    return Comment(id=comment_id, task_id=task_id, content=content, posted_at=posted_at)


class FakeRemote:
    """In-memory remote implementing both the read and write capability."""

    def __init__(self, tasks: Optional[Dict[str, dict]] = None):
        # task id -> constructor kwargs; fresh Task objects are built per read.
        self.tasks: Dict[str, dict] = dict(tasks or {})
        self.snapshot_comments: Dict[str, List[Comment]] = {}
        self.remote_comments: Dict[str, List[Comment]] = {}
        self.comment_errors: Dict[str, Exception] = {}
        self.changed_ids: List[str] = []
        self.deleted_ids: List[str] = []
        self.deleted_comment_ids: List[str] = []
        self.expired = False
        self.fail_with: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.next_token: Optional[str] = None
        self.snapshot_calls: List[Optional[str]] = []
        self.comment_calls: List[str] = []
        self.created: List[TaskDraft] = []
        self.updated: List[tuple] = []
        self.completed: List[str] = []
        self.reopened: List[str] = []
        self.deleted: List[str] = []
        self.comments_added: List[tuple] = []
        self._counter = 0

    def add(self, task_id: str, content: Optional[str] = None, **fields) -> None:
        self.tasks[task_id] = {"content": content if content is not None else f"Task {task_id}", **fields}

    def _build(self, task_id: str) -> Task:
        return make_task(task_id, **self.tasks[task_id])

    # ----- read -----
    async def fetch_snapshot(self, checkpoint):
        self.snapshot_calls.append(checkpoint)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        full = checkpoint is None or self.expired
        ids = list(self.tasks) if full else [i for i in self.changed_ids if i in self.tasks]
        tasks = [self._build(task_id) for task_id in ids]
        self._counter += 1
        token = self.next_token or f"tok{self._counter}"
        return Snapshot(
            tasks=tasks,
            comments_by_task_id={t.id: list(self.snapshot_comments.get(t.id, [])) for t in tasks},
            sync_token=token,
            is_full_sync=full,
            deleted_task_ids=[] if full else list(self.deleted_ids),
            deleted_comment_ids=list(self.deleted_comment_ids),
        )

    async def fetch_comments(self, task_id):
        self.comment_calls.append(task_id)
        if task_id in self.comment_errors:
            raise self.comment_errors[task_id]
        return list(self.remote_comments.get(task_id, []))

    # ----- write -----
    async def create_task(self, draft):
        self.created.append(draft)
        task_id = f"r{len(self.created)}"
        self.tasks[task_id] = {
            "content": draft.content,
            "description": draft.description or "",
            "project_id": draft.project_id,
            "priority": draft.priority or 1,
            "labels": list(draft.labels or []),
        }
        return self._build(task_id)

    async def update_task(self, task_id, changes):
        if task_id not in self.tasks:
            raise NotFound(f"{task_id} missing", status=404)
        self.updated.append((task_id, dict(changes)))
        self.tasks[task_id].update(changes)
        return self._build(task_id)

    async def delete_task(self, task_id):
        if task_id not in self.tasks:
            raise NotFound(f"{task_id} missing", status=404)
        self.deleted.append(task_id)
        del self.tasks[task_id]
        return True

    async def complete_task(self, task_id):
        self.completed.append(task_id)
        self.tasks.setdefault(task_id, {"content": f"Task {task_id}"})["is_completed"] = True
        return True

    async def reopen_task(self, task_id):
        self.reopened.append(task_id)
        self.tasks.setdefault(task_id, {"content": f"Task {task_id}"})["is_completed"] = False
        return True

    async def add_comment(self, task_id, content):
        self.comments_added.append((task_id, content))
        return Comment(id=f"c{len(self.comments_added)}", task_id=task_id, content=content)


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_engine_for(tmp_path / "mirror.db")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def store(engine):
    return MirrorStore(session_factory(engine))


@pytest.fixture
def remote():
    return FakeRemote()

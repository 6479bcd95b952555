"""Change detection between consecutive remote snapshots.

The remote service is the source of truth. After each sync we compare the
payload last recorded in ``provider_sync_state`` with the task as it arrived
now; a task whose project or labels moved since the AI last looked at it was
re-filed by hand, so its classification is marked ``manual``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from models.field_metadata import SOURCE_MANUAL
from models.task import Task
from services.errors import NotFound


logger = logging.getLogger("taskmirror.reconciliation")

TRACKED_FIELDS = (
    "content",
    "description",
    "project_id",
    "parent_id",
    "priority",
    "labels",
    "due_date",
    "due_string",
    "due_is_recurring",
    "is_completed",
)
FILING_FIELDS = frozenset({"project_id", "labels"})


@dataclass
class TaskChange:
    task: Task
    changed_fields: List[str] = field(default_factory=list)

    @property
    def content_changed(self) -> bool:
        return "content" in self.changed_fields

    @property
    def refiled(self) -> bool:
        return any(name in FILING_FIELDS for name in self.changed_fields)


@dataclass
class SnapshotChanges:
    new: List[Task] = field(default_factory=list)
    changed: List[TaskChange] = field(default_factory=list)

    @property
    def new_task_ids(self) -> List[str]:
        return [task.id for task in self.new]

    @property
    def changed_task_ids(self) -> List[str]:
        return [change.task.id for change in self.changed]


def changed_fields(previous: Optional[Mapping[str, Any]], task: Task) -> List[str]:
    if previous is None:
        return list(TRACKED_FIELDS)
    current = task.state_payload()
    return [name for name in TRACKED_FIELDS if previous.get(name) != current.get(name)]


def diff_snapshot(
    previous_states: Mapping[str, Optional[Mapping[str, Any]]],
    tasks: Iterable[Task],
) -> SnapshotChanges:
    """Split snapshot tasks into new ones and ones that differ from the last sync."""

    changes = SnapshotChanges()
    for task in tasks:
        if task.id not in previous_states:
            changes.new.append(task)
            continue
        diff = changed_fields(previous_states[task.id], task)
        if diff:
            changes.changed.append(TaskChange(task=task, changed_fields=diff))
    return changes


async def record_manual_refiles(store, changes: SnapshotChanges, observed_at: datetime) -> int:
    """Flag AI classifications the user overrode by moving the task.

    Only tasks that already carry a classification are touched; the write
    goes through the forward-only metadata guard like any other.
    """

    marked = 0
    for change in changes.changed:
        if not change.refiled:
            continue
        try:
            metadata = await store.get_task_metadata(change.task.id)
            if "classification_source" not in metadata and "recommended_category" not in metadata:
                continue
            written = await store.save_field_values(
                change.task.id,
                {"classification_source": SOURCE_MANUAL, "recommendation_applied": True},
                observed_at,
                source=SOURCE_MANUAL,
                content_hash=change.task.content_hash,
            )
        except NotFound:
            continue
        if any(written.values()):
            marked += 1
            logger.info(
                "Task %s re-filed manually (%s)",
                change.task.id,
                ", ".join(name for name in change.changed_fields if name in FILING_FIELDS),
            )
    return marked


__all__ = [
    "FILING_FIELDS",
    "SnapshotChanges",
    "TRACKED_FIELDS",
    "TaskChange",
    "changed_fields",
    "diff_snapshot",
    "record_manual_refiles",
]

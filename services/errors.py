"""Error taxonomy shared by the remote clients, the store and the sync engine."""
from __future__ import annotations

from typing import Optional


class TaskMirrorError(Exception):
    """Base class for every error raised by the sync engine."""

    retryable = False

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class SyncUnavailable(TaskMirrorError):
    """Remote unreachable or overloaded; retry on the next triggered sync."""

    retryable = True


class SyncProtocolError(TaskMirrorError):
    """The remote answered with a payload we cannot interpret."""


class AuthError(TaskMirrorError):
    """Credentials missing or rejected; requires reconfiguration."""


class NotFound(TaskMirrorError):
    """The target entity does not exist (remotely or in the mirror)."""


class StaleFieldWrite(TaskMirrorError):
    """A classification result older than the stored one."""

    def __init__(self, task_id: str, field_name: str) -> None:
        super().__init__(f"Stale write for {task_id}.{field_name} dropped")
        self.task_id = task_id
        self.field_name = field_name


__all__ = [
    "AuthError",
    "NotFound",
    "StaleFieldWrite",
    "SyncProtocolError",
    "SyncUnavailable",
    "TaskMirrorError",
]

"""Comment cache fed by sync snapshots, with a per-task remote fallback."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from core.settings import SYNC
from models.comment import Comment
from models.task import Task
from services.errors import AuthError, SyncUnavailable, TaskMirrorError
from services.remote import ReadClient, Snapshot


logger = logging.getLogger("taskmirror.comments")


@dataclass
class TaskWithComments:
    task: Task
    comments: List[Comment] = field(default_factory=list)


@dataclass
class ResolverStats:
    served_from_cache: int = 0
    fetched_remotely: int = 0
    failed: int = 0

    @property
    def remote_calls(self) -> int:
        return self.fetched_remotely + self.failed

    def as_dict(self) -> Dict[str, int]:
        return {
            "served_from_cache": self.served_from_cache,
            "fetched_remotely": self.fetched_remotely,
            "failed": self.failed,
        }


class CommentCache:
    """Comments keyed by task id, as carried by the latest snapshots.

    A task id present in the cache with an empty list means "known to have no
    comments", which is different from a miss.
    """

    def __init__(self) -> None:
        self._by_task: Dict[str, Dict[str, Comment]] = {}

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._by_task

    def __len__(self) -> int:
        return len(self._by_task)

    def get(self, task_id: str) -> Optional[List[Comment]]:
        entry = self._by_task.get(task_id)
        if entry is None:
            return None
        return sorted(entry.values(), key=lambda comment: (comment.posted_at or "", comment.id))

    def put(self, task_id: str, comments: Iterable[Comment]) -> None:
        self._by_task[task_id] = {comment.id: comment for comment in comments}

    def clear(self) -> None:
        self._by_task.clear()

    def apply_snapshot(self, snapshot: Snapshot) -> None:
        if snapshot.is_full_sync:
            self._by_task = {}
        for task_id, comments in snapshot.comments_by_task_id.items():
            entry = self._by_task.setdefault(task_id, {})
            for comment in comments:
                entry[comment.id] = comment
        if snapshot.deleted_comment_ids:
            gone = set(snapshot.deleted_comment_ids)
            for entry in self._by_task.values():
                for comment_id in gone.intersection(entry):
                    del entry[comment_id]
        for task_id in snapshot.deleted_task_ids:
            self._by_task.pop(task_id, None)


class CommentResolver:
    """Attach comments to tasks, cache first."""

    def __init__(
        self,
        reader: ReadClient,
        cache: Optional[CommentCache] = None,
        *,
        fetch_delay_sec: float = SYNC.comment_fetch_delay_sec,
    ) -> None:
        self.reader = reader
        self.cache = cache if cache is not None else CommentCache()
        self.fetch_delay_sec = fetch_delay_sec
        self.stats = ResolverStats()

    def reset_stats(self) -> None:
        self.stats = ResolverStats()

    async def fetch_comments_for_tasks(self, tasks: Iterable[Task]) -> List[TaskWithComments]:
        tasks = list(tasks)
        results: List[TaskWithComments] = []
        misses: List[int] = []
        for index, task in enumerate(tasks):
            cached = self.cache.get(task.id)
            if cached is not None:
                self.stats.served_from_cache += 1
                results.append(TaskWithComments(task, cached))
            else:
                results.append(TaskWithComments(task))
                misses.append(index)

        if misses:
            logger.info(
                "Fetching comments individually for %d of %d tasks", len(misses), len(tasks)
            )
        for position, index in enumerate(misses):
            task = tasks[index]
            try:
                comments = await self.reader.fetch_comments(task.id)
            except AuthError:
                raise
            except SyncUnavailable as exc:
                if exc.status == 429:
                    remaining = len(misses) - position
                    self.stats.failed += remaining
                    logger.warning(
                        "Rate limited fetching comments; %d tasks left without comments", remaining
                    )
                    break
                self.stats.failed += 1
                logger.warning("Failed to fetch comments for task %s: %s", task.id, exc)
                continue
            except TaskMirrorError as exc:
                self.stats.failed += 1
                logger.warning("Failed to fetch comments for task %s: %s", task.id, exc)
                continue

            self.stats.fetched_remotely += 1
            self.cache.put(task.id, comments)
            results[index].comments = self.cache.get(task.id) or []
            if self.fetch_delay_sec and position < len(misses) - 1:
                await asyncio.sleep(self.fetch_delay_sec)
        return results


__all__ = ["CommentCache", "CommentResolver", "ResolverStats", "TaskWithComments"]

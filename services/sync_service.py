from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from logging.handlers import RotatingFileHandler
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from core.settings import LOGGING, SYNC, SyncSettings
from datetime_utils import elapsed_ms, to_rfc3339_utc, utc_now
from models.task import Task
from services.comments import CommentCache
from services.errors import TaskMirrorError
from services.reconciliation import diff_snapshot, record_manual_refiles
from services.remote import ReadClient
from storage.store import MirrorStore


SYNC_IN_PROGRESS = "sync already in progress"

Callback = Callable[..., Union[None, Awaitable[None]]]


def _ensure_logger() -> logging.Logger:
    logger = logging.getLogger("taskmirror.sync")
    if not logger.handlers:
        LOGGING.sync_log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            LOGGING.sync_log_path,
            maxBytes=LOGGING.max_bytes,
            backupCount=LOGGING.backup_count,
            encoding="utf-8",
        )
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(LOGGING.level)
    return logger


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    FAILED = "failed"


@dataclass
class SyncResult:
    success: bool
    task_count: int = 0
    project_count: int = 0
    label_count: int = 0
    duration_ms: int = 0
    is_full_sync: bool = False
    new_task_ids: List[str] = field(default_factory=list)
    changed_task_ids: List[str] = field(default_factory=list)
    deleted_task_ids: List[str] = field(default_factory=list)
    error: Optional[str] = None
    rejected: bool = False
    timestamp: datetime = field(default_factory=utc_now)

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = to_rfc3339_utc(self.timestamp)
        return data


class SyncOrchestrator:
    """Runs one sync cycle at a time against the mirror.

    The checkpoint only moves inside :meth:`MirrorStore.apply_snapshot`, so a
    cycle that fails before or during that transaction leaves it untouched
    and the next trigger retries from the same point.
    """

    def __init__(
        self,
        reader: ReadClient,
        store: MirrorStore,
        *,
        comment_cache: Optional[CommentCache] = None,
        settings: SyncSettings = SYNC,
        on_new_tasks: Optional[Callback] = None,
        on_changed_tasks: Optional[Callback] = None,
        on_sync_complete: Optional[Callback] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.reader = reader
        self.store = store
        self.comment_cache = comment_cache if comment_cache is not None else CommentCache()
        self.settings = settings
        self.on_new_tasks = on_new_tasks
        self.on_changed_tasks = on_changed_tasks
        self.on_sync_complete = on_sync_complete
        self.logger = logger or _ensure_logger()

        self._lock = asyncio.Lock()
        self._state = SyncState.IDLE
        self.last_error: Optional[str] = None
        self.last_failure_at: Optional[datetime] = None
        self.consecutive_failures = 0
        self.last_result: Optional[SyncResult] = None

    # ------------------------------------------------------------------
    # State
    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    def retry_delay_sec(self) -> int:
        if self.consecutive_failures <= 0:
            return 0
        delay = self.settings.backoff_base_sec * 2 ** (self.consecutive_failures - 1)
        return min(self.settings.backoff_max_sec, delay)

    @property
    def next_retry_at(self) -> Optional[datetime]:
        if self.last_failure_at is None or self.consecutive_failures <= 0:
            return None
        return self.last_failure_at + timedelta(seconds=self.retry_delay_sec())

    def retry_due(self, now: Optional[datetime] = None) -> bool:
        target = self.next_retry_at
        return target is None or (now or utc_now()) >= target

    # ------------------------------------------------------------------
    # Public API
    async def sync_now(self, *, force_full: bool = False) -> SyncResult:
        if self._lock.locked():
            self.logger.info("Sync request rejected: another sync is running")
            return SyncResult(success=False, error=SYNC_IN_PROGRESS, rejected=True)

        async with self._lock:
            self._state = SyncState.SYNCING
            try:
                result = await self._run_cycle(force_full)
            except asyncio.CancelledError:
                self._record_failure("sync cancelled")
                raise
            self.last_result = result
        if result.success:
            await self._notify(self.on_sync_complete, result)
        return result

    async def full_resync(self) -> SyncResult:
        if self._lock.locked():
            return SyncResult(success=False, error=SYNC_IN_PROGRESS, rejected=True)
        self.logger.info("Force full resync requested")
        return await self.sync_now(force_full=True)

    async def status(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "hasCheckpoint": bool(await self.store.get_checkpoint()),
            "lastSyncAt": to_rfc3339_utc(await self.store.get_last_sync_time()),
            "lastError": self.last_error,
            "consecutiveFailures": self.consecutive_failures,
            "nextRetryAt": to_rfc3339_utc(self.next_retry_at),
            "cachedCommentTasks": len(self.comment_cache),
        }

    # ------------------------------------------------------------------
    # Cycle
    async def _run_cycle(self, force_full: bool) -> SyncResult:
        started = utc_now()
        try:
            checkpoint = None if force_full else await self.store.get_checkpoint()
            self.logger.info(
                "Starting %s sync", "incremental" if checkpoint else "full"
            )
            snapshot = await self.reader.fetch_snapshot(checkpoint)
            previous = await self.store.apply_snapshot(snapshot, started)
        except (TaskMirrorError, SQLAlchemyError) as exc:
            return self._failed(started, exc)
        except Exception as exc:
            self.logger.exception("Unexpected error during sync")
            return self._failed(started, exc)

        self.comment_cache.apply_snapshot(snapshot)
        changes = diff_snapshot(previous, snapshot.tasks)
        try:
            await record_manual_refiles(self.store, changes, started)
        except (TaskMirrorError, SQLAlchemyError) as exc:
            self.logger.warning("Manual re-file detection failed: %s", exc)
        except Exception:
            self.logger.exception("Manual re-file detection failed")

        result = SyncResult(
            success=True,
            task_count=len(snapshot.tasks),
            project_count=len(snapshot.projects),
            label_count=len(snapshot.labels),
            duration_ms=elapsed_ms(started),
            is_full_sync=snapshot.is_full_sync,
            new_task_ids=changes.new_task_ids,
            changed_task_ids=changes.changed_task_ids,
            deleted_task_ids=list(snapshot.deleted_task_ids),
            timestamp=started,
        )
        self._state = SyncState.IDLE
        self.last_error = None
        self.last_failure_at = None
        self.consecutive_failures = 0
        self.logger.info(
            "Sync complete in %dms (1 API call): %d tasks, %d projects, %d labels, "
            "%d new, %d changed, %d deleted (full=%s)",
            result.duration_ms,
            result.task_count,
            result.project_count,
            result.label_count,
            len(result.new_task_ids),
            len(result.changed_task_ids),
            len(result.deleted_task_ids),
            result.is_full_sync,
        )

        if changes.new:
            await self._notify(self.on_new_tasks, list(changes.new))
        if changes.changed:
            changed: List[Task] = [change.task for change in changes.changed]
            await self._notify(self.on_changed_tasks, changed)
        return result

    def _failed(self, started: datetime, exc: Exception) -> SyncResult:
        message = f"{exc.__class__.__name__}: {exc}"
        self._record_failure(message)
        return SyncResult(
            success=False,
            error=message,
            duration_ms=elapsed_ms(started),
            timestamp=started,
        )

    def _record_failure(self, message: str) -> None:
        self._state = SyncState.FAILED
        self.last_error = message
        self.last_failure_at = utc_now()
        self.consecutive_failures += 1
        self.logger.error(
            "Sync failed (%d in a row): %s; next retry in %ss",
            self.consecutive_failures,
            message,
            self.retry_delay_sec(),
        )

    async def _notify(self, callback: Optional[Callback], payload: Any) -> None:
        if callback is None:
            return
        try:
            outcome = callback(payload)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            self.logger.exception("Sync callback %r failed", callback)


__all__ = ["SYNC_IN_PROGRESS", "SyncOrchestrator", "SyncResult", "SyncState"]

"""Orphan detection and per-task merge decisions.

Used when a standalone mirror is connected to the remote service: tasks that
exist on only one side are reported, and the operator decides task by task
whether to import, push or ignore them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from datetime_utils import utc_now
from models.task import Task
from services.errors import NotFound, TaskMirrorError
from services.remote import ReadClient, TaskDraft, WriteClient
from storage.store import MirrorStore


logger = logging.getLogger("taskmirror.merge")


class MergeAction(str, Enum):
    IMPORT_TO_LOCAL = "import_to_local"
    PUSH_TO_REMOTE = "push_to_remote"
    IGNORE = "ignore"


@dataclass
class OrphanReport:
    local_only: List[Task] = field(default_factory=list)
    remote_only: List[Task] = field(default_factory=list)

    @property
    def requires_user_decision(self) -> bool:
        return bool(self.local_only or self.remote_only)

    def as_dict(self) -> Dict[str, object]:
        return {
            "localOnly": [task.id for task in self.local_only],
            "remoteOnly": [task.id for task in self.remote_only],
            "requiresUserDecision": self.requires_user_decision,
        }


@dataclass
class MergeDecision:
    task_id: str
    action: MergeAction
    task: Optional[Task] = None

    def __post_init__(self) -> None:
        self.action = MergeAction(self.action)


@dataclass
class MergeOutcome:
    task_id: str
    action: MergeAction
    success: bool
    result_task_id: Optional[str] = None
    error: Optional[str] = None


class MergeResolver:
    def __init__(self, reader: ReadClient, writer: WriteClient, store: MirrorStore) -> None:
        self.reader = reader
        self.writer = writer
        self.store = store
        self.last_report: Optional[OrphanReport] = None

    async def detect_orphans(self) -> OrphanReport:
        """Compare a fresh full snapshot with the mirror.

        The snapshot is only read; the stored checkpoint is left alone.
        """

        snapshot = await self.reader.fetch_snapshot(None)
        remote_by_id = {task.id: task for task in snapshot.tasks}
        local_ids = await self.store.get_task_ids()

        local_only_ids = sorted(local_ids - remote_by_id.keys())
        remote_only_ids = sorted(remote_by_id.keys() - local_ids)
        report = OrphanReport(
            local_only=await self.store.get_tasks(local_only_ids),
            remote_only=[remote_by_id[task_id] for task_id in remote_only_ids],
        )
        report.local_only.sort(key=lambda task: task.id)
        self.last_report = report
        logger.info(
            "Orphan scan: %d local-only, %d remote-only",
            len(report.local_only),
            len(report.remote_only),
        )
        return report

    async def apply_merge_decisions(self, decisions: Iterable[MergeDecision]) -> List[MergeOutcome]:
        outcomes: List[MergeOutcome] = []
        for decision in decisions:
            try:
                result_id = await self._apply(decision)
            except Exception as exc:
                logger.warning(
                    "Merge decision %s for %s failed: %s",
                    decision.action.value,
                    decision.task_id,
                    exc,
                    exc_info=not isinstance(exc, (TaskMirrorError, SQLAlchemyError)),
                )
                outcomes.append(
                    MergeOutcome(
                        task_id=decision.task_id,
                        action=decision.action,
                        success=False,
                        error=f"{exc.__class__.__name__}: {exc}",
                    )
                )
                continue
            outcomes.append(
                MergeOutcome(
                    task_id=decision.task_id,
                    action=decision.action,
                    success=True,
                    result_task_id=result_id,
                )
            )
        return outcomes

    async def _apply(self, decision: MergeDecision) -> Optional[str]:
        if decision.action is MergeAction.IGNORE:
            # Nothing is recorded: the next scan re-derives orphans from current state.
            logger.info("Ignoring orphan %s", decision.task_id)
            return None
        if decision.action is MergeAction.IMPORT_TO_LOCAL:
            return await self._import_to_local(decision)
        return await self._push_to_remote(decision)

    async def _import_to_local(self, decision: MergeDecision) -> str:
        task = decision.task or self._remote_candidate(decision.task_id)
        if task is None:
            raise NotFound(f"Remote task {decision.task_id} is not part of the last orphan scan")
        now = utc_now()
        await self.store.save_tasks([task], synced_at=now)
        await self.store.save_last_synced_state(task, now)
        logger.info("Imported remote task %s", task.id)
        return task.id

    async def _push_to_remote(self, decision: MergeDecision) -> str:
        local = await self.store.get_task(decision.task_id)
        if local is None:
            raise NotFound(f"Task {decision.task_id} is not in the mirror")
        confirmed = await self.writer.create_task(TaskDraft.from_task(local))
        if local.is_completed and not confirmed.is_completed:
            await self.writer.complete_task(confirmed.id)
            confirmed.is_completed = True
            confirmed.completed_at = local.completed_at or utc_now()
        await self.store.replace_task(local.id, confirmed)
        logger.info("Pushed local task %s as remote task %s", local.id, confirmed.id)
        return confirmed.id

    def _remote_candidate(self, task_id: str) -> Optional[Task]:
        if self.last_report is None:
            return None
        for task in self.last_report.remote_only:
            if task.id == task_id:
                return task
        return None


__all__ = ["MergeAction", "MergeDecision", "MergeOutcome", "MergeResolver", "OrphanReport"]

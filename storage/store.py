"""Local mirror of the remote task service."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from sqlalchemy import delete, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from datetime_utils import ensure_utc, utc_now
from models.field_metadata import (
    METADATA_FIELDS,
    SOURCE_AI,
    FieldMetadata,
    FieldValue,
)
from models.project import Label, Project
from models.sync_state import ProviderSyncState, SyncCheckpoint
from models.task import Task
from services.errors import NotFound, StaleFieldWrite
from services.remote import Snapshot
from storage.db import SessionFactory, get_session
from storage.queries import TaskQuery


logger = logging.getLogger("taskmirror.store")

_CHECKPOINT_ID = 1


def _db_time(value: datetime) -> datetime:
    """Bind as aware UTC; SQLite keeps the UTC wall time, so text order holds."""

    return ensure_utc(value)


def _check_field(field_name: str) -> None:
    if field_name not in METADATA_FIELDS:
        raise ValueError(f"Unknown metadata field: {field_name}")


def _to_value(row: FieldMetadata) -> FieldValue:
    return FieldValue(
        value=row.value,
        classified_at=ensure_utc(row.classified_at),
        source=row.source,
        content_hash=row.content_hash,
    )


def _field_upsert(
    task_id: str,
    field_name: str,
    value: Any,
    classified_at: datetime,
    source: str,
    content_hash: Optional[str],
):
    table = FieldMetadata.__table__
    stmt = sqlite_insert(table).values(
        task_id=task_id,
        field_name=field_name,
        value=value,
        classified_at=_db_time(classified_at),
        source=source,
        content_hash=content_hash,
        updated_at=_db_time(utc_now()),
    )
    return stmt.on_conflict_do_update(
        index_elements=["task_id", "field_name"],
        set_={
            "value": stmt.excluded.value,
            "classified_at": stmt.excluded.classified_at,
            "source": stmt.excluded.source,
            "content_hash": stmt.excluded.content_hash,
            "updated_at": stmt.excluded.updated_at,
        },
        # Forward-only: an equal or older timestamp never replaces the stored row.
        where=stmt.excluded.classified_at > table.c.classified_at,
    )


class MirrorStore:
    """Async facade over the mirror tables.

    Every public method opens its own session; methods that touch more than
    one row commit once at the end so a failure leaves nothing behind.
    """

    def __init__(self, session_factory: Optional[SessionFactory] = None):
        self._session_factory = session_factory or get_session

    # ----- tasks -----
    async def get_task(self, task_id: str) -> Optional[Task]:
        async with self._session_factory() as session:
            return await session.get(Task, task_id)

    async def get_tasks(self, task_ids: Iterable[str]) -> List[Task]:
        ids = list(task_ids)
        if not ids:
            return []
        async with self._session_factory() as session:
            result = await session.exec(select(Task).where(Task.id.in_(ids)))
            return list(result.all())

    async def get_task_ids(self) -> Set[str]:
        async with self._session_factory() as session:
            result = await session.exec(select(Task.id))
            return set(result.all())

    async def list_tasks(self, query: Optional[TaskQuery] = None) -> List[Task]:
        statement = (query or TaskQuery()).statement()
        async with self._session_factory() as session:
            result = await session.exec(statement)
            return list(result.all())

    async def save_tasks(self, tasks: Iterable[Task], synced_at: Optional[datetime] = None) -> int:
        """Upsert a batch of tasks; all rows commit or none do."""

        count = 0
        async with self._session_factory() as session:
            for task in tasks:
                await self._merge_task(session, task, synced_at)
                count += 1
            await session.commit()
        return count

    async def delete_task(self, task_id: str) -> bool:
        async with self._session_factory() as session:
            deleted = await self._delete_tasks(session, [task_id])
            await session.commit()
        return deleted > 0

    async def replace_task(self, old_id: str, task: Task, synced_at: Optional[datetime] = None) -> Task:
        """Swap a local-only record for its remote-confirmed counterpart.

        Field metadata moves to the new id; the old row and its sync state go.
        """

        when = synced_at or utc_now()
        async with self._session_factory() as session:
            if await session.get(Task, old_id) is None:
                raise NotFound(f"Task {old_id} is not in the mirror")
            merged = await self._merge_task(session, task, when)
            await session.exec(
                update(FieldMetadata)
                .where(FieldMetadata.task_id == old_id)
                .values(task_id=task.id)
            )
            await session.exec(delete(ProviderSyncState).where(ProviderSyncState.task_id == old_id))
            await session.exec(delete(Task).where(Task.id == old_id))
            await self._put_sync_state(session, task, when)
            await session.commit()
        logger.info("Replaced local task %s with remote task %s", old_id, task.id)
        return merged

    # ----- projects & labels -----
    async def get_project(self, project_id: str) -> Optional[Project]:
        async with self._session_factory() as session:
            return await session.get(Project, project_id)

    async def get_projects(self) -> List[Project]:
        async with self._session_factory() as session:
            result = await session.exec(select(Project).order_by(Project.order, Project.name))
            return list(result.all())

    async def save_projects(self, projects: Iterable[Project], synced_at: Optional[datetime] = None) -> int:
        count = 0
        async with self._session_factory() as session:
            for project in projects:
                project.last_synced_at = synced_at or project.last_synced_at
                await session.merge(project)
                count += 1
            await session.commit()
        return count

    async def delete_project(self, project_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.exec(delete(Project).where(Project.id == project_id))
            await session.commit()
        return result.rowcount > 0

    async def get_label(self, label_id: str) -> Optional[Label]:
        async with self._session_factory() as session:
            return await session.get(Label, label_id)

    async def get_labels(self) -> List[Label]:
        async with self._session_factory() as session:
            result = await session.exec(select(Label).order_by(Label.order, Label.name))
            return list(result.all())

    async def save_labels(self, labels: Iterable[Label], synced_at: Optional[datetime] = None) -> int:
        count = 0
        async with self._session_factory() as session:
            for label in labels:
                label.last_synced_at = synced_at or label.last_synced_at
                await session.merge(label)
                count += 1
            await session.commit()
        return count

    async def delete_label(self, label_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.exec(delete(Label).where(Label.id == label_id))
            await session.commit()
        return result.rowcount > 0

    # ----- field metadata -----
    async def save_field_metadata(
        self,
        task_id: str,
        field_name: str,
        value: Any,
        classified_at: datetime,
        *,
        source: str = SOURCE_AI,
        content_hash: Optional[str] = None,
        strict: bool = False,
    ) -> bool:
        """Write one field if ``classified_at`` is newer than what is stored.

        Returns ``False`` when the write was dropped as stale. With
        ``strict=True`` a stale write raises :class:`StaleFieldWrite` instead.
        """

        written = await self.save_field_values(
            task_id,
            {field_name: value},
            classified_at,
            source=source,
            content_hash=content_hash,
        )
        if not written[field_name] and strict:
            raise StaleFieldWrite(task_id, field_name)
        return written[field_name]

    async def save_field_values(
        self,
        task_id: str,
        values: Mapping[str, Any],
        classified_at: datetime,
        *,
        source: str = SOURCE_AI,
        content_hash: Optional[str] = None,
    ) -> Dict[str, bool]:
        for field_name in values:
            _check_field(field_name)

        outcome: Dict[str, bool] = {}
        async with self._session_factory() as session:
            if await session.get(Task, task_id) is None:
                raise NotFound(f"Task {task_id} is not in the mirror")
            for field_name, value in values.items():
                result = await session.exec(
                    _field_upsert(task_id, field_name, value, classified_at, source, content_hash)
                )
                outcome[field_name] = result.rowcount > 0
            await session.commit()

        for field_name, written in outcome.items():
            if not written:
                logger.info(
                    "Dropped stale write for %s.%s (classified_at=%s)",
                    task_id,
                    field_name,
                    classified_at.isoformat(),
                )
        return outcome

    async def get_field_metadata(self, task_id: str, field_name: str) -> Optional[FieldValue]:
        _check_field(field_name)
        async with self._session_factory() as session:
            row = await session.get(FieldMetadata, (task_id, field_name))
            return _to_value(row) if row else None

    async def get_task_metadata(self, task_id: str) -> Dict[str, FieldValue]:
        async with self._session_factory() as session:
            result = await session.exec(select(FieldMetadata).where(FieldMetadata.task_id == task_id))
            return {row.field_name: _to_value(row) for row in result.all()}

    async def stale_fields(self, task_id: str) -> List[str]:
        """Fields computed from content the task no longer has."""

        async with self._session_factory() as session:
            task = await session.get(Task, task_id)
            if task is None:
                raise NotFound(f"Task {task_id} is not in the mirror")
            result = await session.exec(
                select(FieldMetadata).where(
                    FieldMetadata.task_id == task_id,
                    FieldMetadata.content_hash.is_not(None),
                    FieldMetadata.content_hash != task.content_hash,
                )
            )
            return sorted(row.field_name for row in result.all())

    # ----- provider sync state -----
    async def get_last_synced_state(self, task_id: str) -> Optional[ProviderSyncState]:
        async with self._session_factory() as session:
            return await session.get(ProviderSyncState, task_id)

    async def save_last_synced_state(self, task: Task, synced_at: Optional[datetime] = None) -> None:
        async with self._session_factory() as session:
            await self._put_sync_state(session, task, synced_at or utc_now())
            await session.commit()

    # ----- checkpoint -----
    async def get_checkpoint(self) -> Optional[str]:
        async with self._session_factory() as session:
            row = await session.get(SyncCheckpoint, _CHECKPOINT_ID)
            return row.token if row else None

    async def get_last_sync_time(self) -> Optional[datetime]:
        async with self._session_factory() as session:
            row = await session.get(SyncCheckpoint, _CHECKPOINT_ID)
            return ensure_utc(row.last_sync_at) if row else None

    async def set_last_sync_time(self, when: Optional[datetime] = None) -> None:
        async with self._session_factory() as session:
            row = await self._checkpoint_row(session)
            row.last_sync_at = _db_time(when or utc_now())
            session.add(row)
            await session.commit()

    async def clear_checkpoint(self) -> None:
        """Forget the sync token; only a forced full resync calls this."""

        async with self._session_factory() as session:
            row = await self._checkpoint_row(session)
            row.token = None
            row.updated_at = _db_time(utc_now())
            session.add(row)
            await session.commit()
        logger.info("Sync checkpoint cleared")

    # ----- snapshot -----
    async def apply_snapshot(
        self, snapshot: Snapshot, synced_at: Optional[datetime] = None
    ) -> Dict[str, Optional[Dict[str, Any]]]:
        """Write a whole snapshot and its checkpoint in one transaction.

        Returns the previously stored sync-state payload of every snapshot
        task that already existed in the mirror (``None`` when it had none);
        tasks absent from the result are new.
        """

        when = synced_at or utc_now()
        task_ids = [task.id for task in snapshot.tasks]
        async with self._session_factory() as session:
            previous: Dict[str, Optional[Dict[str, Any]]] = {}
            if task_ids:
                existing = await session.exec(select(Task.id).where(Task.id.in_(task_ids)))
                previous = {task_id: None for task_id in existing.all()}
                states = await session.exec(
                    select(ProviderSyncState).where(ProviderSyncState.task_id.in_(task_ids))
                )
                for state in states.all():
                    if state.task_id in previous:
                        previous[state.task_id] = dict(state.payload)

            for project in snapshot.projects:
                project.last_synced_at = when
                await session.merge(project)
            for label in snapshot.labels:
                label.last_synced_at = when
                await session.merge(label)
            for task in snapshot.tasks:
                await self._merge_task(session, task, when)
                await self._put_sync_state(session, task, when)

            if snapshot.deleted_task_ids:
                await self._delete_tasks(session, snapshot.deleted_task_ids)
            if snapshot.deleted_project_ids:
                await session.exec(delete(Project).where(Project.id.in_(snapshot.deleted_project_ids)))
            if snapshot.deleted_label_ids:
                await session.exec(delete(Label).where(Label.id.in_(snapshot.deleted_label_ids)))

            checkpoint = await self._checkpoint_row(session)
            checkpoint.token = snapshot.sync_token
            checkpoint.updated_at = _db_time(when)
            checkpoint.last_sync_at = _db_time(when)
            session.add(checkpoint)
            await session.commit()
        return previous

    # ----- internals -----
    async def _merge_task(self, session: AsyncSession, task: Task, synced_at: Optional[datetime]) -> Task:
        if not task.content_hash:
            task.refresh_hash()
        if synced_at is not None:
            task.last_synced_at = synced_at
        return await session.merge(task)

    async def _put_sync_state(self, session: AsyncSession, task: Task, synced_at: datetime) -> None:
        await session.merge(
            ProviderSyncState(
                task_id=task.id,
                payload=task.state_payload(),
                content_hash=task.content_hash,
                synced_at=synced_at,
            )
        )

    async def _delete_tasks(self, session: AsyncSession, task_ids: List[str]) -> int:
        await session.exec(delete(FieldMetadata).where(FieldMetadata.task_id.in_(task_ids)))
        await session.exec(delete(ProviderSyncState).where(ProviderSyncState.task_id.in_(task_ids)))
        result = await session.exec(delete(Task).where(Task.id.in_(task_ids)))
        return result.rowcount

    async def _checkpoint_row(self, session: AsyncSession) -> SyncCheckpoint:
        row = await session.get(SyncCheckpoint, _CHECKPOINT_ID)
        if row is None:
            row = SyncCheckpoint(id=_CHECKPOINT_ID)
        return row


__all__ = ["MirrorStore"]

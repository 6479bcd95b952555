"""Persist classifier output as per-field metadata.

The classifier itself is an external collaborator; this module only calls it
and stores what it returns, stamped with the time the job started so a slow
job can never overwrite a newer result.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

from datetime_utils import utc_now
from models.field_metadata import SOURCE_AI
from models.task import Task
from services.errors import NotFound
from storage.queries import TaskQuery, meta
from storage.store import MirrorStore


logger = logging.getLogger("taskmirror.enrichment")

_ESTIMATE_RE = re.compile(r"(\d+)(?:\s*-\s*(\d+))?\s*(min|mins|minutes|h|hr|hrs|hour|hours)?", re.I)


def parse_time_estimate(estimate: Union[str, int, float, None]) -> Optional[int]:
    """``"20-30min"`` → 25, ``"1-2h"`` → 90, ``45`` → 45."""

    if estimate is None or isinstance(estimate, bool):
        return None
    if isinstance(estimate, (int, float)):
        return int(estimate) if estimate > 0 else None
    match = _ESTIMATE_RE.search(estimate)
    if not match:
        return None
    low = int(match.group(1))
    high = int(match.group(2)) if match.group(2) else low
    unit = (match.group(3) or "min").lower()
    multiplier = 60 if unit.startswith("h") else 1
    minutes = round((low + high) / 2 * multiplier)
    return minutes or None


class Classifier(Protocol):
    async def classify(
        self, task: Task, history: Sequence[Dict[str, Any]], available_labels: Sequence[str]
    ) -> Dict[str, Any]:
        """Return ``{category, labels, confidence, reasoning}``."""

    async def estimate_time(
        self, task: Task, category_history: Sequence[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """Return ``{estimate, minutes, size, confidence}``."""


@dataclass
class EnrichmentResult:
    task_id: str
    written: Dict[str, bool] = field(default_factory=dict)
    started_at: Optional[datetime] = None

    @property
    def dropped(self) -> List[str]:
        return sorted(name for name, ok in self.written.items() if not ok)


class EnrichmentService:
    def __init__(self, store: MirrorStore, classifier: Classifier) -> None:
        self.store = store
        self.classifier = classifier

    async def _task(self, task_id: str) -> Task:
        task = await self.store.get_task(task_id)
        if task is None:
            raise NotFound(f"Task {task_id} is not in the mirror")
        return task

    async def classify_task(
        self, task_id: str, history: Sequence[Dict[str, Any]] = ()
    ) -> EnrichmentResult:
        started = utc_now()
        task = await self._task(task_id)
        labels = [label.name for label in await self.store.get_labels()]
        output = await self.classifier.classify(task, history, labels)

        values: Dict[str, Any] = {"classification_source": SOURCE_AI}
        if output.get("category"):
            values["recommended_category"] = output["category"]
        if output.get("confidence") is not None:
            values["ai_confidence"] = output["confidence"]
        if output.get("reasoning"):
            values["ai_reasoning"] = output["reasoning"]

        written = await self.store.save_field_values(
            task.id, values, started, source=SOURCE_AI, content_hash=task.content_hash
        )
        logger.info("Classified task %s as %s", task.id, output.get("category"))
        return EnrichmentResult(task.id, written, started)

    async def estimate_task(self, task_id: str) -> EnrichmentResult:
        started = utc_now()
        task = await self._task(task_id)
        category = await self.store.get_field_metadata(task.id, "recommended_category")
        history: List[Dict[str, Any]] = []
        if category is not None and category.value:
            peers = await self.store.list_tasks(
                TaskQuery(where=[meta("recommended_category") == category.value], limit=20)
            )
            for peer in peers:
                if peer.id == task.id:
                    continue
                minutes = await self.store.get_field_metadata(peer.id, "time_estimate_minutes")
                if minutes is not None and minutes.value:
                    history.append({"content": peer.content, "minutes": minutes.value})
        output = await self.classifier.estimate_time(task, history)

        minutes = output.get("minutes")
        if minutes is None:
            minutes = parse_time_estimate(output.get("estimate"))
        values: Dict[str, Any] = {}
        if output.get("estimate") is not None:
            values["time_estimate"] = output["estimate"]
        values["time_estimate_minutes"] = minutes
        if output.get("size"):
            values["size"] = output["size"]

        written = await self.store.save_field_values(
            task.id, values, started, source=SOURCE_AI, content_hash=task.content_hash
        )
        logger.info("Estimated task %s at %s minutes", task.id, minutes)
        return EnrichmentResult(task.id, written, started)

    async def tasks_needing_classification(self, limit: Optional[int] = None) -> List[Task]:
        """Open tasks never classified, plus those whose content changed since."""

        unclassified = await self.store.list_tasks(
            TaskQuery(completed=False, where=[meta("recommended_category").missing()], limit=limit)
        )
        seen = {task.id for task in unclassified}
        classified = await self.store.list_tasks(
            TaskQuery(completed=False, where=[meta("recommended_category").exists()])
        )
        for task in classified:
            if limit is not None and len(unclassified) >= limit:
                break
            if task.id not in seen and "recommended_category" in await self.store.stale_fields(task.id):
                unclassified.append(task)
        return unclassified


__all__ = [
    "Classifier",
    "EnrichmentResult",
    "EnrichmentService",
    "parse_time_estimate",
]

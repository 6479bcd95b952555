"""Background loop that triggers syncs on an interval."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from core.settings import SYNC
from services.sync_service import SyncOrchestrator


logger = logging.getLogger("taskmirror.scheduler")


class SyncScheduler:
    """Trigger :meth:`SyncOrchestrator.sync_now` every ``interval_sec``.

    After a failure the next attempt waits for the orchestrator's backoff
    instead of the regular interval; there is no in-place retry loop.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        *,
        interval_sec: float = SYNC.interval_sec,
    ) -> None:
        self.orchestrator = orchestrator
        self.interval_sec = interval_sec
        self._task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopped.clear()
        self._task = asyncio.create_task(self._loop(), name="taskmirror-sync")

    async def stop(self) -> None:
        self._stopped.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def next_delay(self) -> float:
        if self.orchestrator.consecutive_failures:
            return float(self.orchestrator.retry_delay_sec())
        return float(self.interval_sec)

    async def run_once(self) -> None:
        result = await self.orchestrator.sync_now()
        if result.rejected:
            logger.debug("Scheduled sync skipped: %s", result.error)

    async def _loop(self) -> None:
        while not self._stopped.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Scheduled sync crashed; trying again after the next delay")
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.next_delay())
            except asyncio.TimeoutError:
                continue


__all__ = ["SyncScheduler"]

import asyncio
import logging

import pytest

from conftest import FakeRemote
from core.settings import SyncSettings
from services.errors import SyncUnavailable
from services.sync_scheduler import SyncScheduler
from services.sync_service import SyncOrchestrator


@pytest.fixture
def orchestrator(store):
    remote = FakeRemote()
    remote.add("a")
    return SyncOrchestrator(
        remote,
        store,
        settings=SyncSettings(backoff_base_sec=10, backoff_max_sec=60),
        logger=logging.getLogger("taskmirror.sync.test"),
    )


@pytest.mark.asyncio
async def test_delay_follows_backoff_after_failure(orchestrator):
    scheduler = SyncScheduler(orchestrator, interval_sec=300)
    assert scheduler.next_delay() == 300

    orchestrator.reader.fail_with = SyncUnavailable("down", status=503)
    await scheduler.run_once()
    assert scheduler.next_delay() == 10

    orchestrator.reader.fail_with = None
    await scheduler.run_once()
    assert scheduler.next_delay() == 300


@pytest.mark.asyncio
async def test_loop_syncs_immediately_and_stops(orchestrator, store):
    scheduler = SyncScheduler(orchestrator, interval_sec=3600)

    scheduler.start()
    for _ in range(100):
        if orchestrator.last_result is not None:
            break
        await asyncio.sleep(0.01)
    assert scheduler.running is True
    await scheduler.stop()

    assert scheduler.running is False
    assert orchestrator.last_result.success is True
    assert await store.get_task_ids() == {"a"}


@pytest.mark.asyncio
async def test_loop_survives_a_crashing_run(orchestrator, monkeypatch):
    scheduler = SyncScheduler(orchestrator, interval_sec=0.01)
    calls = []

    async def flaky_sync(*, force_full=False):
        calls.append(force_full)
        if len(calls) == 1:
            raise RuntimeError("boom")
        return await real_sync(force_full=force_full)

    real_sync = orchestrator.sync_now
    monkeypatch.setattr(orchestrator, "sync_now", flaky_sync)

    scheduler.start()
    for _ in range(200):
        if orchestrator.last_result is not None:
            break
        await asyncio.sleep(0.01)
    running = scheduler.running
    await scheduler.stop()

    assert running is True
    assert len(calls) >= 2
    assert orchestrator.last_result.success is True

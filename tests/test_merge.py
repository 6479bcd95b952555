from datetime import datetime, timezone

import pytest

from conftest import FakeRemote, make_task
from services.merge import MergeAction, MergeDecision, MergeResolver
from services.remote import Snapshot


T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def remote():
    fake = FakeRemote()
    fake.add("B")
    fake.add("C", content="remote only")
    return fake


@pytest.fixture
def resolver(remote, store):
    return MergeResolver(remote, remote, store)


def _ids(tasks):
    return [task.id for task in tasks]


@pytest.mark.asyncio
async def test_identical_id_sets_need_no_decision(remote, store, resolver):
    await store.save_tasks([make_task("B"), make_task("C")])

    report = await resolver.detect_orphans()

    assert report.local_only == []
    assert report.remote_only == []
    assert report.requires_user_decision is False


@pytest.mark.asyncio
async def test_symmetric_difference(store, resolver):
    await store.save_tasks([make_task("A"), make_task("B")])

    report = await resolver.detect_orphans()

    assert _ids(report.local_only) == ["A"]
    assert _ids(report.remote_only) == ["C"]
    assert report.requires_user_decision is True
    assert report.as_dict() == {"localOnly": ["A"], "remoteOnly": ["C"], "requiresUserDecision": True}


@pytest.mark.asyncio
async def test_detect_uses_full_snapshot_without_touching_checkpoint(remote, store, resolver):
    await store.apply_snapshot(Snapshot(tasks=[make_task("B")], sync_token="tok-mirror"), T0)

    await resolver.detect_orphans()

    assert remote.snapshot_calls == [None]
    assert await store.get_checkpoint() == "tok-mirror"


@pytest.mark.asyncio
async def test_import_to_local_resolves_remote_orphan(remote, store, resolver):
    await store.save_tasks([make_task("A"), make_task("B")])
    await resolver.detect_orphans()

    outcomes = await resolver.apply_merge_decisions([MergeDecision("C", MergeAction.IMPORT_TO_LOCAL)])

    assert [o.success for o in outcomes] == [True]
    assert remote.created == []
    assert (await store.get_task("C")).content == "remote only"
    assert await store.get_last_synced_state("C") is not None
    report = await resolver.detect_orphans()
    assert report.remote_only == []
    assert _ids(report.local_only) == ["A"]


@pytest.mark.asyncio
async def test_ignored_remote_orphan_reappears(store, resolver):
    await store.save_tasks([make_task("A"), make_task("B")])
    await resolver.detect_orphans()

    outcomes = await resolver.apply_merge_decisions([MergeDecision("C", "ignore")])

    assert outcomes[0].success is True
    assert outcomes[0].action is MergeAction.IGNORE
    assert "C" not in await store.get_task_ids()
    report = await resolver.detect_orphans()
    assert _ids(report.remote_only) == ["C"]


@pytest.mark.asyncio
async def test_push_to_remote_replaces_local_record(remote, store, resolver):
    await store.save_tasks([make_task("local-1", content="draft", project_id="local-p", priority=3), make_task("B")])
    await store.save_field_metadata("local-1", "category", "home", T0)

    outcomes = await resolver.apply_merge_decisions(
        [MergeDecision("local-1", MergeAction.PUSH_TO_REMOTE)]
    )

    assert outcomes[0].success is True
    new_id = outcomes[0].result_task_id
    assert remote.created[0].content == "draft"
    assert remote.created[0].project_id is None
    assert remote.created[0].priority == 3
    ids = await store.get_task_ids()
    assert "local-1" not in ids and new_id in ids
    assert (await store.get_field_metadata(new_id, "category")).value == "home"


@pytest.mark.asyncio
async def test_one_failure_does_not_block_others(store, resolver):
    await store.save_tasks([make_task("A"), make_task("B")])
    await resolver.detect_orphans()

    outcomes = await resolver.apply_merge_decisions(
        [
            MergeDecision("ghost", MergeAction.PUSH_TO_REMOTE),
            MergeDecision("C", MergeAction.IMPORT_TO_LOCAL),
            MergeDecision("A", MergeAction.IGNORE),
        ]
    )

    assert [o.success for o in outcomes] == [False, True, True]
    assert "NotFound" in outcomes[0].error
    assert "C" in await store.get_task_ids()


@pytest.mark.asyncio
async def test_import_with_explicit_task(store, resolver):
    outcomes = await resolver.apply_merge_decisions(
        [MergeDecision("Z", MergeAction.IMPORT_TO_LOCAL, task=make_task("Z", content="given"))]
    )

    assert outcomes[0].success is True
    assert (await store.get_task("Z")).content == "given"


@pytest.mark.asyncio
async def test_unexpected_writer_error_does_not_abort_batch(remote, store, resolver):
    await store.save_tasks([make_task("local-1"), make_task("B")])
    await resolver.detect_orphans()

    async def broken_create(draft):
        raise RuntimeError("writer exploded")

    remote.create_task = broken_create
    outcomes = await resolver.apply_merge_decisions(
        [
            MergeDecision("local-1", MergeAction.PUSH_TO_REMOTE),
            MergeDecision("C", MergeAction.IMPORT_TO_LOCAL),
        ]
    )

    assert [o.success for o in outcomes] == [False, True]
    assert outcomes[0].error == "RuntimeError: writer exploded"
    assert await store.get_task_ids() == {"local-1", "B", "C"}

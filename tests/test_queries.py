from datetime import datetime, timezone

import pytest

from conftest import make_task
from storage.queries import TaskQuery, meta, meta_eq, meta_in, meta_lte


T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


async def _seed(store):
    await store.save_tasks(
        [
            make_task("quick", project_id="home", priority=2),
            make_task("shop", project_id="errands", priority=4),
            make_task("long", project_id="home", priority=3),
            make_task("done", project_id="home", is_completed=True),
            make_task("bare", project_id="work"),
        ]
    )
    metadata = {
        "quick": {"recommended_category": "home", "energy_level": "low", "needs_supplies": False, "time_estimate_minutes": 15},
        "shop": {"recommended_category": "errands", "energy_level": "low", "needs_supplies": True, "time_estimate_minutes": 30},
        "long": {"recommended_category": "home", "energy_level": "high", "needs_supplies": False, "time_estimate_minutes": 120},
        "done": {"recommended_category": "home", "energy_level": "low", "needs_supplies": False, "time_estimate_minutes": 10},
    }
    for task_id, values in metadata.items():
        await store.save_field_values(task_id, values, T0)


def _ids(tasks):
    return [task.id for task in tasks]


@pytest.mark.asyncio
async def test_basic_filters(store):
    await _seed(store)

    assert set(_ids(await store.list_tasks(TaskQuery(project_id="home")))) == {"quick", "long", "done"}
    assert _ids(await store.list_tasks(TaskQuery(priority=4))) == ["shop"]
    assert _ids(await store.list_tasks(TaskQuery(completed=True))) == ["done"]
    assert set(_ids(await store.list_tasks(TaskQuery(category="home", completed=False)))) == {"quick", "long"}


@pytest.mark.asyncio
async def test_results_ordered_by_priority(store):
    await _seed(store)

    tasks = await store.list_tasks(TaskQuery(completed=False))

    assert _ids(tasks)[:3] == ["shop", "long", "quick"]


@pytest.mark.asyncio
async def test_composed_metadata_predicates(store):
    await _seed(store)

    query = TaskQuery(
        completed=False,
        where=[
            meta("energy_level") == "low",
            meta("needs_supplies").is_false(),
            meta("time_estimate_minutes") <= 30,
        ],
    )

    assert _ids(await store.list_tasks(query)) == ["quick"]


@pytest.mark.asyncio
async def test_predicates_compose_incrementally(store):
    await _seed(store)
    base = TaskQuery(completed=False).and_(meta_eq("energy_level", "low"))

    assert set(_ids(await store.list_tasks(base))) == {"quick", "shop"}
    assert _ids(await store.list_tasks(base.and_(meta("needs_supplies").is_true()))) == ["shop"]
    assert base.where == [meta_eq("energy_level", "low")]


@pytest.mark.asyncio
async def test_in_exists_and_missing(store):
    await _seed(store)

    in_query = TaskQuery(where=[meta_in("recommended_category", ["errands", "work"])])
    assert _ids(await store.list_tasks(in_query)) == ["shop"]

    missing = TaskQuery(where=[meta("recommended_category").missing()])
    assert _ids(await store.list_tasks(missing)) == ["bare"]

    present = TaskQuery(where=[meta("recommended_category").exists()], completed=False)
    assert set(_ids(await store.list_tasks(present))) == {"quick", "shop", "long"}

    at_least_hour = TaskQuery(where=[meta("time_estimate_minutes") >= 60])
    assert _ids(await store.list_tasks(at_least_hour)) == ["long"]
    assert _ids(await store.list_tasks(TaskQuery(where=[meta_lte("time_estimate_minutes", 10)]))) == ["done"]


@pytest.mark.asyncio
async def test_null_value_counts_as_missing(store):
    await _seed(store)
    await store.save_field_metadata("bare", "time_estimate_minutes", None, T0)

    query = TaskQuery(where=[meta("time_estimate_minutes").missing()])

    assert _ids(await store.list_tasks(query)) == ["bare"]


@pytest.mark.asyncio
async def test_limit(store):
    await _seed(store)

    assert len(await store.list_tasks(TaskQuery(limit=2))) == 2


def test_unknown_field_is_rejected():
    with pytest.raises(ValueError):
        meta("mood")
    with pytest.raises(ValueError):
        meta_eq("mood", "happy")

"""Tests for GroupScheduler — APScheduler wiring, lifecycle, and manual runs."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import pytest

from scheduledtasks.errors import ConfigurationError, UnknownGroupError, UnknownTaskError
from scheduledtasks.scheduler.engine import GroupScheduler
from scheduledtasks.scheduler.models import (
    INTERRUPTED_MESSAGE,
    SHUTDOWN_MESSAGE,
    TaskGroupRun,
    TaskRun,
    TaskStatus,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from conftest import Gate

    from scheduledtasks.scheduler.executor import GroupExecutor
    from scheduledtasks.scheduler.store import RunStore

GROUPS = [
    {
        "groupName": "Nightly",
        "cron": "0 2 * * *",
        "tasks": [
            {"name": "extract", "filePath": "fake.ok"},
            {"name": "load", "filePath": "fake.ok"},
        ],
    },
    {
        "groupName": "Slow",
        "cron": "*/5 * * * *",
        "tasks": [{"name": "slow", "filePath": "fake.gated"}],
    },
]


@pytest.fixture
async def scheduler(store: RunStore, executor: GroupExecutor) -> AsyncIterator[GroupScheduler]:
    sched = GroupScheduler(store, executor, timezone="America/Phoenix", flush_interval=60)
    yield sched
    await sched.shutdown()


async def _open_runs(store: RunStore) -> None:
    await store.insert_task_group_run(
        TaskGroupRun(run_id="stale", group_name="Nightly", status=TaskStatus.IN_PROGRESS)
    )
    await store.insert_task_run(
        TaskRun(
            run_id="stale-task",
            task_group_run_id="stale",
            task_name="extract",
            params="{}",
            module_path="fake.ok",
            status=TaskStatus.IN_PROGRESS,
        )
    )


# -- Loading -------------------------------------------------------------------


async def test_load_from_list(scheduler: GroupScheduler) -> None:
    groups = await scheduler.load(GROUPS)

    assert [g.group_name for g in groups] == ["Nightly", "Slow"]
    assert [g.group_name for g in scheduler.groups] == ["Nightly", "Slow"]
    assert scheduler.get_group("Nightly").cron == "0 2 * * *"
    assert scheduler.get_group("Missing") is None


async def test_load_from_file(scheduler: GroupScheduler, tmp_path: Path) -> None:
    path = tmp_path / "task_config.json"
    path.write_text(json.dumps(GROUPS))

    await scheduler.load(path)

    assert len(scheduler.groups) == 2


async def test_load_registers_jobs_in_scheduler_zone(scheduler: GroupScheduler) -> None:
    await scheduler.load(GROUPS)

    job = scheduler._scheduler.get_job("Nightly")
    assert job is not None
    assert str(job.trigger.timezone) == "America/Phoenix"
    assert scheduler.timezone == "America/Phoenix"


async def test_reload_replaces_jobs(scheduler: GroupScheduler) -> None:
    await scheduler.load(GROUPS)
    await scheduler.load(GROUPS[:1])

    assert scheduler._scheduler.get_job("Slow") is None
    assert scheduler._scheduler.get_job("Nightly") is not None


async def test_load_invalid_cron(scheduler: GroupScheduler) -> None:
    bad = [{"groupName": "Bad", "cron": "61 * * * *", "tasks": []}]
    with pytest.raises(ConfigurationError, match="Invalid cron expression for Bad"):
        await scheduler.load(bad)
    assert scheduler.groups == []


async def test_load_missing_file(scheduler: GroupScheduler, tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        await scheduler.load(tmp_path / "missing.json")


async def test_load_recovers_stale_runs(scheduler: GroupScheduler, store: RunStore) -> None:
    await _open_runs(store)

    await scheduler.load(GROUPS)

    group_run = await store.get_task_group_run("stale")
    assert group_run.status == "error"
    assert group_run.message == INTERRUPTED_MESSAGE
    assert (await store.get_task_run("stale-task")).message == INTERRUPTED_MESSAGE


# -- Lifecycle -----------------------------------------------------------------


async def test_start_and_stop(scheduler: GroupScheduler, store: RunStore) -> None:
    await scheduler.load(GROUPS)
    await scheduler.start()
    assert scheduler.running is True

    await _open_runs(store)
    await scheduler.stop()

    assert scheduler.running is False
    group_run = await store.get_task_group_run("stale")
    assert group_run.status == "error"
    assert group_run.message == SHUTDOWN_MESSAGE


async def test_stop_during_run_keeps_shutdown_status(
    scheduler: GroupScheduler, store: RunStore, gate: Gate
) -> None:
    await scheduler.load(GROUPS)
    await scheduler.start()
    job = scheduler.trigger_group("Slow")
    await gate.started.wait()

    try:
        await scheduler.stop()
    finally:
        gate.release.set()
    run = await job

    assert run.status == "error"
    assert run.message == SHUTDOWN_MESSAGE
    stored = await store.get_task_group_run(run.run_id)
    assert stored.status == "error"
    assert stored.message == SHUTDOWN_MESSAGE
    [task] = await store.list_task_runs(run.run_id)
    assert task.status == "error"
    assert task.message == SHUTDOWN_MESSAGE


async def test_start_recovers_stale_runs(scheduler: GroupScheduler, store: RunStore) -> None:
    await scheduler.load(GROUPS)
    await _open_runs(store)

    await scheduler.start()

    assert (await store.get_task_group_run("stale")).message == INTERRUPTED_MESSAGE


async def test_start_twice_is_noop(scheduler: GroupScheduler, store: RunStore) -> None:
    await scheduler.load(GROUPS)
    await scheduler.start()
    await _open_runs(store)

    await scheduler.start()

    assert scheduler.running is True
    assert (await store.get_task_group_run("stale")).status == "in_progress"


async def test_stop_when_not_running_is_noop(scheduler: GroupScheduler, store: RunStore) -> None:
    await scheduler.load(GROUPS)
    await _open_runs(store)

    await scheduler.stop()

    assert (await store.get_task_group_run("stale")).status == "in_progress"


async def test_restart_after_stop(scheduler: GroupScheduler) -> None:
    await scheduler.load(GROUPS)
    await scheduler.start()
    await scheduler.stop()
    await scheduler.start()

    assert scheduler.running is True
    assert scheduler._scheduler.get_job("__flush_running_tasks__") is not None


async def test_shutdown_without_start(store: RunStore, executor: GroupExecutor) -> None:
    sched = GroupScheduler(store, executor, timezone="UTC")
    await sched.shutdown()
    assert sched.running is False


# -- Triggering ----------------------------------------------------------------


async def test_fire_ignored_when_not_running(scheduler: GroupScheduler, store: RunStore) -> None:
    await scheduler.load(GROUPS)

    await scheduler._fire("Nightly")

    assert await store.list_task_group_runs() == []


async def test_fire_runs_group_in_background(
    scheduler: GroupScheduler, store: RunStore
) -> None:
    await scheduler.load(GROUPS)
    await scheduler.start()

    await scheduler._fire("Nightly")
    await asyncio.gather(*scheduler._background)

    [run] = await store.list_task_group_runs("Nightly")
    assert run.status == "completed"


async def test_fire_unknown_group_is_ignored(scheduler: GroupScheduler, store: RunStore) -> None:
    await scheduler.load(GROUPS)
    await scheduler.start()

    await scheduler._fire("Removed")

    assert scheduler._background == set()


async def test_overlapping_fire_records_skip(
    scheduler: GroupScheduler, store: RunStore, gate: Gate
) -> None:
    await scheduler.load(GROUPS)
    await scheduler.start()

    await scheduler._fire("Slow")
    await gate.started.wait()
    first = set(scheduler._background)
    await scheduler._fire("Slow")
    await asyncio.gather(*(scheduler._background - first))
    gate.release.set()
    await asyncio.gather(*scheduler._background)

    statuses = sorted(r.status for r in await store.list_task_group_runs("Slow"))
    assert statuses == ["completed", "skipped"]


# -- Manual runs ---------------------------------------------------------------


async def test_run_group_now(scheduler: GroupScheduler, store: RunStore) -> None:
    await scheduler.load(GROUPS)

    run = await scheduler.run_group_now("Nightly")

    assert run.status == TaskStatus.COMPLETED
    assert len(await store.list_task_runs(run.run_id)) == 2


async def test_run_group_now_unknown(scheduler: GroupScheduler) -> None:
    await scheduler.load(GROUPS)
    with pytest.raises(UnknownGroupError, match="Task group not found: Nope"):
        await scheduler.run_group_now("Nope")


async def test_run_task_now(scheduler: GroupScheduler, store: RunStore) -> None:
    await scheduler.load(GROUPS)

    run = await scheduler.run_task_now("Nightly", "load")

    assert run.group_name == "Nightly_SingleTask_load"
    assert run.status == TaskStatus.COMPLETED
    [task] = await store.list_task_runs(run.run_id)
    assert task.task_name == "load"


async def test_run_task_now_unknown_task(scheduler: GroupScheduler) -> None:
    await scheduler.load(GROUPS)
    with pytest.raises(UnknownTaskError, match="Task not found: nope in group Nightly"):
        await scheduler.run_task_now("Nightly", "nope")


async def test_single_task_group_shape(scheduler: GroupScheduler) -> None:
    await scheduler.load(GROUPS)

    adhoc = scheduler.single_task_group("Nightly", "extract")

    assert adhoc.group_name == "Nightly_SingleTask_extract"
    assert adhoc.owner_group == "Nightly"
    assert [t.name for t in adhoc.tasks] == ["extract"]


async def test_trigger_group_returns_background_task(
    scheduler: GroupScheduler, store: RunStore
) -> None:
    await scheduler.load(GROUPS)

    job = scheduler.trigger_group("Nightly")
    run = await job

    assert run.status == TaskStatus.COMPLETED
    assert len(await store.list_task_group_runs("Nightly")) == 1


async def test_trigger_task(scheduler: GroupScheduler) -> None:
    await scheduler.load(GROUPS)
    run = await scheduler.trigger_task("Nightly", "extract")
    assert run.group_name == "Nightly_SingleTask_extract"


async def test_trigger_unknown_raises_immediately(scheduler: GroupScheduler) -> None:
    await scheduler.load(GROUPS)
    with pytest.raises(UnknownGroupError):
        scheduler.trigger_group("Nope")
    with pytest.raises(UnknownGroupError):
        scheduler.trigger_task("Nope", "extract")
    with pytest.raises(UnknownTaskError):
        scheduler.trigger_task("Nightly", "nope")


# -- Queries & maintenance -----------------------------------------------------


async def test_next_run_time(store: RunStore, executor: GroupExecutor) -> None:
    sched = GroupScheduler(store, executor, timezone="America/Phoenix")

    result = sched.next_run_time("0 2 * * *")

    fire = datetime.fromisoformat(result)
    assert fire > datetime.now(UTC)
    # 02:00 in Phoenix (UTC-7, no DST) is always 09:00 UTC.
    assert (fire.hour, fire.minute) == (9, 0)


async def test_next_run_time_invalid(store: RunStore, executor: GroupExecutor) -> None:
    sched = GroupScheduler(store, executor, timezone="UTC")
    assert sched.next_run_time("61 * * * *") is None


async def test_cleanup(scheduler: GroupScheduler, store: RunStore) -> None:
    await store.insert_task_group_run(
        TaskGroupRun(
            run_id="old",
            group_name="Nightly",
            status=TaskStatus.COMPLETED,
            created_at="2000-01-01T00:00:00+00:00",
        )
    )
    await store.insert_task_group_run(
        TaskGroupRun(run_id="new", group_name="Nightly", status=TaskStatus.COMPLETED)
    )

    assert await scheduler.cleanup(30) == (0, 1)
    assert await store.get_task_group_run("new") is not None

"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from scheduledtasks.scheduler.executor import GroupExecutor
from scheduledtasks.scheduler.loader import TaskLoader, TaskRegistry
from scheduledtasks.scheduler.store import RunStore
from scheduledtasks.scheduler.task import MonitoredTask

if TYPE_CHECKING:
    from pathlib import Path

TZ = "America/Phoenix"


# -- Fake task classes ---------------------------------------------------------


class SucceedingTask(MonitoredTask):
    async def execute(self) -> None:
        self.report_progress("Halfway there", 50)
        self.report_summary("done")


class FailingTask(MonitoredTask):
    async def execute(self) -> None:
        self.report_progress("Working", 25)
        msg = "boom"
        raise RuntimeError(msg)


class ReportedFailureTask(MonitoredTask):
    async def execute(self) -> None:
        self.report_failure("bad data")


class Gate:
    """Lets a test hold a task inside execute() until released."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()


def gated_task_class(gate: Gate) -> type[MonitoredTask]:
    class GatedTask(MonitoredTask):
        async def execute(self) -> None:
            self.report_progress("Waiting for release", 10)
            gate.started.set()
            await gate.release.wait()
            self.report_progress("Released", 100)

    return GatedTask


# -- Fixtures ------------------------------------------------------------------


@pytest.fixture
async def store(tmp_path: Path) -> RunStore:
    """Create a RunStore backed by a temp database."""
    return RunStore(db_path=tmp_path / "test.db")


@pytest.fixture
def gate() -> Gate:
    return Gate()


@pytest.fixture
def registry(gate: Gate) -> TaskRegistry:
    reg = TaskRegistry()
    reg.register("fake.ok", SucceedingTask)
    reg.register("fake.fail", FailingTask)
    reg.register("fake.reported", ReportedFailureTask)
    reg.register("fake.gated", gated_task_class(gate))
    return reg


@pytest.fixture
def loader(store: RunStore, registry: TaskRegistry, tmp_path: Path) -> TaskLoader:
    return TaskLoader(store, registry=registry, timezone=TZ, base_dir=tmp_path)


@pytest.fixture
def executor(store: RunStore, loader: TaskLoader) -> GroupExecutor:
    return GroupExecutor(store, loader)

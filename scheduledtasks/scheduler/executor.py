"""GroupExecutor — runs one task group's tasks in order and persists every change."""

from __future__ import annotations

import asyncio
import json
import logging
import traceback
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from scheduledtasks.scheduler.models import (
    TaskGroupRun,
    TaskRun,
    TaskStatus,
    make_run_id,
)

if TYPE_CHECKING:
    from scheduledtasks.scheduler.loader import LoadedTask, TaskLoader
    from scheduledtasks.scheduler.models import TaskConfig, TaskGroupConfig
    from scheduledtasks.scheduler.store import RunStore
    from scheduledtasks.scheduler.task import MonitoredTask, TaskNotification

logger = logging.getLogger(__name__)

GROUP_ALREADY_RUNNING = "Task group already running"
TASK_ALREADY_RUNNING = "Task already running"
KILLED_BY_PREVIOUS_FAILURE = "Skipped due to previous task failure (killOnFail)"
GROUP_COMPLETED = "All tasks completed successfully"
GROUP_STOPPED_EARLY = "Task group stopped early due to task failure with killOnFail=true"


@dataclass
class RunningTask:
    """An entry in the executor's live running set."""

    task: MonitoredTask
    group_name: str
    task_group_run_id: str


class GroupExecutor:
    """Executes task groups sequentially with killOnFail propagation.

    Args:
        store: RunStore that receives every state transition.
        loader: TaskLoader that builds task instances.
    """

    def __init__(self, store: RunStore, loader: TaskLoader) -> None:
        self._store = store
        self._loader = loader
        self._running: dict[str, RunningTask] = {}
        self._pending: dict[str, set[asyncio.Task]] = {}
        # Every observer-scheduled flush, held until done.
        self._detached: set[asyncio.Task] = set()
        self._flush_lock = asyncio.Lock()

    @property
    def running_tasks(self) -> list[RunningTask]:
        """Snapshot of the tasks currently executing."""
        return list(self._running.values())

    # -- Group execution -------------------------------------------------------

    async def execute_group(self, config: TaskGroupConfig) -> TaskGroupRun:
        """Run every task of *config* and return the finished group run record."""
        run_id = make_run_id()
        logger.info("Starting task group: %s (%s)", config.group_name, run_id)

        if await self._store.is_group_running(config.group_name):
            logger.info("Skipping task group %s - already running", config.group_name)
            run = TaskGroupRun(
                run_id=run_id,
                group_name=config.group_name,
                status=TaskStatus.SKIPPED,
                message=GROUP_ALREADY_RUNNING,
            )
            run.end_time = run.start_time
            return await self._store.insert_task_group_run(run)

        run = await self._store.insert_task_group_run(
            TaskGroupRun(
                run_id=run_id,
                group_name=config.group_name,
                status=TaskStatus.IN_PROGRESS,
                message="Task group started",
            )
        )

        try:
            halted = await self._run_tasks(config, run_id)
        except Exception as exc:
            message = f"Task group failed: {exc}"
            logger.exception("Task group failed: %s (%s)", config.group_name, run_id)
            run.status = TaskStatus.ERROR
            run.message = message
            run.stack_trace = traceback.format_exc()
            run.end_time = datetime.now(UTC).isoformat()
            await self._store.fail_open_task_runs(run_id, message)
            finished = await self._store.finish_task_group_run(
                run_id,
                status=run.status,
                message=run.message,
                stack_trace=run.stack_trace,
                end_time=run.end_time,
            )
            return run if finished else await self._closed_elsewhere(run)

        run.end_time = datetime.now(UTC).isoformat()
        if halted:
            run.status = TaskStatus.ERROR
            run.message = GROUP_STOPPED_EARLY
            logger.warning(
                "Task group partially completed: %s (stopped early due to killOnFail)",
                config.group_name,
            )
        else:
            run.status = TaskStatus.COMPLETED
            run.message = GROUP_COMPLETED
            logger.info("Task group completed: %s", config.group_name)
        finished = await self._store.finish_task_group_run(
            run_id, status=run.status, message=run.message, end_time=run.end_time
        )
        return run if finished else await self._closed_elsewhere(run)

    async def _closed_elsewhere(self, run: TaskGroupRun) -> TaskGroupRun:
        """Return the stored record of a run that was closed while it executed."""
        stored = await self._store.get_task_group_run(run.run_id)
        logger.warning(
            "Task group %s (%s) was closed before it finished; keeping status %s",
            run.group_name,
            run.run_id,
            stored.status if stored else "unknown",
        )
        return stored or run

    async def _run_tasks(self, config: TaskGroupConfig, run_id: str) -> bool:
        """Create and run the group's tasks. Returns True if killOnFail halted the run."""
        loaded: list[tuple[TaskConfig, LoadedTask]] = []
        for task_config in config.tasks:
            loaded.append(
                (task_config, await self._loader.load(task_config, make_run_id(), run_id))
            )

        for task_config, item in loaded:
            await self._store.insert_task_run(
                TaskRun(
                    run_id=item.task.task_id,
                    task_group_run_id=run_id,
                    task_name=task_config.name,
                    params=json.dumps(item.params),
                    module_path=task_config.module_path,
                    message="Task created",
                )
            )

        halted = False
        for task_config, item in loaded:
            task = item.task
            if halted:
                logger.info(
                    "Skipping task %s due to previous task failure with killOnFail=true",
                    task.task_name,
                )
                task.skip(KILLED_BY_PREVIOUS_FAILURE)
                await self.flush(task)
                continue

            await self._execute_task(task, config.owner_group, run_id)

            if task_config.kill_on_fail and task.status == TaskStatus.ERROR:
                logger.warning(
                    "Task %s failed with killOnFail=true. Stopping remaining tasks in group.",
                    task.task_name,
                )
                halted = True
        return halted

    async def _execute_task(self, task: MonitoredTask, group_name: str, run_id: str) -> None:
        if await self._store.is_task_running(task.task_name):
            logger.info("Skipping task %s - already running", task.task_name)
            task.skip(TASK_ALREADY_RUNNING)
            await self.flush(task)
            return

        self._running[task.task_id] = RunningTask(task, group_name, run_id)
        self._pending[task.task_id] = set()
        task.subscribe_all(self._on_notification(task))

        logger.info("Starting task: %s (%s)", task.task_name, task.task_id)
        try:
            await task.start()
        except Exception:
            logger.exception("Task failed: %s (%s)", task.task_name, task.task_id)
        else:
            if task.status == TaskStatus.ERROR:
                logger.warning("Task failed: %s - %s", task.task_name, task.error)
            else:
                logger.info(
                    "Task completed: %s in %s", task.task_name, task.get_duration()
                )
        finally:
            self._running.pop(task.task_id, None)
            pending = self._pending.pop(task.task_id, set())
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            await self.flush(task)

    # -- Persistence -----------------------------------------------------------

    def _on_notification(self, task: MonitoredTask):
        """Build the observer that persists *task* on every notification."""

        def _observer(notification: TaskNotification) -> None:
            logger.debug(
                "Task %s %s at %s", notification.task_id, notification.kind, notification.timestamp
            )
            pending = self._pending.get(task.task_id)
            job = asyncio.ensure_future(self._flush_quietly(task))
            self._detached.add(job)
            job.add_done_callback(self._detached.discard)
            if pending is not None:
                pending.add(job)
                job.add_done_callback(pending.discard)

        return _observer

    async def flush(self, task: MonitoredTask) -> None:
        """Write *task*'s current state to its run record.

        Writes are serialized and the snapshot is taken inside the lock, so a
        later write always carries state at least as new as an earlier one.
        A run record that is already closed is left untouched.
        """
        async with self._flush_lock:
            await self._store.update_open_task_run(task.task_id, **task.snapshot())

    async def _flush_quietly(self, task: MonitoredTask) -> None:
        try:
            await self.flush(task)
        except Exception:
            logger.exception("Failed to persist task state: %s (%s)", task.task_name, task.task_id)

    async def flush_running(self) -> None:
        """Re-persist the live state of every running task."""
        for entry in self.running_tasks:
            await self._flush_quietly(entry.task)

"""Read-side aggregation for the dashboard: status, task summary, and errors."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from scheduledtasks.timezones import parse_iso

if TYPE_CHECKING:
    from scheduledtasks.scheduler.engine import GroupScheduler
    from scheduledtasks.scheduler.executor import GroupExecutor, RunningTask
    from scheduledtasks.scheduler.models import TaskConfig, TaskGroupConfig
    from scheduledtasks.scheduler.store import RunStore

logger = logging.getLogger(__name__)


def staleness(
    last_completed: str | None,
    warning_hours: float | None,
    error_hours: float | None,
    now: datetime | None = None,
) -> str:
    """Classify how overdue a task is from its last successful completion.

    Returns ``"never_run"``, ``"error"``, ``"warning"``, or ``"ok"``.  A
    threshold of ``None`` is never exceeded.
    """
    if not last_completed:
        return "never_run"
    now = now or datetime.now(UTC)
    age_hours = (now - parse_iso(last_completed)).total_seconds() / 3600
    if error_hours is not None and age_hours > error_hours:
        return "error"
    if warning_hours is not None and age_hours > warning_hours:
        return "warning"
    return "ok"


class StatusService:
    """Builds dashboard views from the store and the executor's running set.

    Args:
        store: RunStore for historical records.
        executor: GroupExecutor whose running set supplies live progress.
        scheduler: GroupScheduler for configuration and next-run times.
    """

    def __init__(
        self, store: RunStore, executor: GroupExecutor, scheduler: GroupScheduler
    ) -> None:
        self._store = store
        self._executor = executor
        self._scheduler = scheduler

    async def get_status(self) -> dict[str, Any]:
        running_groups = await self._store.get_running_groups()
        return {
            "is_running": self._scheduler.running,
            "scheduled_task_groups": [g.group_name for g in self._scheduler.groups],
            "running_tasks": [entry.task.task_id for entry in self._executor.running_tasks],
            "running_task_groups": [g.group_name for g in running_groups],
        }

    async def get_task_summary(self) -> list[dict[str, Any]]:
        """One entry per configured group with per-task history and live state."""
        running = self._executor.running_tasks
        summary = []
        for group in self._scheduler.groups:
            tasks = [
                await self._task_summary(group, task_config, running)
                for task_config in group.tasks
            ]
            summary.append(
                {
                    "group_name": group.group_name,
                    "cron_expression": group.cron,
                    "next_run_time": self._scheduler.next_run_time(group.cron),
                    "is_group_running": any(t["is_running"] for t in tasks),
                    "tasks": tasks,
                }
            )
        return summary

    async def _task_summary(
        self,
        group: TaskGroupConfig,
        task_config: TaskConfig,
        running: list[RunningTask],
    ) -> dict[str, Any]:
        last_run = await self._store.get_last_run(task_config.name)
        last_completed = await self._store.get_last_completed_run(task_config.name)

        # Live progress belongs to this group's own run (scheduled or ad-hoc),
        # never to a same-named task started by another group.
        live = next(
            (
                entry.task
                for entry in running
                if entry.group_name == group.group_name
                and entry.task.task_name == task_config.name
            ),
            None,
        )

        warning_hours = (
            task_config.warning_hours
            if task_config.warning_hours is not None
            else group.warning_hours
        )
        error_hours = (
            task_config.error_hours if task_config.error_hours is not None else group.error_hours
        )
        last_completed_time = last_completed.end_time if last_completed else None

        return {
            "task_name": task_config.name,
            "module_path": task_config.module_path,
            "kill_on_fail": task_config.kill_on_fail,
            "last_status": last_run.status if last_run else "never_run",
            "last_start_time": last_run.start_time if last_run else None,
            "last_end_time": last_run.end_time if last_run else None,
            "last_summary": last_run.summary if last_run else None,
            "last_params": last_run.params if last_run else None,
            "last_completed_time": last_completed_time,
            "current_progress": live.current_progress.message if live else None,
            "current_percentage": live.current_progress.percentage if live else None,
            "current_status": str(live.status) if live else None,
            "current_start_time": (
                live.start_time.isoformat() if live and live.start_time else None
            ),
            "current_error": live.error if live else None,
            "current_params": json.dumps(live.params) if live else None,
            "is_running": live is not None,
            "recent_progress": last_run.message if last_run and live is None else None,
            "warning_hours": warning_hours,
            "error_hours": error_hours,
            "staleness": staleness(last_completed_time, warning_hours, error_hours),
        }

    async def get_error_tasks(self, hours: float = 24) -> list[dict[str, Any]]:
        return await self._store.get_error_tasks(hours)

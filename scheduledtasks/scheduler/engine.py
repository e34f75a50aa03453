"""GroupScheduler — APScheduler lifecycle and task group triggers."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.schedulers.base import STATE_STOPPED
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from scheduledtasks.config import settings
from scheduledtasks.errors import ConfigurationError, UnknownGroupError, UnknownTaskError
from scheduledtasks.scheduler.models import (
    INTERRUPTED_MESSAGE,
    SHUTDOWN_MESSAGE,
    TaskGroupConfig,
    TaskGroupRun,
    parse_group_configs,
)

if TYPE_CHECKING:
    from pathlib import Path

    from scheduledtasks.scheduler.executor import GroupExecutor
    from scheduledtasks.scheduler.store import RunStore

logger = logging.getLogger(__name__)

_FLUSH_JOB_ID = "__flush_running_tasks__"


class GroupScheduler:
    """Owns the configured task groups and maps each one to a cron job.

    Args:
        store: RunStore for recovery, shutdown marking, and cleanup.
        executor: GroupExecutor that runs triggered groups.
        timezone: IANA zone for trigger evaluation (default from settings).
        flush_interval: Seconds between periodic flushes of running tasks.
    """

    def __init__(
        self,
        store: RunStore,
        executor: GroupExecutor,
        timezone: str | None = None,
        flush_interval: float | None = None,
    ) -> None:
        self._store = store
        self._executor = executor
        self._timezone = timezone or settings.scheduler_timezone
        self._flush_interval = flush_interval or settings.flush_interval_seconds
        self._scheduler = AsyncIOScheduler(timezone=self._timezone)
        self._groups: dict[str, TaskGroupConfig] = {}
        self._background: set[asyncio.Task] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def timezone(self) -> str:
        return self._timezone

    @property
    def groups(self) -> list[TaskGroupConfig]:
        return list(self._groups.values())

    def get_group(self, group_name: str) -> TaskGroupConfig | None:
        return self._groups.get(group_name)

    # -- Configuration ---------------------------------------------------------

    async def load(
        self, config: str | Path | list[TaskGroupConfig | dict[str, Any]]
    ) -> list[TaskGroupConfig]:
        """Load task groups, register their cron jobs, and recover stale runs.

        Raises ``ConfigurationError`` for unreadable or invalid configuration,
        including cron expressions APScheduler rejects.
        """
        groups = parse_group_configs(config)
        triggers = {group.group_name: self._build_trigger(group) for group in groups}

        for old_name in self._groups:
            if self._scheduler.get_job(old_name) is not None:
                self._scheduler.remove_job(old_name)
        self._groups = {group.group_name: group for group in groups}
        for group in groups:
            self._scheduler.add_job(
                self._fire,
                trigger=triggers[group.group_name],
                id=group.group_name,
                name=group.group_name,
                args=[group.group_name],
                misfire_grace_time=None,
                replace_existing=True,
            )
            logger.info("Scheduled task group: %s with cron: %s", group.group_name, group.cron)

        await self._store.mark_all_in_progress_as_error(INTERRUPTED_MESSAGE)
        logger.info("Loaded %d task group(s) from configuration", len(groups))
        return groups

    def _build_trigger(self, group: TaskGroupConfig) -> CronTrigger:
        try:
            return CronTrigger.from_crontab(group.cron, timezone=self._timezone)
        except ValueError as exc:
            msg = f"Invalid cron expression for {group.group_name}: {group.cron!r} ({exc})"
            raise ConfigurationError(msg) from exc

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Recover stale runs, activate every trigger, and begin periodic flushing."""
        if self._running:
            logger.warning("GroupScheduler is already running")
            return

        logger.info("Starting GroupScheduler...")
        await self._store.mark_all_in_progress_as_error(INTERRUPTED_MESSAGE)

        if self._scheduler.state == STATE_STOPPED:
            self._scheduler.start()
        else:
            self._scheduler.resume()
        self._scheduler.add_job(
            self._executor.flush_running,
            trigger=IntervalTrigger(seconds=self._flush_interval, timezone=self._timezone),
            id=_FLUSH_JOB_ID,
            name="flush running tasks",
            replace_existing=True,
            coalesce=True,
        )
        self._running = True
        logger.info(
            "GroupScheduler started with %d task group(s) (tz=%s)",
            len(self._groups),
            self._timezone,
        )

    async def stop(self) -> None:
        """Mark in-flight runs as shutdown errors and deactivate every trigger."""
        if not self._running:
            return

        logger.info("Stopping GroupScheduler...")
        await self._store.mark_all_in_progress_as_error(SHUTDOWN_MESSAGE)
        if self._scheduler.get_job(_FLUSH_JOB_ID) is not None:
            self._scheduler.remove_job(_FLUSH_JOB_ID)
        self._scheduler.pause()
        self._running = False
        logger.info("GroupScheduler stopped")

    async def shutdown(self) -> None:
        """Stop, then release the APScheduler."""
        await self.stop()
        if self._scheduler.state != STATE_STOPPED:
            self._scheduler.shutdown(wait=False)

    # -- Triggering ------------------------------------------------------------

    async def _fire(self, group_name: str) -> None:
        """Callback invoked by APScheduler when a group's cron fires."""
        if not self._running:
            logger.debug("Ignoring trigger for %s: scheduler not running", group_name)
            return
        config = self._groups.get(group_name)
        if config is None:
            return
        self._spawn(self._executor.execute_group(config), group_name)

    def _spawn(self, coro, label: str) -> asyncio.Task:
        """Run *coro* in the background, logging any escaped exception."""
        job = asyncio.create_task(coro, name=f"group:{label}")
        self._background.add(job)
        job.add_done_callback(self._background.discard)
        job.add_done_callback(_log_background_failure)
        return job

    async def run_group_now(self, group_name: str) -> TaskGroupRun:
        """Execute a configured group immediately, outside its schedule."""
        config = self._groups.get(group_name)
        if config is None:
            msg = f"Task group not found: {group_name}"
            raise UnknownGroupError(msg)
        logger.info("Manually triggering task group: %s", group_name)
        return await self._executor.execute_group(config)

    async def run_task_now(self, group_name: str, task_name: str) -> TaskGroupRun:
        """Execute one task of a group as its own ad-hoc group run."""
        config = self.single_task_group(group_name, task_name)
        logger.info("Manually triggering single task: %s from group: %s", task_name, group_name)
        return await self._executor.execute_group(config)

    def single_task_group(self, group_name: str, task_name: str) -> TaskGroupConfig:
        """Build the ad-hoc group used for a manual single-task run."""
        config = self._groups.get(group_name)
        if config is None:
            msg = f"Task group not found: {group_name}"
            raise UnknownGroupError(msg)
        task_config = config.get_task(task_name)
        if task_config is None:
            msg = f"Task not found: {task_name} in group {group_name}"
            raise UnknownTaskError(msg)
        return TaskGroupConfig(
            group_name=f"{group_name}_SingleTask_{task_name}",
            cron=config.cron,
            tasks=[task_config],
            parent_group=group_name,
        )

    def trigger_group(self, group_name: str) -> asyncio.Task:
        """Start a manual group run in the background and return at once."""
        if group_name not in self._groups:
            msg = f"Task group not found: {group_name}"
            raise UnknownGroupError(msg)
        return self._spawn(self.run_group_now(group_name), group_name)

    def trigger_task(self, group_name: str, task_name: str) -> asyncio.Task:
        """Start a manual single-task run in the background and return at once."""
        config = self.single_task_group(group_name, task_name)
        return self._spawn(self._executor.execute_group(config), config.group_name)

    # -- Queries & maintenance -------------------------------------------------

    def next_run_time(self, cron: str) -> str | None:
        """Next fire time of *cron* in the scheduler zone, as ISO 8601 UTC."""
        try:
            trigger = CronTrigger.from_crontab(cron, timezone=self._timezone)
        except ValueError:
            logger.exception("Invalid cron expression: %s", cron)
            return None
        now = datetime.now(trigger.timezone)
        fire_time = trigger.get_next_fire_time(None, now)
        return fire_time.astimezone(UTC).isoformat() if fire_time else None

    async def cleanup(self, days_to_keep: int = 30) -> tuple[int, int]:
        """Delete run records older than *days_to_keep* days."""
        logger.info("Cleaning up old records (keeping %d days)", days_to_keep)
        cutoff = datetime.now(UTC) - timedelta(days=days_to_keep)
        return await self._store.delete_records_older_than(cutoff)


def _log_background_failure(job: asyncio.Task) -> None:
    if job.cancelled():
        return
    exc = job.exception()
    if exc is not None:
        logger.error("Background group execution failed: %s", job.get_name(), exc_info=exc)

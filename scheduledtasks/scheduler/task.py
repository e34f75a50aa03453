"""MonitoredTask — base class for user-supplied scheduled work.

A task module subclasses ``MonitoredTask`` and implements ``execute()``.  The
base class owns the lifecycle state machine and notifies subscribers about
every status, progress, and summary change::

    class SyncOrders(MonitoredTask):
        async def execute(self) -> None:
            self.report_progress("Fetching orders", 10)
            ...
            self.report_summary("Synced 42 orders")
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from scheduledtasks.errors import TaskStateError
from scheduledtasks.scheduler.models import TaskStatus

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.CREATED: frozenset(
        {TaskStatus.IN_PROGRESS, TaskStatus.SKIPPED, TaskStatus.ERROR}
    ),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETED, TaskStatus.ERROR}),
}


class NotificationKind(StrEnum):
    STATUS_CHANGED = "status_changed"
    PROGRESS_CHANGED = "progress_changed"
    SUMMARY_CHANGED = "summary_changed"


@dataclass(frozen=True)
class TaskProgress:
    message: str
    percentage: int | None = None


@dataclass(frozen=True)
class TaskNotification:
    """Payload delivered to subscribers on every change."""

    kind: NotificationKind
    task_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    status: TaskStatus | None = None
    progress: TaskProgress | None = None
    summary: str | None = None
    error: str | None = None


Subscriber = Callable[[TaskNotification], None]


class MonitoredTask(ABC):
    """Abstract base for one unit of scheduled work.

    Args:
        task_name: Configured task name (stable across runs).
        task_id: Unique ID of this run.
        params: Configured parameters merged with computed defaults.
    """

    def __init__(
        self, task_name: str, task_id: str, params: dict[str, Any] | None = None
    ) -> None:
        self._task_name = task_name
        self._task_id = task_id
        self.params: dict[str, Any] = dict(params or {})
        self._status = TaskStatus.CREATED
        self._start_time: datetime | None = None
        self._end_time: datetime | None = None
        self._error: str | None = None
        self._summary: str | None = None
        self._progress = TaskProgress("Initialized")
        self._subscribers: dict[NotificationKind, list[Subscriber]] = {
            kind: [] for kind in NotificationKind
        }

    # -- Read-only state -------------------------------------------------------

    @property
    def task_id(self) -> str:
        return self._task_id

    @property
    def task_name(self) -> str:
        return self._task_name

    @property
    def status(self) -> TaskStatus:
        return self._status

    @property
    def start_time(self) -> datetime | None:
        return self._start_time

    @property
    def end_time(self) -> datetime | None:
        return self._end_time

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def summary(self) -> str | None:
        return self._summary

    @property
    def current_progress(self) -> TaskProgress:
        return self._progress

    # -- Observers -------------------------------------------------------------

    def subscribe(self, kind: NotificationKind, callback: Subscriber) -> None:
        """Register *callback* for *kind*; callbacks run in registration order."""
        self._subscribers[kind].append(callback)

    def subscribe_all(self, callback: Subscriber) -> None:
        for kind in NotificationKind:
            self.subscribe(kind, callback)

    def _notify(self, kind: NotificationKind, **payload: Any) -> None:
        notification = TaskNotification(kind=kind, task_id=self._task_id, **payload)
        for callback in list(self._subscribers[kind]):
            callback(notification)

    # -- State mutators --------------------------------------------------------

    def _check_transition(self, new_status: TaskStatus) -> None:
        allowed = _ALLOWED_TRANSITIONS.get(self._status, frozenset())
        if new_status not in allowed:
            msg = (
                f"Task '{self._task_name}' ({self._task_id}) cannot move "
                f"from {self._status} to {new_status}"
            )
            raise TaskStateError(msg)

    def _transition(self, new_status: TaskStatus) -> None:
        self._check_transition(new_status)
        self._status = new_status
        self._notify(NotificationKind.STATUS_CHANGED, status=new_status, error=self._error)

    def report_progress(self, message: str, percentage: int | None = None) -> None:
        """Update the progress snapshot. Never changes status."""
        self._progress = TaskProgress(message, percentage)
        self._notify(NotificationKind.PROGRESS_CHANGED, progress=self._progress)

    def report_summary(self, text: str) -> None:
        """Set the final human-readable summary."""
        self._summary = text
        self._notify(NotificationKind.SUMMARY_CHANGED, summary=text)

    def report_failure(self, message: str) -> None:
        """Mark the task failed without raising.

        ``start()`` keeps the error status when ``execute()`` returns normally
        afterwards.
        """
        if self._status == TaskStatus.ERROR:
            self._error = message
            self._notify(NotificationKind.STATUS_CHANGED, status=self._status, error=message)
            return
        self._check_transition(TaskStatus.ERROR)
        self._error = message
        self._transition(TaskStatus.ERROR)

    def skip(self, reason: str) -> None:
        """Move a task that never started straight to ``skipped``."""
        self._check_transition(TaskStatus.SKIPPED)
        self._summary = reason
        self._progress = TaskProgress(f"Task skipped: {reason}")
        self._transition(TaskStatus.SKIPPED)

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Run ``execute()`` with full lifecycle bookkeeping.

        Exceptions from ``execute()`` are recorded on the task and re-raised.
        """
        self._check_transition(TaskStatus.IN_PROGRESS)
        self._start_time = datetime.now(UTC)
        self._transition(TaskStatus.IN_PROGRESS)
        self.report_progress("Starting task...")
        try:
            await self.execute()
        except Exception as exc:
            self._end_time = datetime.now(UTC)
            self._error = str(exc) or type(exc).__name__
            if self._status != TaskStatus.ERROR:
                self._transition(TaskStatus.ERROR)
            self.report_progress("Task failed with error")
            raise

        self._end_time = datetime.now(UTC)
        if self._status == TaskStatus.ERROR:
            logger.info("Task '%s' reported failure: %s", self._task_name, self._error)
            self.report_progress("Task failed with error")
            return
        self._transition(TaskStatus.COMPLETED)
        self.report_progress("Task completed", self._progress.percentage)

    @abstractmethod
    async def execute(self) -> None:
        """The task's actual work. Implemented by task modules."""

    # -- Reporting -------------------------------------------------------------

    def get_duration(self) -> timedelta | None:
        if self._start_time and self._end_time:
            return self._end_time - self._start_time
        return None

    def snapshot(self) -> dict[str, Any]:
        """Return the fields persisted on the task's run record."""
        return {
            "status": str(self._status),
            "message": self._error or self._progress.message,
            "start_time": self._start_time.isoformat() if self._start_time else None,
            "end_time": self._end_time.isoformat() if self._end_time else None,
            "summary": self._summary,
            "percentage": self._progress.percentage,
        }

"""Task group scheduling — models, persistence, loading, execution, and status."""

from scheduledtasks.scheduler.engine import GroupScheduler
from scheduledtasks.scheduler.executor import GroupExecutor
from scheduledtasks.scheduler.loader import TaskLoader, TaskRegistry, task_registry
from scheduledtasks.scheduler.models import (
    TaskConfig,
    TaskGroupConfig,
    TaskGroupRun,
    TaskRun,
    TaskStatus,
)
from scheduledtasks.scheduler.status import StatusService, staleness
from scheduledtasks.scheduler.store import RunStore
from scheduledtasks.scheduler.task import MonitoredTask, NotificationKind, TaskNotification

__all__ = [
    "GroupExecutor",
    "GroupScheduler",
    "MonitoredTask",
    "NotificationKind",
    "RunStore",
    "StatusService",
    "TaskConfig",
    "TaskGroupConfig",
    "TaskGroupRun",
    "TaskLoader",
    "TaskNotification",
    "TaskRegistry",
    "TaskRun",
    "TaskStatus",
    "staleness",
    "task_registry",
]

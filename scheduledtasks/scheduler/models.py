"""Task group configuration and run-record data models."""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from scheduledtasks.errors import ConfigurationError

INTERRUPTED_MESSAGE = "Marked as error: Application shutdown while in progress"
SHUTDOWN_MESSAGE = "Marked as error: Application shutdown during execution"
CRASH_MESSAGE = "Task interrupted by application shutdown"


class TaskStatus(StrEnum):
    CREATED = "created"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.ERROR, TaskStatus.SKIPPED)


# -- Configuration -------------------------------------------------------------


class TaskConfig(BaseModel):
    """One task entry inside a group's ``tasks`` list.

    Attributes:
        name: Stable task identity across runs (duplicate and history lookups).
        module_path: ``.py`` file path, dotted module, or registry identifier.
        params: Arbitrary parameters merged with computed defaults.
        warning_hours: Advisory staleness threshold for the dashboard.
        error_hours: Advisory staleness threshold for the dashboard.
        kill_on_fail: Skip the rest of the group run if this task fails.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str = Field(min_length=1)
    module_path: str = Field(alias="filePath", min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)
    warning_hours: float | None = Field(default=None, alias="warningHours")
    error_hours: float | None = Field(default=None, alias="errorHours")
    kill_on_fail: bool = Field(default=False, alias="killOnFail")


class TaskGroupConfig(BaseModel):
    """A named, cron-scheduled, ordered list of tasks."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    group_name: str = Field(alias="groupName", min_length=1)
    cron: str
    tasks: list[TaskConfig] = Field(default_factory=list)
    warning_hours: float | None = Field(default=None, alias="warningHours")
    error_hours: float | None = Field(default=None, alias="errorHours")
    # Set only on ad-hoc single-task groups; names the configured group.
    parent_group: str | None = Field(default=None, exclude=True)

    @field_validator("cron")
    @classmethod
    def _five_fields(cls, value: str) -> str:
        if len(value.split()) != 5:
            msg = f"Cron expression must have 5 fields: {value!r}"
            raise ValueError(msg)
        return value

    @property
    def owner_group(self) -> str:
        """The configured group this run belongs to."""
        return self.parent_group or self.group_name

    def get_task(self, task_name: str) -> TaskConfig | None:
        return next((t for t in self.tasks if t.name == task_name), None)


def parse_group_configs(
    source: str | Path | list[TaskGroupConfig | dict[str, Any]],
) -> list[TaskGroupConfig]:
    """Build validated group configs from a JSON file path or an in-memory list.

    Raises ``ConfigurationError`` when the file cannot be read, the JSON is
    malformed, an entry fails validation, or two groups share a name.
    """
    if isinstance(source, (str, Path)):
        path = Path(source)
        try:
            raw = json.loads(path.read_text("utf-8"))
        except OSError as exc:
            msg = f"Cannot read task configuration {path}: {exc}"
            raise ConfigurationError(msg) from exc
        except json.JSONDecodeError as exc:
            msg = f"Task configuration {path} is not valid JSON: {exc}"
            raise ConfigurationError(msg) from exc
    else:
        raw = source

    if not isinstance(raw, list):
        msg = "Task configuration must be a JSON array of task groups"
        raise ConfigurationError(msg)

    groups: list[TaskGroupConfig] = []
    try:
        for entry in raw:
            if isinstance(entry, TaskGroupConfig):
                groups.append(entry)
            else:
                groups.append(TaskGroupConfig.model_validate(entry))
    except ValidationError as exc:
        msg = f"Invalid task group configuration: {exc}"
        raise ConfigurationError(msg) from exc

    seen: set[str] = set()
    for group in groups:
        if group.group_name in seen:
            msg = f"Duplicate task group name: {group.group_name}"
            raise ConfigurationError(msg)
        seen.add(group.group_name)
    return groups


# -- Run records ---------------------------------------------------------------


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class TaskGroupRun:
    """One execution of a task group (scheduled or manual)."""

    run_id: str
    group_name: str
    status: str
    message: str = ""
    start_time: str = ""
    end_time: str | None = None
    stack_trace: str | None = None
    created_at: str = ""

    def __post_init__(self) -> None:
        if not self.created_at:
            self.created_at = _now()
        if not self.start_time:
            self.start_time = self.created_at

    def to_row(self) -> tuple:
        """Serialize to a tuple matching the ``task_group_runs`` column order."""
        return (
            self.run_id,
            self.group_name,
            str(self.status),
            self.message,
            self.start_time,
            self.end_time,
            self.stack_trace,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: tuple) -> TaskGroupRun:
        return cls(
            run_id=row[0],
            group_name=row[1],
            status=row[2],
            message=row[3] or "",
            start_time=row[4],
            end_time=row[5],
            stack_trace=row[6],
            created_at=row[7],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TaskRun:
    """One execution attempt of a task within a group run.

    Attributes:
        run_id: Unique per attempt.
        task_group_run_id: Owning ``TaskGroupRun.run_id``.
        task_name: Configured task name.
        params: JSON text of the computed parameters.
        module_path: Where the task class was loaded from.
        status: One of ``TaskStatus``.
        message: Latest progress message or error text.
        percentage: 0-100 progress, when reported.
    """

    run_id: str
    task_group_run_id: str
    task_name: str
    params: str
    module_path: str
    status: str = TaskStatus.CREATED
    message: str = ""
    start_time: str | None = None
    end_time: str | None = None
    summary: str | None = None
    percentage: int | None = None
    created_at: str = ""

    def __post_init__(self) -> None:
        if not self.created_at:
            self.created_at = _now()

    @property
    def params_dict(self) -> dict[str, Any]:
        return json.loads(self.params) if self.params else {}

    def to_row(self) -> tuple:
        """Serialize to a tuple matching the ``task_runs`` column order."""
        return (
            self.run_id,
            self.task_group_run_id,
            self.task_name,
            self.params,
            self.module_path,
            str(self.status),
            self.message,
            self.start_time,
            self.end_time,
            self.summary,
            self.percentage,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: tuple) -> TaskRun:
        return cls(
            run_id=row[0],
            task_group_run_id=row[1],
            task_name=row[2],
            params=row[3],
            module_path=row[4],
            status=row[5],
            message=row[6] or "",
            start_time=row[7],
            end_time=row[8],
            summary=row[9],
            percentage=row[10],
            created_at=row[11],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def make_run_id() -> str:
    """Generate a new run ID."""
    return uuid.uuid4().hex

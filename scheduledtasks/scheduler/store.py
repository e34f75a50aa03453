"""RunStore — aiosqlite persistence for task group runs and task runs."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import aiosqlite

from scheduledtasks.config import settings
from scheduledtasks.scheduler.models import TaskGroupRun, TaskRun, TaskStatus

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_CREATE_SCHEMA = """
CREATE TABLE IF NOT EXISTS task_group_runs (
    run_id TEXT PRIMARY KEY,
    group_name TEXT NOT NULL,
    status TEXT NOT NULL,
    message TEXT,
    start_time TEXT NOT NULL,
    end_time TEXT,
    stack_trace TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS task_runs (
    run_id TEXT PRIMARY KEY,
    task_group_run_id TEXT NOT NULL,
    task_name TEXT NOT NULL,
    params TEXT NOT NULL,
    module_path TEXT NOT NULL,
    status TEXT NOT NULL,
    message TEXT,
    start_time TEXT,
    end_time TEXT,
    summary TEXT,
    percentage INTEGER,
    created_at TEXT NOT NULL,
    FOREIGN KEY (task_group_run_id) REFERENCES task_group_runs (run_id)
);

CREATE INDEX IF NOT EXISTS idx_task_group_runs_status ON task_group_runs(status);
CREATE INDEX IF NOT EXISTS idx_task_group_runs_group_name ON task_group_runs(group_name);
CREATE INDEX IF NOT EXISTS idx_task_runs_status ON task_runs(status);
CREATE INDEX IF NOT EXISTS idx_task_runs_task_name ON task_runs(task_name);
CREATE INDEX IF NOT EXISTS idx_task_runs_group_run ON task_runs(task_group_run_id);
"""

_GROUP_COLUMNS = "run_id, group_name, status, message, start_time, end_time, stack_trace, created_at"
_TASK_COLUMNS = (
    "run_id, task_group_run_id, task_name, params, module_path, status, message,"
    " start_time, end_time, summary, percentage, created_at"
)

_GROUP_UPDATABLE = frozenset({"status", "message", "start_time", "end_time", "stack_trace"})
_TASK_UPDATABLE = frozenset(
    {"status", "message", "start_time", "end_time", "summary", "percentage", "params"}
)

_OPEN_TASK_STATUSES = (TaskStatus.CREATED.value, TaskStatus.IN_PROGRESS.value)


def _set_clause(table: str, fields: dict[str, Any], allowed: frozenset[str]) -> str:
    unknown = set(fields) - allowed
    if unknown:
        msg = f"Cannot update {table} column(s): {', '.join(sorted(unknown))}"
        raise ValueError(msg)
    return ", ".join(f"{name} = ?" for name in fields)


class RunStore:
    """Persists task group runs and task runs in SQLite.

    Constructed once at process start and handed to every component that
    needs it.  Pass an explicit *db_path* for test isolation (e.g.
    ``tmp_path / "test.db"``).
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path or settings.database_path
        self._initialised = False

    @property
    def db_path(self) -> Path:
        return self._db_path

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(self._db_path))
        if not self._initialised:
            await db.executescript(_CREATE_SCHEMA)
            await db.commit()
            self._initialised = True
        return db

    async def _write(self, sql: str, params: tuple = ()) -> int:
        db = await self._connect()
        try:
            cursor = await db.execute(sql, params)
            await db.commit()
            return cursor.rowcount
        finally:
            await db.close()

    async def _fetchall(self, sql: str, params: tuple = ()) -> list[tuple]:
        db = await self._connect()
        try:
            cursor = await db.execute(sql, params)
            return list(await cursor.fetchall())
        finally:
            await db.close()

    async def _fetchone(self, sql: str, params: tuple = ()) -> tuple | None:
        db = await self._connect()
        try:
            cursor = await db.execute(sql, params)
            return await cursor.fetchone()
        finally:
            await db.close()

    # -- Task group runs -------------------------------------------------------

    async def insert_task_group_run(self, run: TaskGroupRun) -> TaskGroupRun:
        await self._write(
            f"INSERT INTO task_group_runs ({_GROUP_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            run.to_row(),
        )
        logger.debug("Inserted group run %s (%s, %s)", run.run_id, run.group_name, run.status)
        return run

    async def update_task_group_run(self, run_id: str, **fields: Any) -> bool:
        """Update the given columns of a group run. Returns True if a row changed."""
        if not fields:
            return False
        clause = _set_clause("task_group_runs", fields, _GROUP_UPDATABLE)
        values = tuple(str(v) if isinstance(v, TaskStatus) else v for v in fields.values())
        updated = await self._write(
            f"UPDATE task_group_runs SET {clause} WHERE run_id = ?",  # noqa: S608
            (*values, run_id),
        )
        return updated > 0

    async def finish_task_group_run(self, run_id: str, **fields: Any) -> bool:
        """Like ``update_task_group_run``, but only while the run is still in progress.

        Returns False when the run was already closed (e.g. marked as a
        shutdown error), leaving that first final status in place.
        """
        if not fields:
            return False
        clause = _set_clause("task_group_runs", fields, _GROUP_UPDATABLE)
        values = tuple(str(v) if isinstance(v, TaskStatus) else v for v in fields.values())
        updated = await self._write(
            f"UPDATE task_group_runs SET {clause} WHERE run_id = ? AND status = ?",  # noqa: S608
            (*values, run_id, TaskStatus.IN_PROGRESS.value),
        )
        return updated > 0

    async def get_task_group_run(self, run_id: str) -> TaskGroupRun | None:
        row = await self._fetchone(
            f"SELECT {_GROUP_COLUMNS} FROM task_group_runs WHERE run_id = ?", (run_id,)
        )
        return TaskGroupRun.from_row(row) if row else None

    async def list_task_group_runs(self, group_name: str | None = None) -> list[TaskGroupRun]:
        """Return group runs (optionally for one group), oldest first."""
        if group_name is None:
            rows = await self._fetchall(
                f"SELECT {_GROUP_COLUMNS} FROM task_group_runs ORDER BY created_at"
            )
        else:
            rows = await self._fetchall(
                f"SELECT {_GROUP_COLUMNS} FROM task_group_runs"
                " WHERE group_name = ? ORDER BY created_at",
                (group_name,),
            )
        return [TaskGroupRun.from_row(row) for row in rows]

    async def is_group_running(self, group_name: str) -> bool:
        row = await self._fetchone(
            "SELECT COUNT(*) FROM task_group_runs WHERE group_name = ? AND status = ?",
            (group_name, TaskStatus.IN_PROGRESS.value),
        )
        return bool(row and row[0] > 0)

    async def get_running_groups(self) -> list[TaskGroupRun]:
        rows = await self._fetchall(
            f"SELECT {_GROUP_COLUMNS} FROM task_group_runs WHERE status = ?"
            " ORDER BY start_time",
            (TaskStatus.IN_PROGRESS.value,),
        )
        return [TaskGroupRun.from_row(row) for row in rows]

    # -- Task runs -------------------------------------------------------------

    async def insert_task_run(self, run: TaskRun) -> TaskRun:
        await self._write(
            f"INSERT INTO task_runs ({_TASK_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            run.to_row(),
        )
        return run

    async def update_task_run(self, run_id: str, **fields: Any) -> bool:
        """Update the given columns of a task run. Returns True if a row changed."""
        if not fields:
            return False
        clause = _set_clause("task_runs", fields, _TASK_UPDATABLE)
        values = tuple(str(v) if isinstance(v, TaskStatus) else v for v in fields.values())
        updated = await self._write(
            f"UPDATE task_runs SET {clause} WHERE run_id = ?",  # noqa: S608
            (*values, run_id),
        )
        return updated > 0

    async def update_open_task_run(self, run_id: str, **fields: Any) -> bool:
        """Update a task run only while it is created or in progress."""
        if not fields:
            return False
        clause = _set_clause("task_runs", fields, _TASK_UPDATABLE)
        values = tuple(str(v) if isinstance(v, TaskStatus) else v for v in fields.values())
        updated = await self._write(
            f"UPDATE task_runs SET {clause} WHERE run_id = ? AND status IN (?, ?)",  # noqa: S608
            (*values, run_id, *_OPEN_TASK_STATUSES),
        )
        return updated > 0

    async def get_task_run(self, run_id: str) -> TaskRun | None:
        row = await self._fetchone(
            f"SELECT {_TASK_COLUMNS} FROM task_runs WHERE run_id = ?", (run_id,)
        )
        return TaskRun.from_row(row) if row else None

    async def list_task_runs(self, task_group_run_id: str) -> list[TaskRun]:
        """Return the task runs of one group run in creation order."""
        rows = await self._fetchall(
            f"SELECT {_TASK_COLUMNS} FROM task_runs WHERE task_group_run_id = ?"
            " ORDER BY created_at, rowid",
            (task_group_run_id,),
        )
        return [TaskRun.from_row(row) for row in rows]

    async def is_task_running(self, task_name: str) -> bool:
        row = await self._fetchone(
            "SELECT COUNT(*) FROM task_runs WHERE task_name = ? AND status = ?",
            (task_name, TaskStatus.IN_PROGRESS.value),
        )
        return bool(row and row[0] > 0)

    async def get_last_completed_run(self, task_name: str) -> TaskRun | None:
        """Most recent completed run of *task_name* by end time."""
        row = await self._fetchone(
            f"SELECT {_TASK_COLUMNS} FROM task_runs"
            " WHERE task_name = ? AND status = ?"
            " ORDER BY end_time DESC LIMIT 1",
            (task_name, TaskStatus.COMPLETED.value),
        )
        return TaskRun.from_row(row) if row else None

    async def get_last_run(self, task_name: str) -> TaskRun | None:
        """Most recently created run of *task_name*, whatever its status."""
        row = await self._fetchone(
            f"SELECT {_TASK_COLUMNS} FROM task_runs"
            " WHERE task_name = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (task_name,),
        )
        return TaskRun.from_row(row) if row else None

    async def fail_open_task_runs(self, task_group_run_id: str, message: str) -> int:
        """Close any created/in-progress task runs of one group run as errors."""
        return await self._write(
            "UPDATE task_runs SET status = ?, message = ?, end_time = ?"
            " WHERE task_group_run_id = ? AND status IN (?, ?)",
            (
                TaskStatus.ERROR.value,
                message,
                datetime.now(UTC).isoformat(),
                task_group_run_id,
                *_OPEN_TASK_STATUSES,
            ),
        )

    # -- Dashboard queries -----------------------------------------------------

    async def get_error_tasks(self, hours: float = 24) -> list[dict[str, Any]]:
        """Task runs that ended in error within the last *hours*, newest first."""
        cutoff = (datetime.now(UTC) - timedelta(hours=hours)).isoformat()
        rows = await self._fetchall(
            """
            SELECT t.task_name, t.task_group_run_id, g.group_name, t.status,
                   t.message, t.start_time, t.end_time, t.summary, g.stack_trace
            FROM task_runs t
            INNER JOIN task_group_runs g ON t.task_group_run_id = g.run_id
            WHERE t.status = ? AND t.start_time >= ?
            ORDER BY t.start_time DESC
            """,
            (TaskStatus.ERROR.value, cutoff),
        )
        keys = (
            "task_name",
            "task_group_run_id",
            "group_name",
            "status",
            "message",
            "start_time",
            "end_time",
            "summary",
            "stack_trace",
        )
        return [dict(zip(keys, row, strict=True)) for row in rows]

    # -- Recovery & maintenance ------------------------------------------------

    async def mark_all_in_progress_as_error(self, message: str) -> tuple[int, int]:
        """Mark every unfinished group and task run as an error.

        Returns ``(tasks_updated, groups_updated)``.
        """
        now = datetime.now(UTC).isoformat()
        db = await self._connect()
        try:
            groups = await db.execute(
                "UPDATE task_group_runs SET status = ?, message = ?, end_time = ?"
                " WHERE status = ?",
                (TaskStatus.ERROR.value, message, now, TaskStatus.IN_PROGRESS.value),
            )
            tasks = await db.execute(
                "UPDATE task_runs SET status = ?, message = ?, end_time = ?"
                " WHERE status IN (?, ?)",
                (TaskStatus.ERROR.value, message, now, *_OPEN_TASK_STATUSES),
            )
            await db.commit()
            counts = (tasks.rowcount, groups.rowcount)
        finally:
            await db.close()

        if any(counts):
            logger.info(
                "Marked %d task(s) and %d task group(s) as errors: %s",
                counts[0],
                counts[1],
                message,
            )
        return counts

    async def delete_records_older_than(self, cutoff: datetime) -> tuple[int, int]:
        """Delete rows created before *cutoff*. Returns ``(tasks, groups)`` deleted."""
        cutoff_iso = cutoff.astimezone(UTC).isoformat()
        db = await self._connect()
        try:
            tasks = await db.execute("DELETE FROM task_runs WHERE created_at < ?", (cutoff_iso,))
            groups = await db.execute(
                "DELETE FROM task_group_runs WHERE created_at < ?", (cutoff_iso,)
            )
            await db.commit()
            counts = (tasks.rowcount, groups.rowcount)
        finally:
            await db.close()
        logger.info(
            "Cleanup completed: %d task(s) and %d task group(s) deleted", counts[0], counts[1]
        )
        return counts

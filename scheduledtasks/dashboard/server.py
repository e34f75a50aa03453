"""Dashboard JSON API over aiohttp.

Thin glue: every route parses the request, delegates to the scheduler or the
status service, and maps errors to status codes.  Manual runs are started in
the background and acknowledged immediately; their outcome shows up in later
status queries.
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from aiohttp import web

from scheduledtasks.config import settings
from scheduledtasks.errors import UnknownGroupError, UnknownTaskError

if TYPE_CHECKING:
    from scheduledtasks.scheduler.engine import GroupScheduler
    from scheduledtasks.scheduler.status import StatusService

logger = logging.getLogger(__name__)

API_PREFIX = "/task-scheduler/api"
DEFAULT_ERROR_HOURS = 24
DEFAULT_CLEANUP_DAYS = 30

SCHEDULER_KEY = web.AppKey("scheduler", object)
STATUS_KEY = web.AppKey("status", object)
STARTED_KEY = web.AppKey("started", float)


def _scheduler(request: web.Request) -> GroupScheduler:
    return request.app[SCHEDULER_KEY]  # type: ignore[return-value]


def _status(request: web.Request) -> StatusService:
    return request.app[STATUS_KEY]  # type: ignore[return-value]


def _positive_number(raw: object, default: float) -> float:
    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


async def _health(request: web.Request) -> web.Response:
    """GET /health — basic liveness check."""
    return web.json_response(
        {
            "status": "healthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "uptime": round(time.monotonic() - request.app[STARTED_KEY], 3),
        }
    )


async def _get_status(request: web.Request) -> web.Response:
    try:
        return web.json_response(await _status(request).get_status())
    except Exception:
        logger.exception("Failed to get status")
        return web.json_response({"error": "Failed to get status"}, status=500)


async def _get_task_summary(request: web.Request) -> web.Response:
    try:
        return web.json_response(await _status(request).get_task_summary())
    except Exception:
        logger.exception("Failed to get task summary")
        return web.json_response({"error": "Failed to get task summary"}, status=500)


async def _get_errors(request: web.Request) -> web.Response:
    hours = _positive_number(request.query.get("hours"), DEFAULT_ERROR_HOURS)
    try:
        return web.json_response(await _status(request).get_error_tasks(hours))
    except Exception:
        logger.exception("Failed to get error tasks")
        return web.json_response({"error": "Failed to get error tasks"}, status=500)


async def _run_group(request: web.Request) -> web.Response:
    group_name = request.match_info["group_name"]
    try:
        _scheduler(request).trigger_group(group_name)
    except UnknownGroupError as exc:
        return web.json_response({"error": str(exc)}, status=404)
    return web.json_response(
        {"success": True, "message": f"Task group {group_name} triggered successfully"}
    )


async def _run_task(request: web.Request) -> web.Response:
    group_name = request.match_info["group_name"]
    task_name = request.match_info["task_name"]
    try:
        _scheduler(request).trigger_task(group_name, task_name)
    except (UnknownGroupError, UnknownTaskError) as exc:
        return web.json_response({"error": str(exc)}, status=404)
    return web.json_response(
        {
            "success": True,
            "message": f"Task {task_name} from group {group_name} triggered successfully",
        }
    )


async def _cleanup(request: web.Request) -> web.Response:
    payload: dict = {}
    if request.can_read_body:
        try:
            payload = await request.json()
        except Exception:
            logger.warning("Cleanup request: invalid JSON body, using defaults")
    if not isinstance(payload, dict):
        payload = {}
    days = int(_positive_number(payload.get("days"), DEFAULT_CLEANUP_DAYS))
    try:
        tasks_deleted, groups_deleted = await _scheduler(request).cleanup(days)
    except Exception as exc:
        logger.exception("Cleanup failed")
        return web.json_response({"error": str(exc)}, status=500)
    return web.json_response(
        {
            "success": True,
            "message": f"Cleanup completed for {days} days",
            "tasks_deleted": tasks_deleted,
            "groups_deleted": groups_deleted,
        }
    )


def _create_web_app(scheduler: GroupScheduler, status: StatusService) -> web.Application:
    """Build the aiohttp Application with routes."""
    app = web.Application()
    app[SCHEDULER_KEY] = scheduler
    app[STATUS_KEY] = status
    app[STARTED_KEY] = time.monotonic()
    app.router.add_get("/health", _health)
    app.router.add_get(f"{API_PREFIX}/status", _get_status)
    app.router.add_get(f"{API_PREFIX}/task-summary", _get_task_summary)
    app.router.add_get(f"{API_PREFIX}/errors", _get_errors)
    app.router.add_post(f"{API_PREFIX}/run-group/{{group_name}}", _run_group)
    app.router.add_post(f"{API_PREFIX}/run-task/{{group_name}}/{{task_name}}", _run_task)
    app.router.add_post(f"{API_PREFIX}/cleanup", _cleanup)
    return app


class DashboardServer:
    """Manages the aiohttp server lifecycle."""

    def __init__(
        self,
        scheduler: GroupScheduler,
        status: StatusService,
        host: str | None = None,
        port: int | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._status = status
        self.host = host or settings.dashboard_host
        self.port = port or settings.dashboard_port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Start serving the dashboard API."""
        app = _create_web_app(self._scheduler, self._status)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("Dashboard API listening on http://%s:%d%s", self.host, self.port, API_PREFIX)

    async def stop(self) -> None:
        """Shut down the server gracefully."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Dashboard server stopped")

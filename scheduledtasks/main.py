"""scheduledtasks entry point."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path

from scheduledtasks.config import settings
from scheduledtasks.dashboard.server import DashboardServer
from scheduledtasks.errors import ConfigurationError
from scheduledtasks.scheduler import (
    GroupExecutor,
    GroupScheduler,
    RunStore,
    StatusService,
    TaskLoader,
)
from scheduledtasks.scheduler.models import CRASH_MESSAGE

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run scheduled task groups with a dashboard API.")
    parser.add_argument(
        "--config",
        type=Path,
        default=settings.task_config_path,
        help="Path to the task group JSON configuration",
    )
    parser.add_argument("--port", type=int, default=settings.dashboard_port, help="Dashboard port")
    return parser.parse_args(argv)


async def run(config_path: Path, port: int) -> int:
    """Run the scheduler and dashboard until SIGINT/SIGTERM. Returns an exit code."""
    # Registers the built-in demo tasks.
    import scheduledtasks.tasks  # noqa: F401

    store = RunStore(settings.database_path)
    executor = GroupExecutor(store, TaskLoader(store))
    scheduler = GroupScheduler(store, executor)
    status = StatusService(store, executor, scheduler)
    server = DashboardServer(scheduler, status, port=port)

    try:
        await scheduler.load(config_path)
    except ConfigurationError:
        logger.exception("Failed to load task configuration from %s", config_path)
        return 1

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    try:
        await scheduler.cleanup(settings.retention_days)
        await scheduler.start()
        await server.start()
        logger.info("Task scheduler started with %d group(s)", len(scheduler.groups))
        await stop_event.wait()
        logger.info("Received shutdown signal. Shutting down gracefully...")
    except Exception:
        logger.exception("Unexpected failure; marking in-progress runs as errors")
        try:
            await store.mark_all_in_progress_as_error(CRASH_MESSAGE)
        except Exception:
            logger.exception("Could not mark in-progress runs after failure")
        return 1
    finally:
        await server.stop()
        await scheduler.shutdown()
    return 0


def main(argv: list[str] | None = None) -> None:
    """Start the scheduler and dashboard."""
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )
    args = _parse_args(argv)
    logger.info("Starting scheduledtasks with config %s", args.config)
    sys.exit(asyncio.run(run(args.config, args.port)))


if __name__ == "__main__":
    main()

"""Demo tasks for trying out a schedule without writing a task module."""

from __future__ import annotations

import asyncio

from scheduledtasks.scheduler.loader import task_registry
from scheduledtasks.scheduler.task import MonitoredTask

_STEPS = (
    ("Processing data...", 25),
    ("Halfway complete...", 50),
    ("Almost done...", 75),
    ("Finalizing...", 90),
)


@task_registry.task("demo.progress")
class ProgressDemoTask(MonitoredTask):
    """Walks through a few progress steps and writes a summary.

    Params:
        stepSeconds: Pause between steps (default 3).
        items: Item count reported in the summary (default 42).
    """

    async def execute(self) -> None:
        delay = float(self.params.get("stepSeconds", 3))
        self.report_progress("Starting demo task...", 0)
        for message, percentage in _STEPS:
            await asyncio.sleep(delay)
            self.report_progress(message, percentage)
        self.report_progress("Task completed!", 100)
        items = self.params.get("items", 42)
        self.report_summary(
            f"Demo task completed successfully - processed {items} items"
            f" (changes since {self.params.get('lastChanged')})"
        )


@task_registry.task("demo.failing")
class FailingDemoTask(MonitoredTask):
    """Reports some progress, then raises."""

    async def execute(self) -> None:
        self.report_progress("Starting demo task...", 0)
        await asyncio.sleep(float(self.params.get("stepSeconds", 1)))
        self.report_progress("Processing data...", 25)
        msg = "Simulated task error for testing purposes"
        raise RuntimeError(msg)

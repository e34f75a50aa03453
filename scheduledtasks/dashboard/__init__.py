"""HTTP dashboard API."""

from scheduledtasks.dashboard.server import DashboardServer

__all__ = ["DashboardServer"]

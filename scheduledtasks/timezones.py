"""Fixed-zone wall-clock conversion for downstream query filters.

Task parameters such as ``lastChanged`` are consumed by systems that compare
against zone-naive local-time columns.  These helpers re-express a UTC
instant as the wall-clock reading of the scheduler's fixed zone, tagged as
UTC (a deliberate "fake UTC" value).
"""

from __future__ import annotations

import zoneinfo
from datetime import UTC, datetime

from scheduledtasks.config import settings


def to_fixed_zone_wall_clock(instant: datetime, tz: str | None = None) -> datetime:
    """Return *instant*'s wall-clock fields in *tz*, re-tagged as UTC.

    Naive datetimes are treated as UTC.  *tz* defaults to the scheduler
    timezone from settings.
    """
    zone = zoneinfo.ZoneInfo(tz or settings.scheduler_timezone)
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=UTC)
    local = instant.astimezone(zone)
    return local.replace(tzinfo=UTC)


def format_js_iso(dt: datetime) -> str:
    """Format a UTC datetime as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Parse an ISO 8601 string (``Z`` suffix allowed) into an aware datetime."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt

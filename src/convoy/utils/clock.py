"""Millisecond timestamps and reporting windows."""

import time
from collections.abc import Callable
from datetime import datetime, timedelta

Clock = Callable[[], int]

DAY_MS = 24 * 60 * 60 * 1000


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return time.time_ns() // 1_000_000


def local_day_bounds(at: datetime | None = None) -> tuple[int, int]:
    """Start and end (inclusive) of the local calendar day containing ``at``."""
    at = at or datetime.now()
    start = at.replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=1)
    return int(start.timestamp() * 1000), int(end.timestamp() * 1000) - 1


def ms_to_datetime(ts: int) -> datetime:
    return datetime.fromtimestamp(ts / 1000)

"""
Time helpers for the sync engine.

All timestamps are stored as naive UTC datetimes. Cadence arithmetic lives
here so the config service and the scheduler agree on when the next
automatic sync is due.
"""
from datetime import datetime, timezone, timedelta
from typing import Optional

# Interval between automatic syncs per cadence; "manual" never schedules
CADENCE_INTERVALS = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "weekly": timedelta(weeks=1),
}


def utc_now() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def next_sync_after(cadence: str, last_sync_at: Optional[datetime] = None) -> Optional[datetime]:
    """
    Compute the next automatic sync time for a cadence.

    Args:
        cadence: manual, hourly, daily or weekly
        last_sync_at: When the previous sync ran (defaults to now)

    Returns:
        Next due time, or None for manual cadence

    Examples:
        >>> next_sync_after("manual") is None
        True
        >>> next_sync_after("daily", datetime(2025, 1, 1, 2, 0))
        datetime.datetime(2025, 1, 2, 2, 0)
    """
    interval = CADENCE_INTERVALS.get(cadence)
    if interval is None:
        return None
    return (last_sync_at or utc_now()) + interval

"""Time helpers shared by the settlement jobs."""
from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def add_business_days(start: datetime, days: int) -> datetime:
    """
    Add business days to a timestamp, skipping Saturdays and Sundays.

    Args:
        start: Starting timestamp
        days: Number of business days to add

    Returns:
        datetime: Timestamp ``days`` business days after ``start``
    """
    result = start
    added = 0
    while added < days:
        result += timedelta(days=1)
        if result.weekday() < 5:
            added += 1
    return result

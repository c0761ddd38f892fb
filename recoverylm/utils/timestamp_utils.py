"""
Timestamp utilities for consistent local-time handling across the dispatch core.

All datetimes handled by the core are naive and expressed in the local time of
the device hosting the process.
"""

import time
from datetime import date, datetime
from typing import Optional


def now() -> datetime:
    """Current local time."""
    return datetime.now()


def to_millis(moment: Optional[datetime] = None) -> int:
    """Convert a datetime to epoch milliseconds.

    Args:
        moment: Local datetime (optional, uses current time if None)

    Returns:
        Milliseconds since the epoch
    """
    if moment is None:
        return int(time.time() * 1000)
    return int(moment.timestamp() * 1000)


def from_millis(millis: int) -> datetime:
    """Convert epoch milliseconds to a local datetime."""
    return datetime.fromtimestamp(millis / 1000)


def format_date(moment: datetime) -> str:
    """Format a datetime as YYYY-MM-DD."""
    return moment.strftime('%Y-%m-%d')


def parse_date(value: str) -> date:
    """Parse a YYYY-MM-DD string."""
    return datetime.strptime(value, '%Y-%m-%d').date()


def days_between(first: str, second: str) -> int:
    """Whole days between two YYYY-MM-DD dates, regardless of order."""
    return abs((parse_date(second) - parse_date(first)).days)


def today() -> str:
    """Today's local date as YYYY-MM-DD."""
    return format_date(now())

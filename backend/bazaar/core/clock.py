"""
Time source for expiry comparisons.

Every expires_at in the core is a naive UTC datetime (SQLite DateTime columns
do not keep tzinfo), so the clock hands out the same shape.
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

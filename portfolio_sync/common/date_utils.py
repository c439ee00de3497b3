"""
Date utilities for interaction recency.

All stored timestamps are naive UTC.
"""

import math
from datetime import datetime, timezone
from typing import Optional


SECONDS_PER_DAY = 86400


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def days_since(moment: Optional[datetime], now: Optional[datetime] = None) -> Optional[int]:
    """
    Whole days elapsed since a timestamp, never negative.

    Args:
        moment: Past timestamp (None if it never happened)
        now: Reference time (defaults to utcnow())

    Returns:
        int or None: Floor of elapsed days, or None when moment is None
    """
    if moment is None:
        return None
    now = to_naive_utc(now) if now else utcnow()
    elapsed = (now - to_naive_utc(moment)).total_seconds()
    return max(0, math.floor(elapsed / SECONDS_PER_DAY))


def days_since_last_interaction(
    last_visit: Optional[datetime],
    last_call: Optional[datetime],
    now: Optional[datetime] = None
) -> Optional[int]:
    """
    Days since the most recent visit or phone call.

    Returns None when the client has never been contacted so the caller can
    apply its default.
    """
    moments = [m for m in (last_visit, last_call) if m is not None]
    if not moments:
        return None
    return days_since(max(to_naive_utc(m) for m in moments), now)

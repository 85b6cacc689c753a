"""
Datetime utility functions.
Provides replacements for deprecated datetime functions.
"""

from datetime import datetime
from typing import Optional
import pytz


def utcnow() -> datetime:
    """
    Get current UTC datetime using pytz.UTC.

    Returns:
        Current UTC datetime with pytz timezone information
    """
    return datetime.now(pytz.UTC)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Make a datetime timezone-aware in UTC.

    Naive values (SQLite drops tzinfo on round-trip) are assumed to already be UTC.

    Args:
        value: Datetime to normalize, or None

    Returns:
        UTC-aware datetime, or None if value is None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def isoformat_or_none(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as an ISO-8601 UTC string."""
    value = ensure_utc(value)
    return value.isoformat() if value else None

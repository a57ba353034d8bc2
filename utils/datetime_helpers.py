"""
Datetime helper utilities to ensure consistent timezone handling across the engine.

All deposit, audit and notification timestamps are stored as naive UTC datetimes.
Anything arriving from callers (ISO strings, timezone-aware datetimes) is
normalized here before it reaches a record.
"""

from datetime import datetime, timezone
from typing import Callable, Optional, Union
import logging

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Args:
        dt: Datetime that may be timezone-aware or naive

    Returns:
        Naive datetime in UTC, or None if input is None

    Example:
        >>> aware_dt = datetime.now(timezone.utc)
        >>> naive_dt = ensure_naive_datetime(aware_dt)
        >>> assert naive_dt.tzinfo is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """
    Get current UTC time as naive datetime.

    This is the default clock for every service in the engine.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse an ISO8601 string (or pass through a datetime) into naive UTC.

    Returns None when the value cannot be interpreted as a timestamp.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_naive_datetime(value)
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    # fromisoformat() only learned the "Z" suffix in 3.11
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_naive_datetime(datetime.fromisoformat(text))
    except ValueError:
        logger.debug(f"Unparseable timestamp: {value!r}")
        return None


def format_timestamp(dt: datetime) -> str:
    """Format a timestamp as "YYYY-MM-DD HH:MM UTC" for user-facing messages"""
    dt = ensure_naive_datetime(dt)
    return f"{dt.strftime('%Y-%m-%d %H:%M')} UTC"

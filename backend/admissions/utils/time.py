"""Time Utilities - UTC timestamps and formatting"""
from datetime import datetime, timezone, timedelta
from typing import Any, Optional
from dateutil import parser as date_parser


def truncate_to_millis(dt: datetime) -> datetime:
    """Drop sub-millisecond precision (BSON dates store milliseconds)"""
    return dt.replace(microsecond=(dt.microsecond // 1000) * 1000)


def utc_now() -> datetime:
    """Get current UTC datetime at storage precision"""
    return truncate_to_millis(datetime.now(timezone.utc))


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and normalise aware ones"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_iso(dt: datetime) -> str:
    """
    Format datetime to ISO 8601 string

    Args:
        dt: Datetime object

    Returns:
        ISO formatted string with Z suffix for UTC
    """
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 string to datetime

    Args:
        iso_string: ISO formatted datetime string

    Returns:
        Datetime object in UTC
    """
    return ensure_utc(date_parser.isoparse(iso_string))


def coerce_datetime(value: Any) -> Optional[datetime]:
    """Accept a datetime or an ISO string, return an aware UTC datetime"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        return parse_iso(value)
    raise TypeError(f"Expected datetime or ISO string, got {type(value).__name__}")


def add_seconds(dt: datetime, seconds: float) -> datetime:
    """Add seconds to datetime"""
    return dt + timedelta(seconds=seconds)


def days_between(start: datetime, end: datetime) -> int:
    """Whole days elapsed from start to end (negative if end is earlier)"""
    delta = ensure_utc(end) - ensure_utc(start)
    return int(delta.total_seconds() // 86400)


def hours_between(start: datetime, end: datetime) -> int:
    """Whole hours elapsed from start to end"""
    delta = ensure_utc(end) - ensure_utc(start)
    return int(delta.total_seconds() // 3600)

"""Timezone utilities for consistent UTC handling.

Devices report subscription times as xsd:dateTime strings. Everything the
engine compares or schedules against is normalized to timezone-aware UTC.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Get current UTC time as a timezone-aware datetime.

    Returns:
        Current time in UTC with timezone info attached.
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Ensure a datetime is timezone-aware UTC.

    If the datetime is naive (no timezone), assume it's UTC and attach the timezone.
    If it already has a timezone, convert to UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_utc_isoformat(dt: datetime) -> str:
    """Convert datetime to ISO 8601 format with Z suffix for UTC."""
    utc_dt = ensure_utc(dt)
    return utc_dt.isoformat().replace("+00:00", "Z")


def wss_created(dt: Optional[datetime] = None) -> str:
    """Format a UsernameToken Created stamp (millisecond precision, Z suffix)."""
    utc_dt = ensure_utc(dt or utc_now())
    return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond // 1000:03d}Z"


def parse_xsd_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an xsd:dateTime as sent by devices.

    Accepts a trailing Z, an explicit offset, fractional seconds of any
    length and naive values (taken as UTC). Returns None when unparseable.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # fromisoformat before 3.11 only accepts 3 or 6 fractional digits
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        while tail and tail[0].isdigit():
            digits, tail = digits + tail[0], tail[1:]
        text = f"{head}.{digits[:6].ljust(6, '0')}{tail}"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None

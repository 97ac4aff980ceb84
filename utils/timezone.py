"""UTC-everywhere time handling for tokens, sessions and lockouts."""

from datetime import datetime, timezone


def now_utc() -> datetime:
    """
    Current time in UTC.

    Use this instead of datetime.now() everywhere.
    """
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """
    Convert a datetime to UTC.

    Raises ValueError if datetime is naive (no timezone).
    """
    if dt.tzinfo is None:
        raise ValueError(
            "Cannot convert naive datetime to UTC. Datetime must be timezone-aware."
        )
    return dt.astimezone(timezone.utc)


def from_epoch(seconds: int | float) -> datetime:
    """Convert a unix timestamp (JWT `iat`/`exp`) to an aware UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def isoformat_z(dt: datetime) -> str:
    """Render a UTC datetime as ISO 8601 with millisecond precision and `Z` suffix."""
    return to_utc(dt).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 datetime string to UTC datetime.

    Accepts a trailing `Z`. Raises ValueError if string has no timezone info.
    """
    if iso_string.endswith("Z"):
        iso_string = iso_string[:-1] + "+00:00"
    dt = datetime.fromisoformat(iso_string)
    if dt.tzinfo is None:
        raise ValueError(
            "Cannot parse naive datetime string. "
            "Include timezone offset (e.g., 'Z' or '+00:00')."
        )
    return to_utc(dt)

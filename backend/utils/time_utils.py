"""
Time helpers shared by the freshness cache, the scanner and the scheduler.

All datetimes handled here are timezone-aware UTC. Docker reports creation
times as RFC 3339 strings with nanosecond precision, which datetime cannot
parse directly.
"""

import re
from datetime import datetime, timedelta, timezone

_FRACTION_RE = re.compile(r"\.(\d+)")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo), convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_docker_timestamp(value: str) -> datetime:
    """
    Parse a Docker RFC 3339 timestamp.

    Examples:
        "2024-01-15T10:30:00.123456789Z" -> 2024-01-15 10:30:00.123456+00:00
        "2024-01-15T10:30:00Z"           -> 2024-01-15 10:30:00+00:00

    Raises:
        ValueError: If the timestamp is malformed
    """
    if not value:
        raise ValueError("empty timestamp")

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Trim nanoseconds to microseconds
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    return ensure_utc(datetime.fromisoformat(text))


def days_passed(since: datetime, now: datetime = None) -> int:
    """Whole days elapsed since a timestamp (truncated, like the age label)."""
    now = now or utcnow()
    elapsed = ensure_utc(now) - ensure_utc(since)
    return int(elapsed.total_seconds() / 86400)


def humanize_duration(duration: timedelta) -> str:
    """
    Format a duration for log output.

    Examples:
        45s     -> "45 second(s)"
        90s     -> "1 minute(s) and 30 second(s)"
        1d2h    -> "1 day(s), 2 hour(s), 0 minute(s) and 0 second(s)"
    """
    total = int(duration.total_seconds())
    if total < 60:
        return f"{total} second(s)"

    days, remainder = divmod(total, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, seconds = divmod(remainder, 60)

    if total < 3600:
        return f"{minutes} minute(s) and {seconds} second(s)"
    if total < 86400:
        return f"{hours} hour(s), {minutes} minute(s) and {seconds} second(s)"
    return f"{days} day(s), {hours} hour(s), {minutes} minute(s) and {seconds} second(s)"

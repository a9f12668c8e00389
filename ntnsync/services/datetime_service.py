"""Datetime parsing: Notion timestamps in, RFC 3339 out."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

import pendulum

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|us|ns|d|h|m|s)")

_DURATION_UNITS: dict[str, float] = {
    "ns": 1e-9,
    "us": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
}


def parse_datetime(value: str | datetime | None) -> datetime | None:
    """Parse a Notion or RFC 3339 timestamp into a timezone-aware datetime.

    Returns None for empty input. Naive values are assumed to be UTC.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    value_str = value.strip()
    if not value_str:
        return None

    parsed = pendulum.parse(value_str, tz="UTC", strict=False)
    if not isinstance(parsed, pendulum.DateTime):
        # pendulum.parse returns Date for date-only strings
        parsed = pendulum.datetime(
            parsed.year, parsed.month, parsed.day, tz="UTC"  # type: ignore[union-attr]
        )
    return parsed  # type: ignore[return-value]


def format_rfc3339(dt: datetime | None) -> str:
    """Format a datetime as RFC 3339 with second precision, or '' for None."""
    if dt is None:
        return ""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def parse_duration(value: str | float | timedelta | None) -> timedelta:
    """Parse a Go-style duration string such as ``90s``, ``1h30m`` or ``7d``.

    Bare numbers are seconds. Empty input and ``0`` yield a zero duration.
    Raises ValueError for anything else.
    """
    if value is None:
        return timedelta(0)
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        return timedelta(seconds=float(value))

    text = value.strip().lower()
    if not text or text == "0":
        return timedelta(0)
    try:
        return timedelta(seconds=float(text))
    except ValueError:
        pass

    total = 0.0
    pos = 0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        msg = f"Invalid duration: {value!r}"
        raise ValueError(msg)
    return timedelta(seconds=total)


def format_duration(delta: timedelta) -> str:
    """Format a duration compactly, e.g. ``1h2m3s``."""
    seconds = int(delta.total_seconds())
    if seconds <= 0:
        return "0s"
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return "".join(parts)

"""Datetime parsing: lax input -> strict UTC output."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pendulum

# Smallest step the stored timestamps can resolve.
TIMESTAMP_RESOLUTION = timedelta(microseconds=1)


def parse_datetime(value: str | datetime, default_tz: str = "UTC") -> datetime:
    """Parse a lax datetime string into a timezone-aware datetime.

    Accepts the forms clients and older backups send:
    - 2026-02-02T22:21:29.975Z
    - 2026-02-02 22:21:29.975359+00
    - 2026-02-02 22:21
    - 2026-02-02
    - epoch milliseconds as a digit string

    Missing timezone defaults to default_tz.
    Missing time components default to zeros.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            tz = pendulum.timezone(default_tz)
            value = value.replace(tzinfo=tz)  # type: ignore[arg-type]
        return value

    value_str = value.strip()
    if not value_str:
        msg = "Empty timestamp"
        raise ValueError(msg)
    if value_str.isdigit():
        return pendulum.from_timestamp(int(value_str) / 1000, tz="UTC")

    parsed = pendulum.parse(value_str, tz=default_tz, strict=False)
    if isinstance(parsed, pendulum.DateTime):
        return parsed
    # pendulum.parse also accepts durations and bare times
    if not isinstance(parsed, pendulum.Date):
        msg = f"Not a date or timestamp: {value_str!r}"
        raise ValueError(msg)
    return pendulum.datetime(parsed.year, parsed.month, parsed.day, tz=default_tz)


def to_utc(dt: datetime) -> datetime:
    """Convert to a plain ``datetime`` in UTC. Naive values are taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    converted = dt.astimezone(timezone.utc)
    return datetime(
        converted.year,
        converted.month,
        converted.day,
        converted.hour,
        converted.minute,
        converted.second,
        converted.microsecond,
        tzinfo=timezone.utc,
    )


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def next_timestamp(previous: datetime | None) -> datetime:
    """Return a stamp strictly later than ``previous``, even if the clock is behind."""
    current = now_utc()
    if previous is None:
        return current
    floor = to_utc(previous) + TIMESTAMP_RESOLUTION
    return max(current, floor)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for JSON serialization."""
    return to_utc(dt).isoformat()

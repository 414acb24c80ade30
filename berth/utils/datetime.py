"""Datetime helpers.

Provides UTC timestamp helpers without using deprecated ``datetime.utcnow()``.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return current UTC time as a naive datetime.

    Models store UTC timestamps as naive datetimes (SQLite drops tzinfo), so
    every comparison against a stored value must use this helper.
    """
    return datetime.now(UTC).replace(tzinfo=None)


def epoch_millis(moment: datetime) -> int:
    """Milliseconds since the epoch for a naive UTC datetime."""
    return int(moment.replace(tzinfo=UTC).timestamp() * 1000)

"""Serialization helpers shared by the model modules."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def parse_iso(value: Any) -> datetime | None:
    """Parse an ISO-8601 value into a naive local datetime.

    Offsets (``Z``, ``+02:00``) are converted to local time and dropped;
    every clock in the system is naive local time.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def seconds(value: timedelta | None) -> float | None:
    return value.total_seconds() if value is not None else None


def parse_seconds(value: Any) -> timedelta | None:
    if value is None:
        return None
    return timedelta(seconds=float(value))


def clamp_unit(value: float) -> float:
    """Clamp a score into [0, 1]."""
    return max(0.0, min(1.0, float(value)))

"""Datetime helpers shared across the application."""

from __future__ import annotations

from datetime import datetime

__all__ = [
    "local_now",
    "to_millis",
    "from_millis",
    "midnight_millis",
]


def local_now() -> datetime:
    """Return the current time as a timezone-aware local datetime."""
    return datetime.now().astimezone()


def to_millis(value: datetime) -> int:
    """Convert ``value`` into integer epoch milliseconds."""
    return int(value.timestamp() * 1000)


def from_millis(value: int) -> datetime:
    """Convert epoch milliseconds into a local timezone-aware datetime."""
    return datetime.fromtimestamp(value / 1000).astimezone()


def midnight_millis(value: datetime) -> int:
    """Return epoch milliseconds of the midnight starting ``value``'s day.

    The midnight is taken in ``value``'s own timezone (local time for naive
    values), so daily quotas follow the operator's calendar day.
    """
    midnight = value.replace(hour=0, minute=0, second=0, microsecond=0)
    return to_millis(midnight)

"""Centralised wall-clock helpers — single source of truth for 'now'.

Job and section timestamps, event timestamps and report headers all read the
clock through here, so tests can patch one function.

Usage:
    from threatscribe.utils.clock import now_utc, parse_timestamp
"""

from __future__ import annotations

from datetime import datetime, timezone


def now_utc() -> datetime:
    """Return the current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def report_stamp() -> str:
    """Human-readable stamp for report headers: '2026-02-23 14:05 UTC'"""
    return now_utc().strftime("%Y-%m-%d %H:%M UTC")


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Normalise a stored timestamp (ISO text from SQLite, datetime from asyncpg).

    Naive values are assumed to be UTC.
    """
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value

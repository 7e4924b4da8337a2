"""Shared utility helpers for cytube-bot."""

from __future__ import annotations

from datetime import datetime, timezone


def normalize_username(username: str) -> str:
    """Normalize a CyTube username for database keys.

    Chat mentions arrive as ``@name`` or ``-name``; both map to ``name``.
    """
    return username.strip().lstrip("@-").lower()


def now_utc() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def db_timestamp(dt: datetime | None = None) -> str:
    """Format a datetime for SQLite storage.

    Fixed-width microsecond precision so stored values compare correctly
    as strings.
    """
    if dt is None:
        dt = now_utc()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(ts: str | None) -> datetime | None:
    """Parse SQLite TIMESTAMP string to timezone-aware datetime, or None."""
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(ts)
        # SQLite CURRENT_TIMESTAMP values are naive UTC
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except (ValueError, TypeError):
        return None

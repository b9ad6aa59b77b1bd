"""Shared utility helpers for longshot."""

from __future__ import annotations

from datetime import datetime, timezone

from .errors import Unauthenticated

DB_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def now_utc() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def to_db_timestamp(dt: datetime) -> str:
    """Render an aware datetime as a sortable UTC string for SQLite columns.

    Fixed-width with microseconds, so lexical order equals time order.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(DB_TIMESTAMP_FORMAT)


def parse_timestamp(ts: str | None) -> datetime | None:
    """Parse SQLite TIMESTAMP string to timezone-aware datetime, or None."""
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(ts)
        # SQLite stores naive timestamps as UTC
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except (ValueError, TypeError):
        return None


def require_identity(account_id: int | None) -> int:
    """Return the resolved account id, or raise ``Unauthenticated``."""
    if account_id is None:
        raise Unauthenticated("No resolved identity for this request.")
    return account_id

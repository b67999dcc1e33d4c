# payman_billing/billing/utils/time_helpers.py
"""
Time helpers for the billing engine.
All timestamps in code are aware UTC datetimes.
The DB stores naive UTC (MySQL DATETIME does not keep a timezone), so values are
converted on the way in and normalized on the way out.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

UTC = timezone.utc


def now_utc() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def to_aware_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalizes a datetime to aware UTC.
    A naive value is treated as UTC (that is how the DB hands it back).
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_utc_for_db(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Converts a datetime to naive UTC for storage.
    A naive value is assumed to already be UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(UTC).replace(tzinfo=None)


def from_db_naive(dt: Optional[datetime]) -> Optional[datetime]:
    """Converts a naive UTC datetime read from the DB to aware UTC."""
    return to_aware_utc(dt)


def iso_utc(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 string with a Z suffix, or None."""
    if dt is None:
        return None
    aware = to_aware_utc(dt)
    return aware.isoformat().replace("+00:00", "Z")


def unix_ts(dt: Optional[datetime] = None) -> int:
    """Unix time seconds for dt (now if omitted)."""
    return int((to_aware_utc(dt) if dt is not None else now_utc()).timestamp())

"""Utilities for working with timestamps in UTC."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat_z(dt: Optional[datetime] = None) -> str:
    """Return ``dt`` (default: now) as ``YYYY-MM-DDTHH:MM:SS.mmmZ``.

    The millisecond precision and trailing ``Z`` match the timestamps found
    in key files written by earlier releases, so records sort consistently.
    """

    value = ensure_utc(dt or utc_now())
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


__all__ = ["utc_now", "ensure_utc", "isoformat_z"]

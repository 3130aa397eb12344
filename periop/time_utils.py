"""Utilities for working with timestamps in UTC."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union

Number = Union[int, float]
Scalar = Union[Number, str]

MILLIS_PER_HOUR = 60 * 60 * 1000


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_epoch_millis(dt: Optional[datetime]) -> Optional[int]:
    """Return integer epoch milliseconds for ``dt`` normalised to UTC."""

    if dt is None:
        return None
    delta = ensure_utc(dt) - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86_400 + delta.seconds) * 1000 + delta.microseconds // 1000


def from_epoch_millis(value: Optional[Scalar]) -> Optional[datetime]:
    """Convert ``value`` representing epoch milliseconds to a UTC ``datetime``."""

    if value in (None, "", b""):
        return None
    try:
        millis = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


def hours_between(a: datetime, b: datetime) -> float:
    """Return ``a - b`` in fractional hours."""

    return (to_epoch_millis(a) - to_epoch_millis(b)) / MILLIS_PER_HOUR  # type: ignore[operator]


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into a UTC ``datetime``."""

    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return ensure_utc(parsed)


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
    """Render ``dt`` as an ISO string in UTC with a ``Z`` suffix."""

    if dt is None:
        return None
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


__all__ = [
    "MILLIS_PER_HOUR",
    "utc_now",
    "ensure_utc",
    "to_epoch_millis",
    "from_epoch_millis",
    "hours_between",
    "parse_iso_datetime",
    "isoformat_utc",
]

# Overview: UTC timestamp helpers; every stored datetime is UTC-naive.

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current UTC time without tzinfo (the form every column stores)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    ISO-8601 text to a UTC-naive datetime.

    Blank input gives None. A trailing "Z" or an explicit offset is converted
    to UTC; text without an offset is already taken to be UTC.
    Raises ValueError on text fromisoformat cannot read.
    """
    if value is None or not value.strip():
        return None

    text = value.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"

    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """Render as "YYYY-MM-DDTHH:MM:SSZ" (seconds precision); naive input is UTC."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.replace(microsecond=0).isoformat() + "Z"


def days_between(earlier: datetime, later: datetime) -> int:
    """Whole days elapsed from `earlier` to `later` (both UTC-naive)."""
    return (later - earlier).days

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo


REDACTED = "***"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # The database stores naive UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_storage(value: datetime) -> datetime:
    return as_utc(value).replace(tzinfo=None)


def date_only(value: Any) -> Optional[date]:
    """Calendar date of a stored date/timestamp, ignoring time and offset."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    return date.fromisoformat(text[:10])


def local_today(now: datetime, tz_name: str) -> date:
    return as_utc(now).astimezone(ZoneInfo(tz_name)).date()

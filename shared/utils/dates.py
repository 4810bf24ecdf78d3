"""
shared/utils/dates.py
Timezone helpers. Columns are timezone-aware on PostgreSQL; SQLite hands
back naive datetimes, which are treated as UTC.
"""

from datetime import date, datetime, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes, convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: Optional[Union[datetime, date]]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return value.isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return as_utc(datetime.fromisoformat(value))


def month_start(moment: datetime, months_back: int = 0) -> datetime:
    """First instant of the month `months_back` months before `moment`."""
    year, month = moment.year, moment.month - months_back
    while month <= 0:
        month += 12
        year -= 1
    return datetime(year, month, 1, tzinfo=timezone.utc)


def hours_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    """Elapsed hours rounded to one decimal, or None when either end is missing."""
    if not start or not end:
        return None
    return round((as_utc(end) - as_utc(start)).total_seconds() / 3600, 1)

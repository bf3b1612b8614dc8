from datetime import date, datetime
from zoneinfo import ZoneInfo

from ..config import APP_TIMEZONE


def local_now() -> datetime:
    """Current wall-clock time in the business timezone, without tzinfo"""
    return datetime.now(ZoneInfo(APP_TIMEZONE)).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def month_start(day: date) -> date:
    return day.replace(day=1)


def next_month_start(day: date) -> date:
    if day.month == 12:
        return date(day.year + 1, 1, 1)
    return date(day.year, day.month + 1, 1)


def to_local_naive(value: datetime) -> datetime:
    """Aware datetimes converted to business-timezone wall-clock time; naive ones are already local"""
    if value.tzinfo is None:
        return value
    return value.astimezone(ZoneInfo(APP_TIMEZONE)).replace(tzinfo=None)

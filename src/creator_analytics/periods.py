from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import InvalidParameter
from .models import DateRange, Granularity

ROLLING_PERIODS = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}
PERIOD_CHOICES = (*ROLLING_PERIODS, "custom")


def coerce_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError:
        return ZoneInfo("UTC")


def normalize_datetime(dt: datetime, tz: ZoneInfo) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=tz)
    return dt.astimezone(tz)


def start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def truncate(moment: datetime, granularity: Granularity) -> datetime:
    """Start of the ISO week (Monday) or calendar month containing ``moment``."""

    day = start_of_day(moment)
    if granularity is Granularity.WEEKLY:
        return day - timedelta(days=day.weekday())
    if granularity is Granularity.MONTHLY:
        return day.replace(day=1)
    raise InvalidParameter("period", granularity, [item.value for item in Granularity])


def add_periods(start: datetime, granularity: Granularity, count: int) -> datetime:
    """
    Shift a bucket start by ``count`` whole periods.

    ``start`` must already be truncated; month arithmetic assumes day 1.
    Wall-clock arithmetic keeps buckets aligned to local midnight across DST.
    """

    if granularity is Granularity.WEEKLY:
        naive = start.replace(tzinfo=None) + timedelta(weeks=count)
        return naive.replace(tzinfo=start.tzinfo)
    if granularity is Granularity.MONTHLY:
        month_index = start.year * 12 + (start.month - 1) + count
        return start.replace(year=month_index // 12, month=month_index % 12 + 1)
    raise InvalidParameter("period", granularity, [item.value for item in Granularity])


def bucket_key(bucket_start: datetime, granularity: Granularity) -> str:
    """``2024-W01`` for ISO weeks, ``2024-01`` for months."""

    if granularity is Granularity.WEEKLY:
        year, week, _ = bucket_start.isocalendar()
        return f"{year}-W{week:02d}"
    return f"{bucket_start.year}-{bucket_start.month:02d}"


def recent_buckets(as_of: datetime, granularity: Granularity, count: int) -> List[datetime]:
    """The ``count`` bucket starts ending with the bucket containing ``as_of``, oldest first."""

    # The end bound is exclusive, so a bucket boundary belongs to the bucket before it.
    latest = truncate(as_of - timedelta(microseconds=1), granularity)
    return [add_periods(latest, granularity, -offset) for offset in range(count - 1, -1, -1)]


def resolve_range(
    period: str,
    now: datetime,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> DateRange:
    """
    Resolve a rolling preset or an explicit range into a half-open window.

    An explicit ``start``/``end`` pair always overrides the rolling preset.
    """

    if start is not None or end is not None:
        if start is None or end is None:
            raise InvalidParameter("date_range", (start, end))
        if end <= start:
            raise InvalidParameter("date_range", (start.isoformat(), end.isoformat()))
        return DateRange(start=start, end=end)

    if period == "custom":
        raise InvalidParameter("date_range", None)
    days = ROLLING_PERIODS.get(period)
    if days is None:
        raise InvalidParameter("period", period, PERIOD_CHOICES)
    return DateRange(start=now - timedelta(days=days), end=now)

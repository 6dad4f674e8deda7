"""
Fetch window selection.

All arithmetic is in UTC. Windows are half-open: [start, end).
"""

import calendar
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union

from ..db import OrderFilter, SyncWindow
from .errors import InvalidSyncWindowError

SAME_DAY_LOOKBACK = timedelta(days=7)
RECENT_SYNC = timedelta(hours=2)
RECENT_LOOKBACK = timedelta(hours=4)
STALE_SYNC = timedelta(hours=24)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def subtract_months(value: datetime, months: int = 1) -> datetime:
    """Same day-of-month ``months`` earlier, clamped to the month's length."""
    month_index = value.year * 12 + (value.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def creation_window(last_sync: Optional[datetime], now: datetime) -> SyncWindow:
    """
    Window for the order-time filter.

    Never synced: one month back. Synced earlier today: the last 7 days,
    to cover orders that slipped between pages or clocks. Synced on an
    earlier day: everything since that sync.
    """
    now = _as_utc(now)
    if last_sync is None:
        return SyncWindow(start=subtract_months(now, 1), end=now)

    last_sync = _as_utc(last_sync)
    if last_sync.date() == now.date() or last_sync >= now:
        return SyncWindow(start=now - SAME_DAY_LOOKBACK, end=now)

    return SyncWindow(start=last_sync, end=now)


def modified_window(last_sync: Optional[datetime], now: datetime) -> SyncWindow:
    """
    Window for the update-time filter.

    Under 2 hours since the last sync: the last 4 hours. Under 24 hours:
    since the last sync. Otherwise, or never synced: the last 24 hours.
    """
    now = _as_utc(now)
    if last_sync is None:
        return SyncWindow(start=now - STALE_SYNC, end=now)

    last_sync = _as_utc(last_sync)
    elapsed = now - last_sync

    if elapsed < RECENT_SYNC:
        return SyncWindow(start=now - RECENT_LOOKBACK, end=now)
    if elapsed < STALE_SYNC:
        return SyncWindow(start=last_sync, end=now)
    return SyncWindow(start=now - STALE_SYNC, end=now)


def select_window(
    filter_kind: OrderFilter,
    last_sync: Optional[datetime],
    now: datetime,
) -> SyncWindow:
    if filter_kind == OrderFilter.UPDATE_AT:
        return modified_window(last_sync, now)
    return creation_window(last_sync, now)


DateInput = Union[datetime, date, str, None]


def _parse_bound(value: DateInput, end_of_day: bool) -> Optional[datetime]:
    """Parse a window bound; date-only values snap to a day boundary."""
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        return _as_utc(value)

    if isinstance(value, date):
        day = value
    else:
        text = str(value).strip()
        try:
            if len(text) == 10:
                day = date.fromisoformat(text)
            else:
                return _as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError:
            return None

    if end_of_day:
        day = day + timedelta(days=1)
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def parse_manual_window(start: DateInput, end: DateInput, now: datetime) -> SyncWindow:
    """
    Build a window from operator input.

    A missing or unparseable end, or one in the future, becomes now.
    A date-only end includes that whole day.

    Raises:
        InvalidSyncWindowError: If start is missing or unparseable, or the
            window is empty
    """
    now = _as_utc(now)

    start_dt = _parse_bound(start, end_of_day=False)
    if start_dt is None:
        raise InvalidSyncWindowError(f"Invalid start date: {start!r}")

    end_dt = _parse_bound(end, end_of_day=True)
    if end_dt is None or end_dt > now:
        end_dt = now

    if start_dt >= end_dt:
        raise InvalidSyncWindowError(
            f"Start date {start_dt.isoformat()} is not before end {end_dt.isoformat()}"
        )

    return SyncWindow(start=start_dt, end=end_dt)

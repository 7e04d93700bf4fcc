# common/dates.py
"""
Relative date phrases used in sales messages.

  parse_sale_date("yesterday")      -> ParsedDate (UTC) for a single sale
  parse_date_range("last week")     -> (start_utc, end_utc) inclusive, or None
  trailing_days(30)                 -> default listing window

Weekday names resolve to the most recent *past* occurrence: on a Friday,
"friday" means the previous Friday, never today.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional, Tuple, Union

from zoneinfo import ZoneInfo

TzLike = Union[str, tzinfo, None]

WEEKDAYS = {
    "monday": 0, "mon": 0,
    "tuesday": 1, "tue": 1, "tues": 1,
    "wednesday": 2, "wed": 2,
    "thursday": 3, "thu": 3, "thur": 3, "thurs": 3,
    "friday": 4, "fri": 4,
    "saturday": 5, "sat": 5,
    "sunday": 6, "sun": 6,
}

_WEEKDAY_RE = re.compile(r"\b(" + "|".join(sorted(WEEKDAYS, key=len, reverse=True)) + r")\b")
_ISO_RE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})")
_SLASH_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})(?:/(\d{2}|\d{4}))?\b")
_DAYS_AGO_RE = re.compile(r"\b(\d{1,3})\s+days?\s+ago\b")
_LAST_N_DAYS_RE = re.compile(r"\b(?:last|past)\s+(\d{1,3})\s+days?\b")


@dataclass(frozen=True)
class ParsedDate:
    value: datetime
    confidence: float
    ambiguous: bool = False


def as_tz(tz: TzLike) -> tzinfo:
    if tz is None:
        return timezone.utc
    if isinstance(tz, str):
        return ZoneInfo(tz)
    return tz


def _local_now(now: Optional[datetime], tz: tzinfo) -> datetime:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(tz)


def start_of_day(d: date, tz: TzLike = None) -> datetime:
    return datetime.combine(d, time.min, tzinfo=as_tz(tz)).astimezone(timezone.utc)


def end_of_day(d: date, tz: TzLike = None) -> datetime:
    return start_of_day(d + timedelta(days=1), tz) - timedelta(microseconds=1)


def most_recent_weekday(today: date, weekday: int) -> date:
    back = (today.weekday() - weekday) % 7 or 7
    return today - timedelta(days=back)


def trailing_days(days: int, now: Optional[datetime] = None, tz: TzLike = None) -> Tuple[datetime, datetime]:
    local = _local_now(now, as_tz(tz))
    return (local - timedelta(days=days)).astimezone(timezone.utc), local.astimezone(timezone.utc)


def _explicit_date(text: str, today: date) -> Optional[Tuple[date, bool]]:
    """Return (date, ambiguous) for ISO or DD/MM[/YYYY] dates."""
    m = _ISO_RE.search(text)
    if m:
        try:
            return date(int(m.group(1)), int(m.group(2)), int(m.group(3))), False
        except ValueError:
            return None
    m = _SLASH_RE.search(text)
    if m:
        day, month = int(m.group(1)), int(m.group(2))
        year = today.year
        if m.group(3):
            year = int(m.group(3))
            if year < 100:
                year += 2000
        try:
            return date(year, month, day), day <= 12 and month <= 12 and day != month
        except ValueError:
            return None
    return None


def parse_sale_date(text: Optional[str], *, now: Optional[datetime] = None, tz: TzLike = None) -> ParsedDate:
    zone = as_tz(tz)
    local = _local_now(now, zone)
    today = local.date()
    utc_now = local.astimezone(timezone.utc)
    s = " ".join((text or "").lower().split())

    if not s or s in ("today", "now", "just now", "this morning", "this afternoon", "tonight"):
        return ParsedDate(utc_now, 1.0)
    if "day before yesterday" in s:
        return ParsedDate(utc_now - timedelta(days=2), 1.0)
    if "yesterday" in s:
        return ParsedDate(utc_now - timedelta(days=1), 1.0)
    m = _DAYS_AGO_RE.search(s)
    if m:
        return ParsedDate(utc_now - timedelta(days=int(m.group(1))), 0.95)

    explicit = _explicit_date(s, today)
    if explicit:
        d, ambiguous = explicit
        if d > today:
            return ParsedDate(utc_now, 0.3, ambiguous=True)
        if d == today:
            return ParsedDate(utc_now, 1.0)
        return ParsedDate(start_of_day(d, zone), 0.6 if ambiguous else 1.0, ambiguous=ambiguous)

    m = _WEEKDAY_RE.search(s)
    if m:
        d = most_recent_weekday(today, WEEKDAYS[m.group(1)])
        return ParsedDate((local - (today - d)).astimezone(timezone.utc), 0.9)

    if "today" in s:
        return ParsedDate(utc_now, 0.9)
    return ParsedDate(utc_now, 0.3, ambiguous=True)


def parse_date_range(
    text: Optional[str], *, now: Optional[datetime] = None, tz: TzLike = None
) -> Optional[Tuple[datetime, datetime]]:
    """Inclusive (start, end) in UTC for a period phrase, or None when no period is named."""
    zone = as_tz(tz)
    local = _local_now(now, zone)
    today = local.date()
    s = " ".join((text or "").lower().split())
    if not s:
        return None

    def days(a: date, b: date) -> Tuple[datetime, datetime]:
        return start_of_day(a, zone), end_of_day(b, zone)

    m = _LAST_N_DAYS_RE.search(s)
    if m:
        n = max(1, int(m.group(1)))
        return days(today - timedelta(days=n - 1), today)
    if "day before yesterday" in s:
        d = today - timedelta(days=2)
        return days(d, d)
    if "yesterday" in s:
        d = today - timedelta(days=1)
        return days(d, d)
    if "today" in s:
        return days(today, today)

    # weeks start on Sunday
    week_start = today - timedelta(days=(today.weekday() + 1) % 7)
    if "last week" in s or "previous week" in s:
        return days(week_start - timedelta(days=7), week_start - timedelta(days=1))
    if "this week" in s:
        return days(week_start, today)

    month_start = today.replace(day=1)
    if "last month" in s or "previous month" in s:
        prev_end = month_start - timedelta(days=1)
        return days(prev_end.replace(day=1), prev_end)
    if "this month" in s:
        return days(month_start, today)
    if "this year" in s:
        return days(today.replace(month=1, day=1), today)

    explicit = _explicit_date(s, today)
    if explicit:
        d, _ = explicit
        return days(d, d)
    m = _WEEKDAY_RE.search(s)
    if m:
        d = most_recent_weekday(today, WEEKDAYS[m.group(1)])
        return days(d, d)
    return None


__all__ = [
    "ParsedDate",
    "as_tz",
    "start_of_day",
    "end_of_day",
    "most_recent_weekday",
    "trailing_days",
    "parse_sale_date",
    "parse_date_range",
]

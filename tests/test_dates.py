# tests/test_dates.py
from datetime import datetime, timedelta, timezone

import pytest

from common.dates import most_recent_weekday, parse_date_range, parse_sale_date, trailing_days

# Friday afternoon
NOW = datetime(2025, 10, 3, 15, 0, tzinfo=timezone.utc)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


# ----------------------------- sale dates -----------------------------
@pytest.mark.parametrize(
    "phrase, expected",
    [
        ("today", NOW),
        ("yesterday", utc(2025, 10, 2, 15)),
        ("day before yesterday", utc(2025, 10, 1, 15)),
        ("3 days ago", utc(2025, 9, 30, 15)),
        ("wednesday", utc(2025, 10, 1, 15)),
        ("last tuesday", utc(2025, 9, 30, 15)),
        ("2025-09-20", utc(2025, 9, 20)),
    ],
)
def test_parse_sale_date(phrase, expected):
    parsed = parse_sale_date(phrase, now=NOW)
    assert parsed.value == expected
    assert parsed.confidence >= 0.9
    assert not parsed.ambiguous


def test_weekday_never_resolves_to_today():
    parsed = parse_sale_date("friday", now=NOW)
    assert parsed.value == utc(2025, 9, 26, 15)


def test_future_explicit_date_is_clamped_to_now():
    parsed = parse_sale_date("2025-10-10", now=NOW)
    assert parsed.value == NOW
    assert parsed.confidence < 0.5
    assert parsed.ambiguous


def test_unknown_phrase_defaults_to_now_with_low_confidence():
    parsed = parse_sale_date("whenever it was", now=NOW)
    assert parsed.value == NOW
    assert parsed.ambiguous


def test_most_recent_weekday():
    friday = NOW.date()
    assert most_recent_weekday(friday, 4) == friday - timedelta(days=7)
    assert most_recent_weekday(friday, 3) == friday - timedelta(days=1)


# ----------------------------- ranges -----------------------------
def test_last_n_days_is_inclusive_of_today():
    start, end = parse_date_range("last 7 days", now=NOW)
    assert start == utc(2025, 9, 27)
    assert end == utc(2025, 10, 4) - timedelta(microseconds=1)


def test_weeks_start_on_sunday():
    start, end = parse_date_range("this week", now=NOW)
    assert start == utc(2025, 9, 28)
    assert end.date() == NOW.date()

    start, end = parse_date_range("last week", now=NOW)
    assert start == utc(2025, 9, 21)
    assert end == utc(2025, 9, 28) - timedelta(microseconds=1)


def test_last_month():
    start, end = parse_date_range("sales from last month", now=NOW)
    assert start == utc(2025, 9, 1)
    assert end == utc(2025, 10, 1) - timedelta(microseconds=1)


def test_range_respects_business_timezone():
    start, end = parse_date_range("today", now=NOW, tz="America/Sao_Paulo")
    assert start == utc(2025, 10, 3, 3)
    assert end == utc(2025, 10, 4, 3) - timedelta(microseconds=1)


def test_no_period_returns_none():
    assert parse_date_range("show me everything", now=NOW) is None
    assert parse_date_range("", now=NOW) is None


def test_trailing_days():
    start, end = trailing_days(30, now=NOW)
    assert end == NOW
    assert start == NOW - timedelta(days=30)

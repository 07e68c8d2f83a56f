"""Tests for trading date generation and flat-file keys."""
from datetime import date, datetime, timedelta

import pytest

from flatfiles.calendar import flatfile_key, format_date, generate_trading_dates, parse_date


class TestGenerateTradingDates:
    """Weekday generation over inclusive ranges."""

    def test_single_week(self):
        dates = generate_trading_dates(date(2024, 3, 11), date(2024, 3, 17))
        assert dates == [date(2024, 3, 11) + timedelta(days=i) for i in range(5)]

    def test_bounds_are_inclusive(self):
        dates = generate_trading_dates(date(2024, 3, 11), date(2024, 3, 15))
        assert dates[0] == date(2024, 3, 11)
        assert dates[-1] == date(2024, 3, 15)

    def test_never_contains_weekends_and_is_strictly_ascending(self):
        dates = generate_trading_dates(date(2023, 1, 1), date(2024, 12, 31))
        assert all(d.weekday() < 5 for d in dates)
        assert all(a < b for a, b in zip(dates, dates[1:]))

    def test_full_year_count(self):
        # 2024 is a leap year starting on a Monday
        assert len(generate_trading_dates(date(2024, 1, 1), date(2024, 12, 31))) == 262

    def test_start_after_end_is_empty(self):
        assert generate_trading_dates(date(2024, 3, 15), date(2024, 3, 11)) == []

    def test_weekend_only_range_is_empty(self):
        assert generate_trading_dates(date(2024, 3, 16), date(2024, 3, 17)) == []

    def test_single_weekday(self):
        assert generate_trading_dates(date(2024, 3, 13), date(2024, 3, 13)) == [date(2024, 3, 13)]

    def test_datetime_inputs_use_calendar_date(self):
        dates = generate_trading_dates(datetime(2024, 3, 11, 23, 59), datetime(2024, 3, 12, 0, 1))
        assert dates == [date(2024, 3, 11), date(2024, 3, 12)]


def test_format_and_parse_date():
    assert format_date(date(2024, 3, 5)) == '2024-03-05'
    assert parse_date(' 2024-03-05 ') == date(2024, 3, 5)


def test_parse_date_rejects_invalid():
    with pytest.raises(ValueError):
        parse_date('2024-02-30')


def test_flatfile_key_layout():
    assert flatfile_key('day_aggs_v1', date(2024, 3, 5)) == 'us_stocks_sip/day_aggs_v1/2024/03/2024-03-05.csv.gz'
    assert flatfile_key('minute_aggs_v1', date(2023, 11, 20), market='us_options_opra') == \
        'us_options_opra/minute_aggs_v1/2023/11/2023-11-20.csv.gz'

"""
Trading calendar helpers.

Dates are plain calendar dates: no timestamps and no timezone conversion, so
the output is identical on every platform. Market holidays are not modelled;
a holiday shows up later as a missing flat file.
"""
from datetime import date, datetime, timedelta
from typing import List, Union

DateLike = Union[date, datetime]

# Saturday = 5, Sunday = 6
WEEKEND_DAYS = (5, 6)


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def generate_trading_dates(start_date: DateLike, end_date: DateLike) -> List[date]:
    """
    Generate candidate trading dates between two dates.

    Args:
        start_date: First date (inclusive)
        end_date: Last date (inclusive)

    Returns:
        Ascending list of weekdays; empty if start_date is after end_date
    """
    current = _as_date(start_date)
    end = _as_date(end_date)

    dates = []
    while current <= end:
        if current.weekday() not in WEEKEND_DAYS:
            dates.append(current)
        current += timedelta(days=1)
    return dates


def format_date(value: DateLike) -> str:
    """Format date as YYYY-MM-DD"""
    return _as_date(value).strftime('%Y-%m-%d')


def parse_date(text: str) -> date:
    """
    Parse a YYYY-MM-DD string.

    Raises:
        ValueError: If the text is not a valid calendar date
    """
    return datetime.strptime(text.strip(), '%Y-%m-%d').date()


def flatfile_key(data_type: str, trade_date: DateLike, market: str = 'us_stocks_sip') -> str:
    """
    Build the object key of a flat file.

    Example:
        us_stocks_sip/day_aggs_v1/2024/03/2024-03-15.csv.gz
    """
    d = _as_date(trade_date)
    return f"{market}/{data_type}/{d.year}/{d.month:02d}/{format_date(d)}.csv.gz"

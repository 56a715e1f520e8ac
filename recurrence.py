import calendar
import datetime

from errors import InvalidRange
from time_range import parse_date

WEEK = datetime.timedelta(days=7)


def iter_weekly(start_date, end_date):
    """Yield start_date and every 7th day after it up to end_date inclusive."""
    start = parse_date(start_date)
    end = parse_date(end_date)
    if end < start:
        raise InvalidRange(f"Recurrence ends ({end}) before it starts ({start}).")
    current = start
    while current <= end:
        yield current
        current += WEEK


def expand_weekly(start_date, end_date):
    """
    Return the dates a weekly booking applies to.

    The result always contains start_date. Accepts dates or YYYY-MM-DD strings.
    """
    # Validate eagerly so callers see InvalidRange here rather than on iteration
    start = parse_date(start_date)
    end = parse_date(end_date)
    if end < start:
        raise InvalidRange(f"Recurrence ends ({end}) before it starts ({start}).")
    return list(iter_weekly(start, end))


def add_months(date_obj, months):
    """Shift a date by whole months, clamping to the last day of the month."""
    month_index = date_obj.month - 1 + months
    year = date_obj.year + month_index // 12
    month = month_index % 12 + 1
    day = min(date_obj.day, calendar.monthrange(year, month)[1])
    return datetime.date(year, month, day)

"""
Unit tests for weekly recurrence expansion.
"""
import datetime

import pytest

from errors import InvalidRange
from recurrence import add_months, expand_weekly, iter_weekly


def test_expand_includes_both_ends_when_aligned():
    dates = expand_weekly(datetime.date(2024, 1, 1), datetime.date(2024, 1, 22))
    assert dates == [
        datetime.date(2024, 1, 1),
        datetime.date(2024, 1, 8),
        datetime.date(2024, 1, 15),
        datetime.date(2024, 1, 22),
    ]


def test_expand_stops_before_unaligned_end():
    dates = expand_weekly("2024-01-01", "2024-01-20")
    assert dates[-1] == datetime.date(2024, 1, 15)
    assert len(dates) == 3


def test_expand_single_day():
    assert expand_weekly("2024-03-05", "2024-03-05") == [datetime.date(2024, 3, 5)]


def test_expand_rejects_reversed_range():
    with pytest.raises(InvalidRange):
        expand_weekly("2024-01-10", "2024-01-01")


def test_iteration_is_restartable():
    first = list(iter_weekly("2024-01-01", "2024-02-01"))
    second = list(iter_weekly("2024-01-01", "2024-02-01"))
    assert first == second
    assert all((b - a).days == 7 for a, b in zip(first, first[1:]))


def test_six_month_span_stays_bounded():
    start = datetime.date(2024, 1, 1)
    dates = expand_weekly(start, add_months(start, 6))
    assert len(dates) == 27
    assert dates[-1] <= datetime.date(2024, 7, 1)


@pytest.mark.parametrize(
    "start, months, expected",
    [
        (datetime.date(2023, 12, 15), 1, datetime.date(2024, 1, 15)),
        (datetime.date(2024, 8, 31), 6, datetime.date(2025, 2, 28)),
        (datetime.date(2024, 1, 31), 1, datetime.date(2024, 2, 29)),
    ],
)
def test_add_months_clamps_to_month_end(start, months, expected):
    assert add_months(start, months) == expected

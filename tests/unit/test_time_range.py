"""
Unit tests for time-of-day parsing and duration classification.
"""
import datetime

import pytest

from errors import InvalidTimeFormat, InvalidDateFormat
from time_range import classify, duration, normalize_time, parse_date, parse_time_to_minutes, session_datetime


@pytest.mark.parametrize(
    "value, expected",
    [("00:00", 0), ("09:30", 570), ("9:05", 545), ("23:59", 1439)],
)
def test_parse_time_to_minutes(value, expected):
    assert parse_time_to_minutes(value) == expected


@pytest.mark.parametrize("value", ["24:00", "12:60", "9am", "", "12:5", "1200", None])
def test_parse_time_rejects_malformed_values(value):
    with pytest.raises(InvalidTimeFormat):
        parse_time_to_minutes(value)


def test_duration_can_be_negative():
    assert duration("10:00", "11:30") == 90
    assert duration("09:00", "08:00") == -60


def test_classify_too_short():
    check = classify("09:00", "09:15")
    assert check.too_short is True
    assert check.valid is False
    assert check.duration == 15


def test_classify_too_long():
    check = classify("09:00", "14:30")
    assert check.duration == 330
    assert check.too_long is True
    assert check.valid is False


def test_classify_end_before_start():
    check = classify("09:00", "08:00")
    assert check.end_before_start is True
    assert check.too_short is False
    assert check.valid is False


def test_classify_zero_length_is_end_before_start():
    check = classify("09:00", "09:00")
    assert check.end_before_start is True
    assert check.too_short is False


def test_classify_boundaries_are_valid():
    assert classify("09:00", "09:30").valid is True
    assert classify("09:00", "14:00").valid is True


def test_classify_review_length_session_is_valid():
    check = classify("08:00", "12:30")
    assert check.duration == 270
    assert check.valid is True


def test_classify_custom_limits():
    check = classify("09:00", "09:45", min_duration=60, max_duration=120)
    assert check.too_short is True


def test_parse_date_is_strict():
    assert parse_date("2024-01-05") == datetime.date(2024, 1, 5)
    with pytest.raises(InvalidDateFormat):
        parse_date("2024-1-5")
    with pytest.raises(InvalidDateFormat):
        parse_date("05/01/2024")


def test_session_datetime_combines_date_and_time():
    assert session_datetime("2024-01-01", "14:45") == datetime.datetime(2024, 1, 1, 14, 45)


@pytest.mark.parametrize("value, expected", [("9:05", "09:05"), ("09:05", "09:05"), (" 23:59 ", "23:59")])
def test_normalize_time_zero_pads(value, expected):
    assert normalize_time(value) == expected

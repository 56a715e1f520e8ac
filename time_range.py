import re
import datetime
from dataclasses import dataclass

from errors import InvalidTimeFormat, InvalidDateFormat

MIN_SESSION_DURATION = 30  # minutes
MAX_SESSION_DURATION = 300  # minutes

TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


@dataclass(frozen=True)
class TimeRangeCheck:
    valid: bool
    duration: int
    too_short: bool
    too_long: bool
    end_before_start: bool


def parse_time_to_minutes(time_str):
    """Convert time string (HH:MM) to minutes since midnight."""
    if not isinstance(time_str, str):
        raise InvalidTimeFormat(f"Expected an HH:MM string, got {time_str!r}")
    match = TIME_PATTERN.match(time_str.strip())
    if not match:
        raise InvalidTimeFormat(f"Invalid time format: {time_str!r}. Use HH:MM.")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise InvalidTimeFormat(f"Time out of range: {time_str!r}")
    return hours * 60 + minutes


def normalize_time(time_str):
    """Zero-padded HH:MM form of a valid time, e.g. "9:05" -> "09:05"."""
    minutes = parse_time_to_minutes(time_str)
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def duration(start_time, end_time):
    """Minutes from start to end on the same day. Negative when end is earlier."""
    return parse_time_to_minutes(end_time) - parse_time_to_minutes(start_time)


def classify(start_time, end_time, min_duration=MIN_SESSION_DURATION, max_duration=MAX_SESSION_DURATION):
    minutes = duration(start_time, end_time)
    end_before_start = minutes <= 0
    too_short = 0 < minutes < min_duration
    too_long = minutes > max_duration
    return TimeRangeCheck(
        valid=not (end_before_start or too_short or too_long),
        duration=minutes,
        too_short=too_short,
        too_long=too_long,
        end_before_start=end_before_start,
    )


def parse_date(date_str):
    """Parse a strict YYYY-MM-DD string."""
    if isinstance(date_str, datetime.date):
        return date_str
    try:
        date_obj = datetime.datetime.strptime(date_str, "%Y-%m-%d").date()
    except (TypeError, ValueError):
        raise InvalidDateFormat(f"Invalid date format: {date_str!r}. Use YYYY-MM-DD.") from None
    # strptime accepts "2024-1-5"; only the zero-padded form round-trips
    if date_obj.isoformat() != date_str:
        raise InvalidDateFormat(f"Invalid date format: {date_str!r}. Use YYYY-MM-DD.")
    return date_obj


def session_datetime(date_str, time_str):
    """Combine a session date and a time of day into a naive local datetime."""
    minutes = parse_time_to_minutes(time_str)
    return datetime.datetime.combine(
        parse_date(date_str), datetime.time(minutes // 60, minutes % 60)
    )


def local_now():
    return datetime.datetime.now()

"""Exceptions shared by the scheduling modules.

Expected failures (validation problems, booking conflicts, check-in
contention) are reported through outcome objects instead; the classes here
cover programmer errors and store faults.
"""


class SchedulingError(Exception):
    """Base class for scheduling errors."""


class InvalidTimeFormat(SchedulingError, ValueError):
    """A time-of-day string is not HH:MM within 00:00-23:59."""


class InvalidDateFormat(SchedulingError, ValueError):
    """A date string is not an ISO YYYY-MM-DD date."""


class InvalidRange(SchedulingError, ValueError):
    """A date range ends before it starts."""


class StoreUnavailable(SchedulingError):
    """The session store did not answer in time. Safe to retry."""

    retryable = True


class BatchInsertError(SchedulingError):
    """A batch of sessions could not be saved.

    `created` holds the rows that were persisted and `failed` the drafts that
    were not. SQLite rolls the whole batch back, so `created` is empty there.
    """

    def __init__(self, message, failed, created=None):
        super().__init__(message)
        self.failed = list(failed)
        self.created = list(created or [])

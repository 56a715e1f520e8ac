"""Turn booking requests into persisted lab sessions."""
import logging
from dataclasses import dataclass, field
from typing import Optional

from config import Config
from conflicts import conflicting_labs
from errors import InvalidDateFormat, InvalidTimeFormat, BatchInsertError
from events import SESSION_CREATED, SESSION_DELETED
from models import (
    CONFIG_FLAGS,
    STATUS_CONFIRMED,
    STATUS_UNDER_REVIEW,
    SESSION_PENDING,
    SessionDraft,
)
from recurrence import add_months, expand_weekly
from time_range import (
    classify,
    local_now,
    normalize_time,
    parse_date,
    parse_time_to_minutes,
    session_datetime,
)

logger = logging.getLogger(__name__)


def _as_bool(value):
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _as_text(value):
    if value is None:
        return ""
    return str(value).strip()


@dataclass
class ScheduleRequest:
    labs: list
    date: str
    start_time: str
    end_time: str
    purpose: str = ""
    description: str = ""
    course_code: str = ""
    is_recurring: bool = False
    recurrence_end_date: Optional[str] = None
    configurations: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data):
        """Build a request from a JSON body. Accepts `labs` (list) or a single `lab`."""
        raw_labs = data.get("labs")
        if raw_labs is None and data.get("lab") is not None:
            raw_labs = [data.get("lab")]
        if isinstance(raw_labs, str):
            raw_labs = [raw_labs]
        elif not isinstance(raw_labs, (list, tuple)):
            # Reported as "labs" by validate()
            raw_labs = []
        labs = []
        for lab in raw_labs:
            lab = _as_text(lab)
            if lab and lab not in labs:
                labs.append(lab)

        raw_configs = data.get("configurations")
        if not isinstance(raw_configs, dict):
            raw_configs = {}
        configurations = {flag: _as_bool(raw_configs.get(flag, False)) for flag in CONFIG_FLAGS}

        return cls(
            labs=labs,
            date=_as_text(data.get("date")),
            start_time=_as_text(data.get("start_time")),
            end_time=_as_text(data.get("end_time")),
            purpose=_as_text(data.get("purpose")),
            description=_as_text(data.get("description")),
            course_code=_as_text(data.get("course_code")),
            is_recurring=_as_bool(data.get("is_recurring", False)),
            recurrence_end_date=_as_text(data.get("recurrence_end_date")) or None,
            configurations=configurations,
        )


@dataclass
class ScheduleOutcome:
    ok: bool
    created: list = field(default_factory=list)
    review_required: bool = False
    errors: dict = field(default_factory=dict)
    conflicts: dict = field(default_factory=dict)
    failed: list = field(default_factory=list)

    @property
    def count(self):
        return len(self.created)

    @property
    def message(self):
        if not self.ok:
            return "Validation failed: " + ", ".join(self.errors.values())
        plural = "s" if self.count != 1 else ""
        message = f"{self.count} session{plural} scheduled successfully."
        if self.review_required:
            message += " Sessions longer than the review threshold are pending admin review."
        return message


@dataclass
class RequestCheck:
    errors: dict
    dates: list
    duration: int = 0
    conflicts: dict = field(default_factory=dict)


@dataclass
class DeleteOutcome:
    ok: bool
    error: Optional[str] = None
    message: str = ""


class SchedulingService:
    def __init__(self, repository, clock=None, events=None, settings=None):
        self.repository = repository
        self.clock = clock or local_now
        self.events = events
        self.settings = settings or {}

    def _setting(self, name):
        return self.settings.get(name, getattr(Config, name))

    @property
    def review_threshold(self):
        return self._setting("REVIEW_THRESHOLD_MINUTES")

    def review_status(self, duration_minutes):
        """Sessions longer than the review threshold need an admin to confirm them."""
        if duration_minutes > self.review_threshold:
            return STATUS_UNDER_REVIEW
        return STATUS_CONFIRMED

    def validate(self, request):
        """
        Check a request against every rule and the current bookings.

        Returns a RequestCheck whose errors map field name to message.
        All problems are collected; nothing is raised for bad input.
        """
        errors = {}
        now = self.clock()
        today = now.date()

        if not request.labs:
            errors["labs"] = "Please select at least one lab"

        session_date = None
        if not request.date:
            errors["date"] = "Please select a date"
        else:
            try:
                session_date = parse_date(request.date)
            except InvalidDateFormat:
                errors["date"] = "Invalid date format. Use YYYY-MM-DD."
            else:
                if session_date < today:
                    errors["date"] = "Cannot schedule sessions for past dates"

        start_ok = False
        if not request.start_time:
            errors["start_time"] = "Please select a start time"
        else:
            try:
                parse_time_to_minutes(request.start_time)
                start_ok = True
            except InvalidTimeFormat:
                errors["start_time"] = "Invalid time format. Use HH:MM."
            else:
                if session_date == today and session_datetime(request.date, request.start_time) < now:
                    errors["start_time"] = "Start time has already passed"

        end_ok = False
        if not request.end_time:
            errors["end_time"] = "Please select an end time"
        else:
            try:
                parse_time_to_minutes(request.end_time)
                end_ok = True
            except InvalidTimeFormat:
                errors["end_time"] = "Invalid time format. Use HH:MM."

        duration = 0
        if start_ok and end_ok:
            min_minutes = self._setting("MIN_SESSION_MINUTES")
            max_minutes = self._setting("MAX_SESSION_MINUTES")
            check = classify(request.start_time, request.end_time, min_minutes, max_minutes)
            duration = check.duration
            if check.end_before_start:
                errors["end_time"] = "End time must be after start time"
            elif check.too_short:
                errors["end_time"] = f"Session must be at least {min_minutes} minutes"
            elif check.too_long:
                errors["end_time"] = f"Session must be less than {max_minutes} minutes"

        purpose_max = self._setting("PURPOSE_MAX_LENGTH")
        if not request.purpose:
            errors["purpose"] = "Please provide a purpose"
        elif len(request.purpose) > purpose_max:
            errors["purpose"] = f"Purpose must be less than {purpose_max} characters"

        code_max = self._setting("COURSE_CODE_MAX_LENGTH")
        if not request.course_code:
            errors["course_code"] = "Please enter a course code"
        elif len(request.course_code) > code_max:
            errors["course_code"] = f"Course code must be {code_max} characters or fewer"

        dates = [session_date] if session_date else []
        if request.is_recurring:
            months = self._setting("MAX_RECURRENCE_MONTHS")
            if not request.recurrence_end_date:
                errors["recurrence_end_date"] = "Please select an end date for the recurring session"
            else:
                try:
                    until = parse_date(request.recurrence_end_date)
                except InvalidDateFormat:
                    errors["recurrence_end_date"] = "Invalid date format. Use YYYY-MM-DD."
                else:
                    if session_date is None:
                        # Reported under "date" already
                        dates = []
                    elif until <= session_date:
                        errors["recurrence_end_date"] = "Recurrence end date must be after the session date"
                    elif until > add_months(session_date, months):
                        errors["recurrence_end_date"] = (
                            f"Recurring sessions cannot extend more than {months} months"
                        )
                    else:
                        dates = expand_weekly(session_date, until)

        conflicts = {}
        blocking = {"labs", "date", "start_time", "end_time", "recurrence_end_date"}
        if dates and not blocking.intersection(errors):
            conflicts = self.find_conflicts(request, dates)
            if conflicts:
                errors["general"] = self._conflict_message(conflicts, request.is_recurring)

        return RequestCheck(errors=errors, dates=dates, duration=duration, conflicts=conflicts)

    def find_conflicts(self, request, dates):
        """Map each clashing lab to the occurrence dates (ISO strings) it clashes on."""
        first, last = dates[0].isoformat(), dates[-1].isoformat()
        existing = self.repository.list_sessions(date_range=(first, last))
        conflicts = {}
        for occurrence in dates:
            day = occurrence.isoformat()
            for lab in conflicting_labs(existing, request.labs, day, request.start_time, request.end_time):
                conflicts.setdefault(lab, []).append(day)
        return conflicts

    @staticmethod
    def _conflict_message(conflicts, recurring):
        if recurring:
            labs = ", ".join(f"Lab {lab} ({', '.join(days)})" for lab, days in conflicts.items())
        else:
            labs = ", ".join(f"Lab {lab}" for lab in conflicts)
        return f"This time slot conflicts with an existing session in: {labs}"

    def schedule(self, request, actor):
        """
        Validate and persist a booking request.

        One session row is created per (lab, date) pair, all in one transaction.
        The conflict check runs inside the same write transaction as the insert.
        """
        try:
            with self.repository.transaction():
                check = self.validate(request)
                if check.errors:
                    return ScheduleOutcome(ok=False, errors=check.errors, conflicts=check.conflicts)

                status = self.review_status(check.duration)
                created_at = self.clock().isoformat(timespec="seconds")
                # Stored zero-padded so listings sort by time as text
                start_time = normalize_time(request.start_time)
                end_time = normalize_time(request.end_time)
                drafts = []
                for lab in request.labs:
                    for occurrence in check.dates:
                        drafts.append(SessionDraft(
                            lab=lab,
                            date=occurrence.isoformat(),
                            start_time=start_time,
                            end_time=end_time,
                            purpose=request.purpose,
                            description=request.description,
                            course_code=request.course_code,
                            created_by=actor.user_id,
                            created_by_email=actor.email,
                            created_at=created_at,
                            status=status,
                            session_status=SESSION_PENDING,
                            is_recurring=request.is_recurring,
                            recurrence_end_date=request.recurrence_end_date if request.is_recurring else None,
                            config_windows=request.configurations.get("windows", False),
                            config_internet=request.configurations.get("internet", False),
                            config_homes=request.configurations.get("homes", False),
                            config_user_cleanup=request.configurations.get("user_cleanup", False),
                        ))
                created = self.repository.insert_sessions(drafts)
        except BatchInsertError as e:
            return ScheduleOutcome(
                ok=False,
                errors={"general": f"Failed to create sessions. {e}"},
                failed=e.failed,
            )

        review_required = status == STATUS_UNDER_REVIEW
        logger.info("Scheduled %d session(s) for labs %s by %s (status=%s)",
                    len(created), ", ".join(request.labs), actor.user_id, status)
        if self.events:
            for session in created:
                self.events.emit(SESSION_CREATED, session, actor)
        return ScheduleOutcome(ok=True, created=created, review_required=review_required)

    def delete_session(self, session_id, actor):
        """Creators may delete their own sessions until someone checks in."""
        session = self.repository.get_session(session_id)
        if session is None:
            return DeleteOutcome(ok=False, error="not_found", message="Session not found.")
        if session.created_by != actor.user_id:
            return DeleteOutcome(ok=False, error="not_owner",
                                 message="You can only delete sessions you created.")
        if session.is_checked_in:
            return DeleteOutcome(ok=False, error="checked_in",
                                 message="Cannot delete a session after someone has checked in.")

        deleted = self.repository.delete_session_conditional(
            session_id, {"created_by": actor.user_id, "checked_in_by": None}
        )
        if not deleted:
            current = self.repository.get_session(session_id)
            if current is None:
                return DeleteOutcome(ok=False, error="not_found", message="Session not found.")
            return DeleteOutcome(ok=False, error="checked_in",
                                 message="Cannot delete a session after someone has checked in.")

        if self.events:
            self.events.emit(SESSION_DELETED, session, actor)
        return DeleteOutcome(ok=True, message="Session deleted.")

"""
Check-in lifecycle of a session: pending -> active -> completed.

Only one actor may occupy a session. Every transition is a conditional update
against the store, so two clients racing for the same session cannot both win
even without any in-process locking.
"""
import datetime
import logging
import sqlite3
from dataclasses import dataclass
from typing import Optional

from config import Config
from errors import InvalidDateFormat, InvalidTimeFormat, SchedulingError
from events import SESSION_UPDATED
from models import (
    STATUS_CONFIRMED,
    STATUS_UNDER_REVIEW,
    SESSION_PENDING,
    SESSION_ACTIVE,
    SESSION_COMPLETED,
    Session,
)
from time_range import local_now, session_datetime

logger = logging.getLogger(__name__)

NOT_FOUND = "not_found"
NOT_AVAILABLE = "not_available"
ALREADY_ACTIVE = "already_active"
CONTENTION = "contention"
NOT_OWNER = "not_owner"

# Ids of active sessions whose stored date or start time cannot be parsed,
# already reported by the sweep
_unreadable_sessions = set()


@dataclass
class CheckInOutcome:
    ok: bool
    session: Optional[Session] = None
    error: Optional[str] = None
    message: str = ""
    occupant: Optional[str] = None
    occupant_email: Optional[str] = None
    occupied_since: Optional[str] = None

    @classmethod
    def failure(cls, error, message, session=None):
        outcome = cls(ok=False, session=session, error=error, message=message)
        if session is not None and session.checked_in_by is not None:
            outcome.occupant = session.checked_in_by
            outcome.occupant_email = session.checked_in_by_email
            outcome.occupied_since = session.checked_in_at
        return outcome


def _occupant_label(session):
    return session.checked_in_by_email or session.checked_in_by


def _format_timestamp(value):
    try:
        return datetime.datetime.fromisoformat(value).strftime("%Y-%m-%d %H:%M")
    except (TypeError, ValueError):
        return value


def describe_check_in_state(session, viewer_id=None, now=None):
    """Human-readable check-in state of a session as seen by `viewer_id`."""
    now = now or local_now()
    if session.status == STATUS_UNDER_REVIEW:
        return "Pending admin review"
    if session.session_status == SESSION_COMPLETED:
        return f"Completed by {_occupant_label(session)} at {_format_timestamp(session.completed_at)}"
    if session.session_status == SESSION_ACTIVE:
        if viewer_id is not None and session.checked_in_by == viewer_id:
            return f"Checked in by {_occupant_label(session)} (active)"
        return f"Checked in by {_occupant_label(session)}, not you"

    start = session_datetime(session.date, session.start_time)
    end = session_datetime(session.date, session.end_time)
    if now < start:
        remaining = int((start - now).total_seconds() // 60)
        hours, minutes = divmod(remaining, 60)
        if hours > 0:
            return f"Session starts in {hours}h {minutes}m"
        return f"Session starts in {minutes}m"
    if now > end:
        return "Session ended"
    return "Check-in available"


class CheckInCoordinator:
    def __init__(self, repository, clock=None, events=None, settings=None):
        self.repository = repository
        self.clock = clock or local_now
        self.events = events
        self.settings = settings or {}

    def _emit(self, session, actor, transition, old_status):
        if self.events:
            self.events.emit(SESSION_UPDATED, session, actor, transition=transition,
                             old_status=old_status, new_status=session.session_status)

    def check_in(self, session_id, actor):
        now = self.clock()
        session = self.repository.get_session(session_id)
        if session is None:
            return CheckInOutcome.failure(NOT_FOUND, "Session not found.")
        if session.status != STATUS_CONFIRMED:
            return CheckInOutcome.failure(NOT_AVAILABLE, "Session is pending admin review.", session)
        if session.session_status == SESSION_COMPLETED:
            return CheckInOutcome.failure(
                NOT_AVAILABLE,
                f"Session was already completed by {_occupant_label(session)}.",
                session,
            )
        if now > session_datetime(session.date, session.end_time):
            return CheckInOutcome.failure(NOT_AVAILABLE, "Session has ended.", session)
        if session.checked_in_by == actor.user_id:
            return CheckInOutcome(ok=True, session=session, message="You are already checked in.")
        if session.checked_in_by is not None:
            return CheckInOutcome.failure(
                ALREADY_ACTIVE,
                f"Session already checked in by {_occupant_label(session)} at "
                f"{_format_timestamp(session.checked_in_at)}.",
                session,
            )

        updated = self.repository.update_session_conditional(
            session_id,
            {"checked_in_by": None, "session_status": SESSION_PENDING},
            {
                "checked_in_by": actor.user_id,
                "checked_in_by_email": actor.email,
                "checked_in_at": now.isoformat(timespec="seconds"),
                "session_status": SESSION_ACTIVE,
            },
        )

        # Read back the row: the guard above is authoritative, this catches
        # stores whose conditional update is not atomic
        current = self.repository.get_session(session_id)
        if current is None:
            return CheckInOutcome.failure(NOT_FOUND, "Session not found.")
        if current.checked_in_by != actor.user_id:
            logger.info("Check-in race on session %s lost by %s to %s",
                        session_id, actor.user_id, current.checked_in_by)
            return CheckInOutcome.failure(
                CONTENTION,
                f"Session was just checked in by {_occupant_label(current)}.",
                current,
            )

        if updated is not None:
            self._emit(current, actor, "check_in", SESSION_PENDING)
        return CheckInOutcome(ok=True, session=current, message="Checked in successfully.")

    def complete(self, session_id, actor):
        """Only the current occupant may complete their own session."""
        now = self.clock()
        updated = self.repository.update_session_conditional(
            session_id,
            {"checked_in_by": actor.user_id, "session_status": SESSION_ACTIVE},
            {"session_status": SESSION_COMPLETED, "completed_at": now.isoformat(timespec="seconds")},
        )
        if updated is not None:
            self._emit(updated, actor, "complete", SESSION_ACTIVE)
            return CheckInOutcome(ok=True, session=updated, message="Session completed.")

        current = self.repository.get_session(session_id)
        if current is None:
            return CheckInOutcome.failure(NOT_FOUND, "Session not found.")
        if current.checked_in_by == actor.user_id and current.session_status == SESSION_COMPLETED:
            # The sweep got there first; the end state is what was asked for
            return CheckInOutcome(ok=True, session=current, message="Session already completed.")
        if current.checked_in_by is None:
            return CheckInOutcome.failure(NOT_OWNER, "You are not checked in to this session.", current)
        return CheckInOutcome.failure(
            NOT_OWNER,
            f"Only {_occupant_label(current)} can complete this session.",
            current,
        )

    def reopen(self, session_id, actor):
        """Administrative reset of an active or completed session back to pending."""
        session = self.repository.get_session(session_id)
        if session is None:
            return CheckInOutcome.failure(NOT_FOUND, "Session not found.")
        if session.session_status == SESSION_PENDING:
            return CheckInOutcome.failure(NOT_AVAILABLE, "Session is already pending.", session)

        updated = self.repository.update_session_conditional(
            session_id,
            {"session_status": session.session_status, "checked_in_by": session.checked_in_by},
            {
                "session_status": SESSION_PENDING,
                "checked_in_by": None,
                "checked_in_by_email": None,
                "checked_in_at": None,
                "completed_at": None,
            },
        )
        if updated is None:
            current = self.repository.get_session(session_id)
            return CheckInOutcome.failure(
                CONTENTION, "Session changed while reopening. Please try again.", current
            )
        logger.info("Session %s reopened by %s (was %s)", session_id, actor.user_id, session.session_status)
        self._emit(updated, actor, "reopen", session.session_status)
        return CheckInOutcome(ok=True, session=updated, message="Session reopened.")

    def auto_complete(self, now=None):
        """
        Complete every active session that started at least the configured
        number of minutes ago. Returns how many sessions were completed.
        """
        now = now or self.clock()
        grace = datetime.timedelta(
            minutes=self.settings.get("AUTO_COMPLETE_AFTER_MINUTES", Config.AUTO_COMPLETE_AFTER_MINUTES)
        )
        stamp = now.isoformat(timespec="seconds")
        completed = 0
        for session in self.repository.list_sessions(session_status=SESSION_ACTIVE):
            try:
                starts_at = session_datetime(session.date, session.start_time)
            except (InvalidDateFormat, InvalidTimeFormat) as e:
                if session.id not in _unreadable_sessions:
                    _unreadable_sessions.add(session.id)
                    logger.warning("Auto-complete skipping session %s: %s", session.id, e)
                continue
            try:
                if now < starts_at + grace:
                    continue
                updated = self.repository.update_session_conditional(
                    session.id,
                    {"session_status": SESSION_ACTIVE},
                    {"session_status": SESSION_COMPLETED, "completed_at": stamp},
                )
            except (SchedulingError, sqlite3.Error):
                logger.exception("Auto-complete failed for session %s", session.id)
                continue
            # None means a user completed it in the meantime
            if updated is not None:
                completed += 1
                self._emit(updated, None, "auto_complete", SESSION_ACTIVE)
        if completed:
            logger.info("Auto-completed %d session(s)", completed)
        return completed

"""
Unit tests for the scheduling service: validation, conflicts, recurrence,
review policy and persistence.
"""
import sqlite3
import datetime

import pytest

from errors import BatchInsertError
from events import SessionEvents, create_activity_table
from models import Actor
from repository import SessionRepository, create_session_tables
from scheduling import ScheduleRequest, SchedulingService

# Monday morning
NOW = datetime.datetime(2024, 1, 1, 8, 0)
ADMIN = Actor(user_id="ADM001", email="admin@test.com", name="Test Admin", role="admin")
OTHER_ADMIN = Actor(user_id="ADM002", email="admin2@test.com", name="Other Admin", role="admin")


@pytest.fixture
def conn():
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    cursor = conn.cursor()
    create_session_tables(cursor)
    create_activity_table(cursor)
    conn.commit()
    yield conn
    conn.close()


@pytest.fixture
def repository(conn):
    return SessionRepository(conn)


@pytest.fixture
def service(repository):
    return SchedulingService(repository, clock=lambda: NOW)


def make_request(**overrides):
    data = {
        "labs": ["004"],
        "date": "2024-01-02",
        "start_time": "10:00",
        "end_time": "11:00",
        "purpose": "Lab",
        "description": "Weekly practical",
        "course_code": "COMS1018A",
    }
    data.update(overrides)
    return ScheduleRequest.from_payload(data)


def test_single_lab_session_round_trip(service, repository):
    outcome = service.schedule(make_request(), ADMIN)
    assert outcome.ok is True
    assert outcome.count == 1

    rows = repository.list_sessions(date="2024-01-02", lab="004")
    assert len(rows) == 1
    row = rows[0]
    assert row.id == outcome.created[0].id
    assert (row.lab, row.date, row.start_time, row.end_time) == ("004", "2024-01-02", "10:00", "11:00")
    assert row.purpose == "Lab"
    assert row.description == "Weekly practical"
    assert row.course_code == "COMS1018A"
    assert row.status == "confirmed"
    assert row.session_status == "pending"
    assert row.created_by == "ADM001"
    assert row.created_by_email == "admin@test.com"
    assert row.checked_in_by is None
    assert row.is_recurring is False
    assert row.recurrence_end_date is None


def test_multi_lab_request_creates_one_row_per_lab(service):
    outcome = service.schedule(make_request(labs=["004", "005"]), ADMIN)
    assert outcome.ok is True
    assert outcome.count == 2

    first, second = (s.to_dict() for s in outcome.created)
    assert {first["lab"], second["lab"]} == {"004", "005"}
    for data in (first, second):
        data.pop("id")
        data.pop("lab")
    assert first == second


def test_single_lab_field_is_accepted():
    request = ScheduleRequest.from_payload({"lab": "108", "date": "2024-01-02"})
    assert request.labs == ["108"]


def test_duplicate_labs_are_collapsed():
    request = make_request(labs=["004", "004", " 005 "])
    assert request.labs == ["004", "005"]


def test_long_session_goes_to_review(service):
    outcome = service.schedule(make_request(start_time="08:00", end_time="12:30"), ADMIN)
    assert outcome.ok is True
    assert outcome.review_required is True
    assert outcome.created[0].status == "under_review"
    assert "review" in outcome.message


def test_review_threshold_is_exclusive(service):
    outcome = service.schedule(make_request(start_time="08:00", end_time="12:00"), ADMIN)
    assert outcome.created[0].status == "confirmed"
    assert outcome.review_required is False


def test_review_threshold_is_configurable(repository):
    service = SchedulingService(repository, clock=lambda: NOW, settings={"REVIEW_THRESHOLD_MINUTES": 60})
    outcome = service.schedule(make_request(start_time="10:00", end_time="11:30"), ADMIN)
    assert outcome.created[0].status == "under_review"


def test_every_problem_is_reported_at_once(service, repository):
    outcome = service.schedule(ScheduleRequest.from_payload({}), ADMIN)
    assert outcome.ok is False
    assert set(outcome.errors) == {"labs", "date", "start_time", "end_time", "purpose", "course_code"}
    assert repository.list_sessions() == []


def test_past_date_is_rejected(service):
    outcome = service.schedule(make_request(date="2023-12-31"), ADMIN)
    assert outcome.errors["date"] == "Cannot schedule sessions for past dates"


def test_start_time_already_passed_today(service):
    outcome = service.schedule(make_request(date="2024-01-01", start_time="07:30", end_time="09:00"), ADMIN)
    assert outcome.errors["start_time"] == "Start time has already passed"


def test_later_today_is_allowed(service):
    outcome = service.schedule(make_request(date="2024-01-01", start_time="09:00", end_time="10:00"), ADMIN)
    assert outcome.ok is True


@pytest.mark.parametrize(
    "start, end, message",
    [
        ("10:00", "09:00", "End time must be after start time"),
        ("10:00", "10:15", "Session must be at least 30 minutes"),
        ("08:00", "13:30", "Session must be less than 300 minutes"),
    ],
)
def test_time_range_errors(service, start, end, message):
    outcome = service.schedule(make_request(start_time=start, end_time=end), ADMIN)
    assert outcome.errors["end_time"] == message


def test_malformed_time_is_a_field_error(service):
    outcome = service.schedule(make_request(start_time="25:00"), ADMIN)
    assert "start_time" in outcome.errors


def test_course_code_length(service):
    outcome = service.schedule(make_request(course_code="X" * 21), ADMIN)
    assert outcome.errors["course_code"] == "Course code must be 20 characters or fewer"
    assert service.schedule(make_request(course_code="X" * 20), ADMIN).ok is True


def test_recurring_request_creates_weekly_rows(service):
    outcome = service.schedule(
        make_request(labs=["004", "005"], date="2024-01-01", is_recurring=True,
                     recurrence_end_date="2024-01-22"),
        ADMIN,
    )
    assert outcome.ok is True
    assert outcome.count == 8
    dates = sorted({s.date for s in outcome.created})
    assert dates == ["2024-01-01", "2024-01-08", "2024-01-15", "2024-01-22"]
    assert all(s.is_recurring for s in outcome.created)
    assert {s.recurrence_end_date for s in outcome.created} == {"2024-01-22"}


def test_recurring_requires_end_date(service):
    outcome = service.schedule(make_request(is_recurring=True), ADMIN)
    assert "recurrence_end_date" in outcome.errors


def test_recurrence_end_must_follow_date(service):
    outcome = service.schedule(
        make_request(is_recurring=True, recurrence_end_date="2024-01-02"), ADMIN
    )
    assert outcome.errors["recurrence_end_date"] == "Recurrence end date must be after the session date"


def test_recurrence_is_capped_at_six_months(service):
    too_far = service.schedule(
        make_request(date="2024-01-01", is_recurring=True, recurrence_end_date="2024-07-02"), ADMIN
    )
    assert "6 months" in too_far.errors["recurrence_end_date"]

    at_limit = service.schedule(
        make_request(date="2024-01-01", is_recurring=True, recurrence_end_date="2024-07-01"), ADMIN
    )
    assert at_limit.ok is True
    assert at_limit.count == 27


def test_conflicts_name_every_lab(service, repository):
    assert service.schedule(make_request(labs=["004", "005"]), ADMIN).ok

    outcome = service.schedule(
        make_request(labs=["004", "005", "006"], start_time="10:30", end_time="11:30"), ADMIN
    )
    assert outcome.ok is False
    assert list(outcome.conflicts) == ["004", "005"]
    assert "Lab 004" in outcome.errors["general"]
    assert "Lab 005" in outcome.errors["general"]
    assert "006" not in outcome.errors["general"]
    # Nothing was written for the free lab either
    assert repository.list_sessions(lab="006") == []


def test_adjacent_booking_is_not_a_conflict(service):
    assert service.schedule(make_request(), ADMIN).ok
    assert service.schedule(make_request(start_time="11:00", end_time="12:00"), ADMIN).ok


def test_recurring_conflict_on_later_week(service):
    assert service.schedule(make_request(date="2024-01-15"), ADMIN).ok

    outcome = service.schedule(
        make_request(date="2024-01-01", is_recurring=True, recurrence_end_date="2024-01-29"), ADMIN
    )
    assert outcome.ok is False
    assert outcome.conflicts == {"004": ["2024-01-15"]}
    assert "2024-01-15" in outcome.errors["general"]


def test_configurations_are_persisted(service):
    outcome = service.schedule(
        make_request(configurations={"windows": True, "internet": "false", "user_cleanup": 1}), ADMIN
    )
    session = outcome.created[0]
    assert session.configurations == {
        "windows": True, "internet": False, "homes": False, "user_cleanup": True,
    }


def test_batch_failure_is_reported(service, repository, monkeypatch):
    def failing_insert(drafts):
        raise BatchInsertError("None of the 2 session(s) were saved.", failed=drafts)

    monkeypatch.setattr(repository, "insert_sessions", failing_insert)
    outcome = service.schedule(make_request(labs=["004", "005"]), ADMIN)
    assert outcome.ok is False
    assert len(outcome.failed) == 2
    assert "Failed to create sessions" in outcome.errors["general"]


def test_created_events_are_emitted(repository):
    received = []
    events = SessionEvents()
    events.subscribe(lambda kind, session, actor, details: received.append((kind, session.lab, actor)))
    service = SchedulingService(repository, clock=lambda: NOW, events=events)

    service.schedule(make_request(labs=["004", "005"]), ADMIN)
    assert received == [("session.created", "004", ADMIN), ("session.created", "005", ADMIN)]


def test_only_creator_can_delete(service, repository):
    session = service.schedule(make_request(), ADMIN).created[0]

    refused = service.delete_session(session.id, OTHER_ADMIN)
    assert refused.ok is False
    assert refused.error == "not_owner"

    assert service.delete_session(session.id, ADMIN).ok is True
    assert repository.get_session(session.id) is None


def test_delete_refused_after_check_in(service, repository):
    session = service.schedule(make_request(), ADMIN).created[0]
    repository.update_session_conditional(
        session.id, {"checked_in_by": None},
        {"checked_in_by": "BCDR01", "checked_in_by_email": "bcdr@test.com", "session_status": "active"},
    )
    outcome = service.delete_session(session.id, ADMIN)
    assert outcome.ok is False
    assert outcome.error == "checked_in"
    assert repository.get_session(session.id) is not None


def test_delete_missing_session(service):
    outcome = service.delete_session(999, ADMIN)
    assert outcome.error == "not_found"


@pytest.mark.parametrize("labs", [5, {"lab": "004"}, None])
def test_unusable_labs_value_is_treated_as_missing(service, labs):
    request = ScheduleRequest.from_payload({"labs": labs})
    assert request.labs == []
    assert service.validate(request).errors["labs"] == "Please select at least one lab"


def test_unusable_configurations_value_is_ignored():
    request = make_request(configurations=["windows"])
    assert request.configurations == {
        "windows": False, "internet": False, "homes": False, "user_cleanup": False,
    }


def test_times_are_stored_zero_padded(service, repository):
    service.schedule(make_request(start_time="10:00", end_time="11:00"), ADMIN)
    outcome = service.schedule(make_request(start_time="9:00", end_time="9:45"), ADMIN)
    assert outcome.created[0].start_time == "09:00"
    assert outcome.created[0].end_time == "09:45"

    listed = repository.list_sessions(date="2024-01-02")
    assert [s.start_time for s in listed] == ["09:00", "10:00"]

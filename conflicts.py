from models import STATUS_CANCELLED
from time_range import parse_time_to_minutes


def _field(item, name):
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def slots_overlap(slot1_start, slot1_end, slot2_start, slot2_end):
    """
    Check if two time slots overlap.
    Slots are half-open, so one ending exactly when the other starts is fine.
    """
    start1 = parse_time_to_minutes(slot1_start)
    end1 = parse_time_to_minutes(slot1_end)
    start2 = parse_time_to_minutes(slot2_start)
    end2 = parse_time_to_minutes(slot2_end)
    return start1 < end2 and end1 > start2


def has_conflict(existing_sessions, candidate, exclude_id=None):
    """
    Return True if `candidate` (lab, date, start_time, end_time) overlaps any
    existing session booked for the same lab on the same date.

    Sessions and candidates may be Session objects or plain dicts.
    """
    lab = _field(candidate, "lab")
    date = _field(candidate, "date")
    for session in existing_sessions:
        if exclude_id is not None and str(_field(session, "id")) == str(exclude_id):
            continue
        if _field(session, "status") == STATUS_CANCELLED:
            continue
        if _field(session, "lab") != lab or _field(session, "date") != date:
            continue
        if slots_overlap(
            _field(candidate, "start_time"),
            _field(candidate, "end_time"),
            _field(session, "start_time"),
            _field(session, "end_time"),
        ):
            return True
    return False


def conflicting_labs(existing_sessions, labs, date, start_time, end_time, exclude_id=None):
    """Check every requested lab independently and return the ones that clash."""
    clashes = []
    for lab in labs:
        if lab in clashes:
            continue
        candidate = {"lab": lab, "date": date, "start_time": start_time, "end_time": end_time}
        if has_conflict(existing_sessions, candidate, exclude_id=exclude_id):
            clashes.append(lab)
    return clashes

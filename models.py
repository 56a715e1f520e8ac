"""Session value types and their mapping to `lab_sessions` rows."""
from dataclasses import dataclass, field, asdict, fields
from typing import Optional

# Booking status, fixed at creation
STATUS_CONFIRMED = "confirmed"
STATUS_UNDER_REVIEW = "under_review"
STATUS_CANCELLED = "cancelled"

# Check-in lifecycle
SESSION_PENDING = "pending"
SESSION_ACTIVE = "active"
SESSION_COMPLETED = "completed"

CONFIG_FLAGS = ("windows", "internet", "homes", "user_cleanup")


@dataclass(frozen=True)
class Actor:
    """Authenticated user acting on a session."""
    user_id: str
    email: str = ""
    name: str = ""
    role: str = ""

    @classmethod
    def from_token(cls, token_data):
        return cls(
            user_id=str(token_data.get("user_id")),
            email=token_data.get("email") or "",
            name=token_data.get("name") or "",
            role=token_data.get("role") or "",
        )

    @property
    def display_name(self):
        return self.name or self.email or self.user_id


@dataclass
class SessionDraft:
    lab: str
    date: str
    start_time: str
    end_time: str
    purpose: str
    course_code: str
    created_by: str
    created_by_email: str
    created_at: str
    status: str = STATUS_CONFIRMED
    session_status: str = SESSION_PENDING
    description: str = ""
    is_recurring: bool = False
    recurrence_end_date: Optional[str] = None
    config_windows: bool = False
    config_internet: bool = False
    config_homes: bool = False
    config_user_cleanup: bool = False

    def to_row(self):
        row = asdict(self)
        for name in ("is_recurring",) + tuple(f"config_{flag}" for flag in CONFIG_FLAGS):
            row[name] = int(row[name])
        return row


@dataclass
class Session(SessionDraft):
    id: int = 0
    checked_in_by: Optional[str] = None
    checked_in_by_email: Optional[str] = None
    checked_in_at: Optional[str] = None
    completed_at: Optional[str] = None
    configurations: dict = field(default_factory=dict, repr=False)

    def __post_init__(self):
        self.configurations = {flag: bool(getattr(self, f"config_{flag}")) for flag in CONFIG_FLAGS}

    @classmethod
    def from_row(cls, row):
        """Build a Session from a sqlite3.Row (or any mapping of column names)."""
        keys = row.keys()
        values = {}
        for f in fields(cls):
            if f.name == "configurations" or f.name not in keys:
                continue
            values[f.name] = row[f.name]
        values["is_recurring"] = bool(values.get("is_recurring"))
        for flag in CONFIG_FLAGS:
            values[f"config_{flag}"] = bool(values.get(f"config_{flag}"))
        return cls(**values)

    @property
    def is_checked_in(self):
        return self.checked_in_by is not None

    def to_dict(self):
        data = asdict(self)
        for flag in CONFIG_FLAGS:
            data.pop(f"config_{flag}")
        return data

"""Advisory session notifications and the activity log that listens to them.

Nothing in the scheduling core depends on these being delivered: every state
change re-validates against the store, so a dropped notification only means a
stale view somewhere.
"""
import json
import logging
import datetime
from datetime import timezone

logger = logging.getLogger(__name__)

SESSION_CREATED = "session.created"
SESSION_UPDATED = "session.updated"
SESSION_DELETED = "session.deleted"


class SessionEvents:
    def __init__(self):
        self._subscribers = []

    def subscribe(self, callback):
        """Register callback(kind, session, actor, details). Returns callback for decorator use."""
        self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def emit(self, kind, session, actor=None, **details):
        for callback in list(self._subscribers):
            try:
                callback(kind, session, actor, details)
            except Exception:
                logger.exception("Subscriber %r failed handling %s for session %s",
                                 callback, kind, getattr(session, "id", None))


def create_activity_table(cursor):
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS activity_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            user_id TEXT,
            user_email TEXT,
            user_role TEXT,
            action_type TEXT NOT NULL,
            action_category TEXT NOT NULL,
            lab_id TEXT,
            session_id INTEGER,
            description TEXT NOT NULL,
            details TEXT
        );
        """
    )


class ActivityLog:
    """Writes one activity_log row per session event."""

    CATEGORY = "Session Management"

    def __init__(self, conn):
        self.conn = conn

    def __call__(self, kind, session, actor, details):
        action_type, description = self._describe(kind, session, details)
        self.conn.execute(
            """
            INSERT INTO activity_log (timestamp, user_id, user_email, user_role, action_type,
                                      action_category, lab_id, session_id, description, details)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                datetime.datetime.now(timezone.utc).isoformat(),
                actor.user_id if actor else None,
                actor.email if actor else None,
                actor.role if actor else None,
                action_type,
                self.CATEGORY,
                session.lab,
                session.id,
                description,
                json.dumps(details) if details else None,
            ),
        )
        self.conn.commit()

    @staticmethod
    def _describe(kind, session, details):
        lab = session.lab
        if kind == SESSION_CREATED:
            return "session_created", f"Created new session for Lab {lab}: {session.purpose}"
        if kind == SESSION_DELETED:
            return "session_deleted", f"Deleted session for Lab {lab} on {session.date}"
        transition = details.get("transition")
        if transition == "check_in":
            return "session_checkin", f"Checked in to session on Lab {lab}"
        if transition == "complete":
            return "session_checkout", f"Checked out from session on Lab {lab}"
        old_status = details.get("old_status")
        new_status = details.get("new_status", session.session_status)
        return (
            "session_status_change",
            f'Session status changed from "{old_status}" to "{new_status}" for Lab {lab}',
        )

    def recent(self, limit=100):
        rows = self.conn.execute(
            "SELECT * FROM activity_log ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
        entries = []
        for row in rows:
            entry = dict(row)
            entry["details"] = json.loads(entry["details"]) if entry["details"] else None
            entries.append(entry)
        return entries

"""SQLite store for lab sessions.

All cross-client safety comes from conditional updates: every state change is
an `UPDATE ... WHERE id = ? AND <guard>` and the caller inspects whether a row
was touched.
"""
import logging
import sqlite3
from contextlib import contextmanager

from errors import StoreUnavailable, BatchInsertError
from models import Session

logger = logging.getLogger(__name__)

SESSION_COLUMNS = frozenset({
    "lab", "date", "start_time", "end_time", "purpose", "description", "course_code",
    "is_recurring", "recurrence_end_date", "status", "session_status",
    "created_by", "created_by_email", "created_at",
    "checked_in_by", "checked_in_by_email", "checked_in_at", "completed_at",
    "config_windows", "config_internet", "config_homes", "config_user_cleanup",
})


def create_session_tables(cursor):
    """Create the lab_sessions table and its lookup index if they don't exist."""
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS lab_sessions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            lab TEXT NOT NULL,
            date TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            purpose TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            course_code TEXT NOT NULL,
            is_recurring INTEGER NOT NULL DEFAULT 0,
            recurrence_end_date TEXT,
            status TEXT NOT NULL DEFAULT 'confirmed',
            session_status TEXT NOT NULL DEFAULT 'pending',
            created_by TEXT NOT NULL,
            created_by_email TEXT NOT NULL,
            created_at TEXT NOT NULL,
            checked_in_by TEXT,
            checked_in_by_email TEXT,
            checked_in_at TEXT,
            completed_at TEXT,
            config_windows INTEGER NOT NULL DEFAULT 0,
            config_internet INTEGER NOT NULL DEFAULT 0,
            config_homes INTEGER NOT NULL DEFAULT 0,
            config_user_cleanup INTEGER NOT NULL DEFAULT 0
        );
        """
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_lab_sessions_lab_date ON lab_sessions (lab, date)"
    )


def _is_lock_error(error):
    message = str(error).lower()
    return "locked" in message or "busy" in message


@contextmanager
def store_errors():
    """Turn SQLite lock timeouts into the retryable StoreUnavailable."""
    try:
        yield
    except sqlite3.OperationalError as e:
        if _is_lock_error(e):
            logger.warning("Session store busy: %s", e)
            raise StoreUnavailable("The session store is busy. Please try again.") from e
        raise


def _check_columns(columns):
    unknown = set(columns) - SESSION_COLUMNS
    if unknown:
        raise ValueError(f"Unknown session column(s): {', '.join(sorted(unknown))}")


def _guard_clause(guard):
    clauses = []
    params = []
    for column, expected in guard.items():
        if expected is None:
            clauses.append(f"{column} IS NULL")
        else:
            clauses.append(f"{column} = ?")
            params.append(expected)
    return clauses, params


class SessionRepository:
    def __init__(self, conn):
        self.conn = conn
        self._depth = 0

    @contextmanager
    def transaction(self):
        """
        Run the block in one write transaction.

        BEGIN IMMEDIATE takes the write lock up front so a read-check-insert
        sequence cannot interleave with another writer. Nested blocks join the
        outer transaction.
        """
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        with store_errors():
            if not self.conn.in_transaction:
                self.conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self
            except BaseException:
                self.conn.rollback()
                raise
            else:
                self.conn.commit()
            finally:
                self._depth = 0

    def get_session(self, session_id):
        with store_errors():
            row = self.conn.execute(
                "SELECT * FROM lab_sessions WHERE id = ?", (session_id,)
            ).fetchone()
        return Session.from_row(row) if row else None

    def list_sessions(self, date=None, date_range=None, lab=None, session_status=None):
        """
        List sessions ordered by date and start time.

        `date_range` is an inclusive (start, end) pair of ISO dates.
        """
        clauses = []
        params = []
        if date is not None:
            clauses.append("date = ?")
            params.append(date)
        if date_range is not None:
            clauses.append("date >= ? AND date <= ?")
            params.extend(date_range)
        if lab is not None:
            clauses.append("lab = ?")
            params.append(lab)
        if session_status is not None:
            clauses.append("session_status = ?")
            params.append(session_status)

        query = "SELECT * FROM lab_sessions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY date ASC, start_time ASC, id ASC"

        with store_errors():
            rows = self.conn.execute(query, params).fetchall()
        return [Session.from_row(row) for row in rows]

    def insert_sessions(self, drafts):
        """Insert all drafts in one transaction and return the stored rows."""
        drafts = list(drafts)
        new_ids = []
        try:
            with self.transaction():
                for draft in drafts:
                    row = draft.to_row()
                    _check_columns(row)
                    columns = ", ".join(row)
                    placeholders = ", ".join("?" for _ in row)
                    cursor = self.conn.execute(
                        f"INSERT INTO lab_sessions ({columns}) VALUES ({placeholders})",
                        tuple(row.values()),
                    )
                    new_ids.append(cursor.lastrowid)
        except sqlite3.Error as e:
            logger.error("Batch insert of %d session(s) rolled back: %s", len(drafts), e)
            raise BatchInsertError(
                f"None of the {len(drafts)} session(s) were saved.", failed=drafts
            ) from e
        return [self.get_session(session_id) for session_id in new_ids]

    def update_session_conditional(self, session_id, guard, patch):
        """
        Apply `patch` only if every `guard` column still holds its expected value
        (None means IS NULL). Returns the updated Session, or None if the guard
        no longer held and nothing changed.
        """
        _check_columns(guard)
        _check_columns(patch)
        guard_clauses, guard_params = _guard_clause(guard)
        assignments = ", ".join(f"{column} = ?" for column in patch)
        query = f"UPDATE lab_sessions SET {assignments} WHERE " + " AND ".join(["id = ?"] + guard_clauses)
        params = list(patch.values()) + [session_id] + guard_params

        with self.transaction():
            cursor = self.conn.execute(query, params)
            changed = cursor.rowcount
        if not changed:
            return None
        return self.get_session(session_id)

    def delete_session_conditional(self, session_id, guard):
        """Delete the session if the guard holds. Returns True when a row was removed."""
        _check_columns(guard)
        guard_clauses, guard_params = _guard_clause(guard)
        query = "DELETE FROM lab_sessions WHERE " + " AND ".join(["id = ?"] + guard_clauses)
        with self.transaction():
            cursor = self.conn.execute(query, [session_id] + guard_params)
            return cursor.rowcount > 0

import sqlite3
from functools import wraps
import atexit
import logging

from flask import Flask, request, jsonify
from flask_cors import CORS
from werkzeug.security import generate_password_hash, check_password_hash
import click
import re
import os
import jwt
import datetime
from datetime import timezone

from config import Config
from check_in import (
    CheckInCoordinator,
    describe_check_in_state,
    NOT_FOUND,
    NOT_AVAILABLE,
    ALREADY_ACTIVE,
    CONTENTION,
    NOT_OWNER,
)
from errors import InvalidDateFormat, StoreUnavailable
from events import SessionEvents, ActivityLog, create_activity_table
from models import Actor
from repository import SessionRepository, create_session_tables
from scheduling import ScheduleRequest, SchedulingService
from sweeper import AutoCompleteSweeper
from time_range import parse_date

# --- Configuration ---
app = Flask(__name__)
app.config.from_object(Config)
logging.basicConfig(level=app.config["LOG_LEVEL"])
logger = logging.getLogger(__name__)
# Enable CORS so browser-based frontends can call the API
CORS(app, resources={r"/api/*": {"origins": app.config["CORS_ORIGINS"]}})
DATABASE = app.config["DATABASE"]
# Only log in non-testing environments to avoid CI noise
if not os.getenv("PYTEST_CURRENT_TEST"):
    logger.info("Using database file: %s", DATABASE)
SECRET_KEY = app.config["SECRET_KEY"]
JWT_EXP_DELTA_SECONDS = app.config["JWT_EXP_DELTA_SECONDS"]

VALID_ROLES = ["admin", "bcdr", "welcoming_team"]
CHECK_IN_ROLES = ("bcdr", "welcoming_team")

# Extra callbacks notified of session changes, e.g. a push channel to viewers
session_listeners = []

# --- Database Setup ---


def get_db_connection():
    """Connects to the SQLite database."""
    conn = sqlite3.connect(DATABASE, timeout=app.config["DB_TIMEOUT_SECONDS"])
    conn.row_factory = sqlite3.Row  # This allows accessing columns by name
    return conn


def create_tables(conn):
    """Create every table the service needs on the given connection."""
    cursor = conn.cursor()
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            user_id TEXT PRIMARY KEY NOT NULL,
            name TEXT NOT NULL,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            role TEXT NOT NULL
        );
        """
    )
    create_session_tables(cursor)
    create_activity_table(cursor)
    conn.commit()


def init_db():
    """Initializes the database schema if it doesn't exist."""
    logger.debug("Initializing database...")
    conn = get_db_connection()
    try:
        create_tables(conn)
    finally:
        if DATABASE != ":memory:":
            conn.close()
    logger.debug("Database initialization complete.")


def current_time():
    """Local wall-clock time used for every scheduling decision."""
    return datetime.datetime.now()


def _build_services(conn):
    repository = SessionRepository(conn)
    events = SessionEvents()
    events.subscribe(ActivityLog(conn))
    for listener in session_listeners:
        events.subscribe(listener)
    scheduler = SchedulingService(repository, clock=current_time, events=events, settings=app.config)
    coordinator = CheckInCoordinator(repository, clock=current_time, events=events, settings=app.config)
    return scheduler, coordinator


def run_auto_complete_sweep(now=None):
    """Complete every active session whose check-in window has lapsed."""
    conn = get_db_connection()
    try:
        _, coordinator = _build_services(conn)
        return coordinator.auto_complete(now)
    finally:
        if DATABASE != ":memory:":
            conn.close()


# --- Helper Functions (Core Logic) ---

def validate_registration_data(data):
    """
    Validates the registration payload:
    1. Duplicate email/user ID check (handled separately by database constraints).
    2. Email format validation.
    3. Password complexity (min 8 chars, 1 number, 1 symbol).
    4. Role validation (admin, bcdr, welcoming_team).
    """
    errors = []

    if not all(
        key in data and data[key] for key in ["user_id", "name", "email", "password", "role"]
    ):
        errors.append("All fields (User ID, Name, Email, Password, Role) are required.")
        return False, errors

    if data["role"] not in VALID_ROLES:
        errors.append(f"Invalid role. Must be one of: {', '.join(VALID_ROLES)}.")

    email_regex = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
    if not re.match(email_regex, data["email"]):
        errors.append("Invalid email format.")

    password = data["password"]
    if len(password) < 8:
        errors.append("Password must be at least 8 characters long.")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one number.")
    if not re.search(r'[!@#$%^&*(),.?":{}|<>]', password):
        errors.append("Password must contain at least one symbol (!@#$%^&*...).")

    return not errors, errors


def register_user(data):
    """
    Attempts to register a new user after validation.
    Returns (success: bool, message: str)
    """
    is_valid, errors = validate_registration_data(data)
    if not is_valid:
        return False, "Validation failed: " + ", ".join(errors)

    hashed_password = generate_password_hash(data["password"])

    conn = get_db_connection()
    try:
        conn.execute(
            "INSERT INTO users "
            "(user_id, name, email, password_hash, role) "
            "VALUES (?, ?, ?, ?, ?)",
            (data["user_id"], data["name"], data["email"], hashed_password, data["role"]),
        )
        conn.commit()
        return True, "Success: User registration complete."
    except sqlite3.IntegrityError as e:
        if "UNIQUE constraint failed: users.email" in str(e):
            return False, "Duplicate email validation error: This email is already registered."
        elif "UNIQUE constraint failed: users.user_id" in str(e):
            return False, "Duplicate user ID validation error: This user ID is already registered."
        else:
            logger.error("Database error during registration: %s", e)
            return False, "A database error occurred during registration."
    finally:
        # Only close the connection if it's not an in-memory database (testing uses :memory:)
        if DATABASE != ":memory:":
            conn.close()


def _generate_token(payload: dict) -> str:
    """Return a JWT for the given payload (adds expiry)."""
    payload_copy = payload.copy()
    expiry = datetime.datetime.now(timezone.utc) + datetime.timedelta(
        seconds=JWT_EXP_DELTA_SECONDS
    )
    payload_copy["exp"] = expiry
    return jwt.encode(payload_copy, SECRET_KEY, algorithm="HS256")


def verify_token():
    """Extract and verify JWT token from Authorization header."""
    auth = request.headers.get("Authorization", None)
    if not auth or not auth.startswith("Bearer "):
        return None, jsonify({"message": "Missing or invalid Authorization header."}), 401

    token = auth.split(" ", 1)[1]
    try:
        data = jwt.decode(token, SECRET_KEY, algorithms=["HS256"])
        return data, None, None
    except jwt.ExpiredSignatureError:
        return None, jsonify({"message": "Token expired."}), 401
    except jwt.InvalidTokenError:
        return None, jsonify({"message": "Invalid token."}), 401


def require_auth(f):
    """Decorator to require authentication for an endpoint."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token_data, error_response, status_code = verify_token()
        if error_response:
            return error_response, status_code
        request.current_user = token_data
        return f(*args, **kwargs)
    return decorated_function


def require_role(*allowed_roles):
    """Decorator to require specific role(s) for an endpoint."""
    def decorator(f):
        @wraps(f)
        @require_auth
        def decorated_function(*args, **kwargs):
            user_role = request.current_user.get("role")
            if user_role not in allowed_roles:
                return jsonify({"message": "Insufficient permissions."}), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def _current_actor():
    return Actor.from_token(request.current_user)


def _session_json(session, viewer_id=None):
    data = session.to_dict()
    data["check_in_state"] = describe_check_in_state(session, viewer_id, current_time())
    return data


def _retry_later(error):
    return jsonify({"message": f"{error} Please try again.", "success": False, "retryable": True}), 503


CHECK_IN_STATUS_CODES = {
    NOT_FOUND: 404,
    NOT_AVAILABLE: 400,
    ALREADY_ACTIVE: 409,
    CONTENTION: 409,
    NOT_OWNER: 403,
}


def _check_in_response(outcome, viewer_id):
    body = {"message": outcome.message, "success": outcome.ok}
    if outcome.session is not None:
        body["session"] = _session_json(outcome.session, viewer_id)
    if outcome.ok:
        return jsonify(body), 200
    body["error"] = outcome.error
    if outcome.occupant is not None:
        body["occupant"] = {
            "user_id": outcome.occupant,
            "email": outcome.occupant_email,
            "checked_in_at": outcome.occupied_since,
        }
    return jsonify(body), CHECK_IN_STATUS_CODES.get(outcome.error, 400)


# --- Auth Endpoints ---

@app.route("/api/register", methods=["POST"])
def handle_registration():
    """API endpoint to process user registration."""
    # Use silent=True so invalid JSON doesn't raise a BadRequest that
    # causes Flask to return an HTML error page. We want a JSON response.
    data = request.get_json(silent=True)
    if data is None:
        return jsonify({"message": "Invalid JSON payload."}), 400

    success, message = register_user(data)
    if success:
        return jsonify({"message": message, "success": True}), 201
    return jsonify({"message": message, "success": False}), 400


@app.route("/api/login", methods=["POST"])
def handle_login():
    """Authenticate user and return JWT token on success."""
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"message": "Invalid JSON payload.", "success": False}), 400

    if "user_id" not in data or "password" not in data:
        return jsonify({"message": "User ID and password required.", "success": False}), 400

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(
            "SELECT user_id, password_hash, name, email, role FROM users WHERE user_id = ?",
            (data["user_id"],),
        )
        row = cursor.fetchone()

        # Do not leak whether the user exists
        if row is None or not check_password_hash(row["password_hash"], data["password"]):
            return jsonify({"message": "Invalid credentials.", "success": False}), 401

        payload = {"user_id": row["user_id"], "email": row["email"], "role": row["role"], "name": row["name"]}
        return jsonify({
            "token": _generate_token(payload),
            "success": True,
            "role": row["role"],
            "name": row["name"]
        }), 200
    except Exception:
        logger.exception("Login error")
        return jsonify({"message": "An error occurred during login.", "success": False}), 500
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/me", methods=["GET"])
@require_auth
def handle_me():
    """Return user info based on Bearer token."""
    user = request.current_user
    return jsonify({
        "user_id": user.get("user_id"),
        "email": user.get("email"),
        "role": user.get("role"),
        "name": user.get("name"),
    }), 200


# --- Session Endpoints ---

@app.route("/api/sessions", methods=["POST"])
@require_role("admin")
def create_sessions():
    """Schedule a session for one or more labs, optionally repeating weekly."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"message": "Invalid JSON payload.", "success": False}), 400

    actor = _current_actor()

    conn = get_db_connection()
    try:
        schedule_request = ScheduleRequest.from_payload(data)
        scheduler, _ = _build_services(conn)
        outcome = scheduler.schedule(schedule_request, actor)
        if not outcome.ok:
            body = {
                "message": outcome.message,
                "errors": outcome.errors,
                "conflicts": outcome.conflicts,
                "success": False,
            }
            if outcome.failed:
                body["failed_count"] = len(outcome.failed)
                return jsonify(body), 500
            conflict_only = outcome.conflicts and set(outcome.errors) == {"general"}
            return jsonify(body), 409 if conflict_only else 400

        return jsonify({
            "message": outcome.message,
            "sessions": [_session_json(s, actor.user_id) for s in outcome.created],
            "count": outcome.count,
            "review_required": outcome.review_required,
            "success": True,
        }), 201
    except StoreUnavailable as e:
        return _retry_later(e)
    except sqlite3.Error:
        logger.exception("Database error in create_sessions")
        return jsonify({"message": "Failed to create sessions.", "success": False}), 500
    except Exception:
        logger.exception("Unexpected error in create_sessions")
        return jsonify({"message": "An unexpected error occurred.", "success": False}), 500
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/sessions", methods=["GET"])
@require_auth
def list_sessions():
    """List sessions for a day (?date=) or a range (?start=&end=), optionally one lab (?lab=)."""
    date_str = request.args.get("date")
    start_str = request.args.get("start")
    end_str = request.args.get("end")
    lab = request.args.get("lab")

    try:
        for value in (date_str, start_str, end_str):
            if value:
                parse_date(value)
    except InvalidDateFormat:
        return jsonify({"message": "Invalid date format. Use YYYY-MM-DD.", "success": False}), 400
    if bool(start_str) != bool(end_str):
        return jsonify({"message": "Both start and end are required for a range.", "success": False}), 400

    viewer_id = _current_actor().user_id
    conn = get_db_connection()
    try:
        repository = SessionRepository(conn)
        sessions = repository.list_sessions(
            date=date_str or None,
            date_range=(start_str, end_str) if start_str else None,
            lab=lab or None,
        )
        return jsonify({
            "sessions": [_session_json(s, viewer_id) for s in sessions],
            "success": True,
        }), 200
    except StoreUnavailable as e:
        return _retry_later(e)
    except sqlite3.Error:
        logger.exception("Database error in list_sessions")
        return jsonify({"message": "Failed to retrieve sessions.", "success": False}), 500
    except Exception:
        logger.exception("Unexpected error in list_sessions")
        return jsonify({"message": "An unexpected error occurred.", "success": False}), 500
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/sessions/<int:session_id>", methods=["GET"])
@require_auth
def get_session(session_id):
    """Return one session with the caller's check-in state."""
    conn = get_db_connection()
    try:
        session = SessionRepository(conn).get_session(session_id)
        if session is None:
            return jsonify({"message": "Session not found.", "success": False}), 404
        return jsonify({"session": _session_json(session, _current_actor().user_id), "success": True}), 200
    except StoreUnavailable as e:
        return _retry_later(e)
    except sqlite3.Error:
        logger.exception("Database error in get_session")
        return jsonify({"message": "Failed to retrieve session.", "success": False}), 500
    except Exception:
        logger.exception("Unexpected error in get_session")
        return jsonify({"message": "An unexpected error occurred.", "success": False}), 500
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/sessions/<int:session_id>", methods=["DELETE"])
@require_auth
def delete_session(session_id):
    """Delete a session. Only its creator may, and only before anyone checks in."""
    actor = _current_actor()
    conn = get_db_connection()
    try:
        scheduler, _ = _build_services(conn)
        outcome = scheduler.delete_session(session_id, actor)
        if outcome.ok:
            return jsonify({"message": outcome.message, "success": True}), 200
        status_code = {"not_found": 404, "not_owner": 403, "checked_in": 409}[outcome.error]
        return jsonify({"message": outcome.message, "error": outcome.error, "success": False}), status_code
    except StoreUnavailable as e:
        return _retry_later(e)
    except sqlite3.Error:
        logger.exception("Database error in delete_session")
        return jsonify({"message": "Failed to delete session.", "success": False}), 500
    except Exception:
        logger.exception("Unexpected error in delete_session")
        return jsonify({"message": "An unexpected error occurred.", "success": False}), 500
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/sessions/<int:session_id>/check-in", methods=["POST"])
@require_role(*CHECK_IN_ROLES)
def check_in_session(session_id):
    """Claim a session. At most one person can be checked in at a time."""
    actor = _current_actor()
    conn = get_db_connection()
    try:
        _, coordinator = _build_services(conn)
        return _check_in_response(coordinator.check_in(session_id, actor), actor.user_id)
    except StoreUnavailable as e:
        return _retry_later(e)
    except sqlite3.Error:
        logger.exception("Database error in check_in_session")
        return jsonify({"message": "Failed to check in.", "success": False}), 500
    except Exception:
        logger.exception("Unexpected error in check_in_session")
        return jsonify({"message": "An unexpected error occurred.", "success": False}), 500
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/sessions/<int:session_id>/complete", methods=["POST"])
@require_role(*CHECK_IN_ROLES)
def complete_session(session_id):
    """Finish a session the caller is checked in to."""
    actor = _current_actor()
    conn = get_db_connection()
    try:
        _, coordinator = _build_services(conn)
        return _check_in_response(coordinator.complete(session_id, actor), actor.user_id)
    except StoreUnavailable as e:
        return _retry_later(e)
    except sqlite3.Error:
        logger.exception("Database error in complete_session")
        return jsonify({"message": "Failed to complete session.", "success": False}), 500
    except Exception:
        logger.exception("Unexpected error in complete_session")
        return jsonify({"message": "An unexpected error occurred.", "success": False}), 500
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/sessions/<int:session_id>/reopen", methods=["POST"])
@require_role("admin")
def reopen_session(session_id):
    """Reset an active or completed session to pending (admin only)."""
    actor = _current_actor()
    conn = get_db_connection()
    try:
        _, coordinator = _build_services(conn)
        return _check_in_response(coordinator.reopen(session_id, actor), actor.user_id)
    except StoreUnavailable as e:
        return _retry_later(e)
    except sqlite3.Error:
        logger.exception("Database error in reopen_session")
        return jsonify({"message": "Failed to reopen session.", "success": False}), 500
    except Exception:
        logger.exception("Unexpected error in reopen_session")
        return jsonify({"message": "An unexpected error occurred.", "success": False}), 500
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.route("/api/sessions/auto-complete", methods=["POST"])
@require_role("admin")
def auto_complete_sessions():
    """Run the auto-complete sweep now (admin only)."""
    try:
        completed_count = run_auto_complete_sweep()
        return jsonify({"completed_count": completed_count, "success": True}), 200
    except StoreUnavailable as e:
        return _retry_later(e)
    except sqlite3.Error:
        logger.exception("Database error in auto_complete_sessions")
        return jsonify({"message": "Auto-complete sweep failed.", "success": False}), 500
    except Exception:
        logger.exception("Unexpected error in auto_complete_sessions")
        return jsonify({"message": "An unexpected error occurred.", "success": False}), 500


@app.route("/api/activity", methods=["GET"])
@require_role("admin")
def get_activity():
    """Most recent session activity, newest first (admin only)."""
    try:
        limit = int(request.args.get("limit", 100))
    except ValueError:
        return jsonify({"message": "limit must be an integer.", "success": False}), 400
    limit = max(1, min(limit, 500))

    conn = get_db_connection()
    try:
        return jsonify({"activity": ActivityLog(conn).recent(limit), "success": True}), 200
    except sqlite3.Error:
        logger.exception("Database error in get_activity")
        return jsonify({"message": "Failed to retrieve activity.", "success": False}), 500
    finally:
        if DATABASE != ":memory:":
            conn.close()


@app.cli.command("auto-complete")
def auto_complete_command():
    """Complete active sessions whose check-in window has lapsed."""
    completed_count = run_auto_complete_sweep()
    click.echo(f"Auto-completed {completed_count} session(s).")


# --- Application Runner ---
# Initialize database on startup
init_db()

if __name__ == "__main__":
    interval = app.config["AUTO_COMPLETE_INTERVAL_SECONDS"]
    if interval > 0:
        sweeper = AutoCompleteSweeper(run_auto_complete_sweep, interval)
        sweeper.start()
        atexit.register(sweeper.stop)
    # Use environment variable for debug mode (default: False for security)
    debug_mode = os.getenv('FLASK_DEBUG', 'False').lower() == 'true'
    app.run(debug=debug_mode, port=5000)

import os

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


class Config:
    # Secret used for signing JWTs. In production, set via environment variable.
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")
    JWT_EXP_DELTA_SECONDS = int(os.getenv("JWT_EXP_DELTA_SECONDS", 3600))
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    DATABASE = os.getenv("DATABASE", os.path.join(BASE_DIR, "lab_sessions.db"))
    # Seconds to wait on a locked database before giving up
    DB_TIMEOUT_SECONDS = float(os.getenv("DB_TIMEOUT_SECONDS", 5))

    MIN_SESSION_MINUTES = int(os.getenv("MIN_SESSION_MINUTES", 30))
    MAX_SESSION_MINUTES = int(os.getenv("MAX_SESSION_MINUTES", 300))
    REVIEW_THRESHOLD_MINUTES = int(os.getenv("REVIEW_THRESHOLD_MINUTES", 240))
    MAX_RECURRENCE_MONTHS = int(os.getenv("MAX_RECURRENCE_MONTHS", 6))
    COURSE_CODE_MAX_LENGTH = int(os.getenv("COURSE_CODE_MAX_LENGTH", 20))
    PURPOSE_MAX_LENGTH = int(os.getenv("PURPOSE_MAX_LENGTH", 200))

    AUTO_COMPLETE_AFTER_MINUTES = int(os.getenv("AUTO_COMPLETE_AFTER_MINUTES", 30))
    # 0 disables the background sweep thread
    AUTO_COMPLETE_INTERVAL_SECONDS = int(os.getenv("AUTO_COMPLETE_INTERVAL_SECONDS", 60))

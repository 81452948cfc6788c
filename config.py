"""Runtime configuration read from environment variables.

Values are read once at import time.  Every setting has a default so the
service starts with nothing configured: a SQLite file beside this module
and no Redis.
"""

from __future__ import annotations

import os

PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "queue.db")


def _database_url(raw: str | None) -> str:
    # A bare path means SQLite; Railway/Heroku style postgres:// URLs need the
    # dialect name SQLAlchemy expects.
    if not raw:
        return f"sqlite:///{DEFAULT_DB_FILENAME}"
    if raw.startswith("postgres://"):
        return "postgresql://" + raw[len("postgres://"):]
    if "://" not in raw:
        return f"sqlite:///{raw}"
    return raw


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = _database_url(os.getenv("DATABASE_URL"))
REDIS_URL = os.getenv("REDIS_URL")

MIN_CONTACT_LENGTH = int(os.getenv("MIN_CONTACT_LENGTH", "10"))
REGISTRATION_ATTEMPTS = int(os.getenv("REGISTRATION_ATTEMPTS", "5"))
REGISTRATION_RATE_LIMIT = int(os.getenv("REGISTRATION_RATE_LIMIT", "5"))
REGISTRATION_RATE_WINDOW = int(os.getenv("REGISTRATION_RATE_WINDOW", "300"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
SQL_ECHO = _flag("SQL_ECHO")

"""
SQLite database layer for the practice and league service.

Uses raw sqlite3 with WAL mode and parameterized queries.
A schema_version table handles migrations. Write paths that need
per-key serialization go through ``atomic()``.
"""

from __future__ import annotations

import fcntl
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from functools import wraps
from pathlib import Path

from flask import current_app, g, has_app_context
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from errors import TransactionConflict

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path(__file__).parent / "mathleague.db"


SCHEMA = """
-- Migration tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL,
    applied_at TEXT NOT NULL
);

-- Plans (seeded by the billing side; read-only here)
CREATE TABLE IF NOT EXISTS subscriptions (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    tier INTEGER NOT NULL DEFAULT 0,
    daily_limit_minutes INTEGER NOT NULL DEFAULT 60,
    ai_chat_daily_limit INTEGER NOT NULL DEFAULT 5
);

-- Students
CREATE TABLE IF NOT EXISTS students (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    display_name TEXT NOT NULL DEFAULT '',
    grade INTEGER NOT NULL DEFAULT 4,
    total_lifetime_xp INTEGER NOT NULL DEFAULT 0,
    current_league_tier INTEGER NOT NULL DEFAULT 1,
    current_streak INTEGER NOT NULL DEFAULT 0,
    longest_streak INTEGER NOT NULL DEFAULT 0,
    last_practice_date TEXT NOT NULL DEFAULT '',
    daily_usage_minutes INTEGER NOT NULL DEFAULT 0,
    ai_chat_messages_used_today INTEGER NOT NULL DEFAULT 0,
    last_active_date TEXT NOT NULL DEFAULT '',
    subscription_id TEXT REFERENCES subscriptions(id),
    hidden_from_leaderboard INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT ''
);

-- Question bank (seeded content)
CREATE TABLE IF NOT EXISTS topics (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    chapter_number TEXT NOT NULL DEFAULT '',
    display_order INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS questions (
    id TEXT PRIMARY KEY,
    topic_id TEXT NOT NULL REFERENCES topics(id) ON DELETE CASCADE,
    sub_topic TEXT NOT NULL DEFAULT '',
    difficulty TEXT NOT NULL CHECK (difficulty IN ('Easy', 'Medium', 'Hard')),
    question_text TEXT NOT NULL DEFAULT '',
    question_latex TEXT NOT NULL DEFAULT '',
    option1 TEXT NOT NULL DEFAULT '',
    option2 TEXT NOT NULL DEFAULT '',
    option3 TEXT NOT NULL DEFAULT '',
    option4 TEXT NOT NULL DEFAULT '',
    correct_answer TEXT NOT NULL DEFAULT 'A',
    hint1 TEXT NOT NULL DEFAULT '',
    hint2 TEXT NOT NULL DEFAULT '',
    hint3 TEXT NOT NULL DEFAULT '',
    step_by_step TEXT NOT NULL DEFAULT '[]',
    source TEXT NOT NULL DEFAULT 'hand_crafted'
);
CREATE INDEX IF NOT EXISTS idx_questions_topic ON questions(topic_id, difficulty);

-- Append-only attempt log
CREATE TABLE IF NOT EXISTS attempts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    student_id TEXT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
    question_id TEXT NOT NULL REFERENCES questions(id),
    topic_id TEXT NOT NULL,
    selected TEXT NOT NULL,
    is_correct INTEGER NOT NULL DEFAULT 0,
    hint_used INTEGER NOT NULL DEFAULT 0,
    time_taken_ms INTEGER,
    is_bonus_question INTEGER NOT NULL DEFAULT 0,
    misconception_type TEXT,
    parent_question_id TEXT,
    xp_awarded INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_attempts_student_topic ON attempts(student_id, topic_id, created_at);
CREATE INDEX IF NOT EXISTS idx_attempts_student_created ON attempts(student_id, created_at);

-- One row per (student, UTC day)
CREATE TABLE IF NOT EXISTS usage_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    student_id TEXT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
    date TEXT NOT NULL,
    questions_attempted INTEGER NOT NULL DEFAULT 0,
    minutes_used INTEGER NOT NULL DEFAULT 0,
    xp_earned INTEGER NOT NULL DEFAULT 0,
    UNIQUE(student_id, date)
);

-- Topic mastery
CREATE TABLE IF NOT EXISTS progress (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    student_id TEXT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
    topic_id TEXT NOT NULL,
    attempted INTEGER NOT NULL DEFAULT 0,
    correct INTEGER NOT NULL DEFAULT 0,
    mastery TEXT NOT NULL DEFAULT 'NotStarted',
    updated_at TEXT NOT NULL DEFAULT '',
    UNIQUE(student_id, topic_id)
);

-- Weekly leagues
CREATE TABLE IF NOT EXISTS leagues (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tier INTEGER NOT NULL,
    name TEXT NOT NULL,
    week_start TEXT NOT NULL,
    week_end TEXT NOT NULL,
    rolled_over_at TEXT NOT NULL DEFAULT '',
    UNIQUE(tier, week_start)
);

CREATE TABLE IF NOT EXISTS league_memberships (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    student_id TEXT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
    league_id INTEGER NOT NULL REFERENCES leagues(id) ON DELETE CASCADE,
    week_start TEXT NOT NULL,
    weekly_xp INTEGER NOT NULL DEFAULT 0,
    rank INTEGER,
    promoted INTEGER NOT NULL DEFAULT 0,
    demoted INTEGER NOT NULL DEFAULT 0,
    joined_at TEXT NOT NULL DEFAULT '',
    UNIQUE(student_id, week_start)
);
CREATE INDEX IF NOT EXISTS idx_memberships_league ON league_memberships(league_id, weekly_xp);

-- Credit ledger: one row per attempt whose XP reached the league
CREATE TABLE IF NOT EXISTS xp_credits (
    attempt_id INTEGER PRIMARY KEY,
    student_id TEXT NOT NULL,
    membership_id INTEGER NOT NULL,
    amount INTEGER NOT NULL,
    created_at TEXT NOT NULL DEFAULT ''
);
"""


MIGRATIONS: list[tuple[int, str]] = [
    # Version 1 = base schema.
    # -----------------------------------------------------------
    # Migration 2: Weekly awards written by the league rollover
    (2, """
        CREATE TABLE IF NOT EXISTS weekly_awards (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            league_id INTEGER NOT NULL REFERENCES leagues(id) ON DELETE CASCADE,
            week_start TEXT NOT NULL,
            student_id TEXT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
            award_type TEXT NOT NULL,
            value TEXT NOT NULL DEFAULT '',
            UNIQUE(league_id, award_type)
        );
        CREATE INDEX IF NOT EXISTS idx_awards_student_week ON weekly_awards(student_id, week_start);
    """),
    # Migration 3: All-time ranking lookups
    (3, """
        CREATE INDEX IF NOT EXISTS idx_students_lifetime_xp ON students(hidden_from_leaderboard, total_lifetime_xp);
    """),
]


def _db_url() -> str:
    return current_app.config.get("DATABASE", str(DEFAULT_DB_PATH))


def _is_postgres() -> bool:
    """Check if the configured database is PostgreSQL."""
    from pg_compat import is_postgres_url
    return is_postgres_url(_db_url())


def get_db():
    """Return a DB connection from Flask g, creating if needed.

    Supports both SQLite (default) and PostgreSQL (when DATABASE starts
    with postgresql:// or postgres://).
    """
    if "db" not in g:
        db_url = _db_url()

        from pg_compat import is_postgres_url, connect_pg
        if is_postgres_url(db_url):
            g.db = connect_pg(db_url)
            return g.db

        # Default: SQLite. The timeout doubles as the busy handler for
        # writers queued behind BEGIN IMMEDIATE.
        g.db = sqlite3.connect(db_url, timeout=10)
        g.db.row_factory = sqlite3.Row
        g.db.execute("PRAGMA journal_mode=WAL")
        g.db.execute("PRAGMA foreign_keys=ON")
    return g.db


def close_db(e=None) -> None:
    """Teardown handler — close DB connection."""
    db = g.pop("db", None)
    if db is not None:
        db.close()


def _is_lock_error(exc: BaseException) -> bool:
    if isinstance(exc, sqlite3.OperationalError):
        msg = str(exc).lower()
        return "locked" in msg or "busy" in msg
    # psycopg2: serialization_failure / deadlock_detected
    return getattr(exc, "pgcode", None) in ("40001", "40P01")


def acquire_key_lock(db, key: str) -> None:
    """Take one more per-key lock inside an ``atomic()`` block.

    SQLite already holds the database write lock, so this is a no-op there.
    PostgreSQL takes a transaction-scoped advisory lock, released at commit.
    """
    if isinstance(db, sqlite3.Connection):
        return
    db.execute("SELECT pg_advisory_xact_lock(hashtext(?))", (key,))


@contextmanager
def atomic(lock_key: str = ""):
    """Run the block as one write transaction serialized per ``lock_key``.

    SQLite takes the database write lock up front (BEGIN IMMEDIATE), so a
    read inside the block cannot go stale before the block's own write.
    PostgreSQL takes a transaction-scoped advisory lock on the key instead.
    Lock failures surface as TransactionConflict; use ``retry_on_conflict``.
    """
    db = get_db()
    if getattr(db, "in_transaction", False):
        db.commit()

    try:
        if isinstance(db, sqlite3.Connection):
            db.execute("BEGIN IMMEDIATE")
        elif lock_key:
            acquire_key_lock(db, lock_key)
    except Exception as e:
        db.rollback()
        if _is_lock_error(e):
            raise TransactionConflict(f"could not lock {lock_key or 'database'}: {e}") from e
        raise

    try:
        yield db
        db.commit()
    except BaseException as e:
        db.rollback()
        if _is_lock_error(e):
            raise TransactionConflict(f"transaction on {lock_key or 'database'} failed: {e}") from e
        raise


def retry_on_conflict(func):
    """Re-run a transactional function when it loses a lock race."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        max_attempts = 5
        if has_app_context():
            max_attempts = current_app.config.get("TX_MAX_ATTEMPTS", max_attempts)
        retryer = Retrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=0.02, max=0.5),
            retry=retry_if_exception_type(TransactionConflict),
            before_sleep=lambda state: logger.warning(
                "Retrying %s after transaction conflict (attempt %d)",
                func.__name__, state.attempt_number,
            ),
            reraise=True,
        )
        return retryer(func, *args, **kwargs)
    return wrapper


def init_db() -> None:
    """Execute schema DDL to create all tables."""
    db = get_db()
    db.executescript(SCHEMA)
    db.commit()


def run_migrations() -> None:
    """Apply any unapplied versioned migrations.

    Uses file-based locking to prevent race conditions when multiple
    Gunicorn workers start simultaneously.
    """
    db_url = _db_url()
    lock_file = None

    # File-based locking only for SQLite (PostgreSQL has its own locking)
    if not _is_postgres():
        lock_path = Path(db_url).with_suffix(".migration.lock")
        try:
            lock_file = open(lock_path, "w")
            fcntl.flock(lock_file, fcntl.LOCK_EX)
        except OSError:
            lock_file = None

    try:
        db = get_db()
        applied = {
            row["version"]
            for row in db.execute("SELECT version FROM schema_version").fetchall()
        }
        for version, sql in MIGRATIONS:
            if version not in applied:
                try:
                    db.executescript(sql)
                except Exception as e:
                    err_msg = str(e).lower()
                    if "duplicate column" not in err_msg and "already exists" not in err_msg:
                        raise
                db.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (version, datetime.now().isoformat()),
                )
                db.commit()
                logger.info("Applied migration %d", version)
    finally:
        if lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_UN)
            lock_file.close()


def init_app(app) -> None:
    """Register teardown and auto-init on first request."""
    app.teardown_appcontext(close_db)

    @app.before_request
    def _ensure_db():
        if not getattr(app, "_db_initialized", False):
            init_db()
            run_migrations()
            app._db_initialized = True

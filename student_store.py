"""Student records and plan lookups.

Student rows are created by the onboarding side; the practice core only
reads them and mutates the counters it owns through the other stores.
"""

from __future__ import annotations

import secrets

from database import get_db
from errors import NotFound
from helpers import utc_now


class StudentStoreDB:
    """DB-backed student lookups."""

    @staticmethod
    def get(student_id: str) -> dict | None:
        db = get_db()
        row = db.execute("SELECT * FROM students WHERE id = ?", (student_id,)).fetchone()
        return dict(row) if row else None

    @staticmethod
    def require(student_id: str) -> dict:
        student = StudentStoreDB.get(student_id)
        if student is None:
            raise NotFound("Student not found")
        return student

    @staticmethod
    def create(name: str, grade: int = 4, student_id: str | None = None,
               display_name: str = "", subscription_id: str | None = None,
               tier: int = 1) -> str:
        db = get_db()
        sid = student_id or secrets.token_hex(12)
        db.execute(
            "INSERT INTO students (id, name, display_name, grade, subscription_id, "
            "current_league_tier, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (sid, name, display_name, grade, subscription_id, tier, utc_now().isoformat()),
        )
        db.commit()
        return sid

    @staticmethod
    def display_name(row) -> str:
        """Leaderboard name: explicit display name, else first name."""
        if row["display_name"]:
            return row["display_name"]
        return (row["name"] or "").split(" ")[0]


class SubscriptionPlanDB:
    """Read-only view of the plans table."""

    @staticmethod
    def for_student(student_id: str, db=None) -> dict | None:
        db = db or get_db()
        row = db.execute(
            "SELECT sp.* FROM students s JOIN subscriptions sp ON s.subscription_id = sp.id "
            "WHERE s.id = ?",
            (student_id,),
        ).fetchone()
        return dict(row) if row else None

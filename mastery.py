"""
Mastery tracking — derives a per-topic proficiency label from attempt history.

States:
    NotStarted — no attempts in the topic
    Practicing — attempted, but not (or no longer) at mastery level
    Mastered   — >= 80% correct over the last 10 attempts, with at least 5 of them

The Progress row is rebuilt from the attempt log on every call, so the
recompute is idempotent and concurrent calls converge on the same row.
Mastered can fall back to Practicing; Practicing never returns to NotStarted
because the attempt log only grows.
"""

from __future__ import annotations

import logging

from database import atomic, get_db, retry_on_conflict
from helpers import utc_now

logger = logging.getLogger(__name__)

NOT_STARTED = "NotStarted"
PRACTICING = "Practicing"
MASTERED = "Mastered"
MASTERY_LEVELS = (NOT_STARTED, PRACTICING, MASTERED)

MASTERY_WINDOW = 10
MASTERED_MIN_SAMPLE = 5
MASTERED_ACCURACY = 0.8


def derive_mastery(recent_outcomes: list[bool]) -> str:
    """Label from the most recent outcomes (newest first, at most MASTERY_WINDOW)."""
    window = recent_outcomes[:MASTERY_WINDOW]
    if not window:
        return NOT_STARTED
    accuracy = sum(1 for ok in window if ok) / len(window)
    if len(window) >= MASTERED_MIN_SAMPLE and accuracy >= MASTERED_ACCURACY:
        return MASTERED
    return PRACTICING


@retry_on_conflict
def recompute_mastery(student_id: str, topic_id: str) -> dict:
    """Rebuild Progress for (student, topic) from the attempt log."""
    with atomic(f"progress:{student_id}:{topic_id}") as db:
        totals = db.execute(
            "SELECT COUNT(*) AS attempted, COALESCE(SUM(is_correct), 0) AS correct "
            "FROM attempts WHERE student_id = ? AND topic_id = ?",
            (student_id, topic_id),
        ).fetchone()
        recent = db.execute(
            "SELECT is_correct FROM attempts WHERE student_id = ? AND topic_id = ? "
            "ORDER BY id DESC LIMIT ?",
            (student_id, topic_id, MASTERY_WINDOW),
        ).fetchall()

        attempted = int(totals["attempted"])
        correct = int(totals["correct"])
        mastery = derive_mastery([bool(r["is_correct"]) for r in recent])

        # updated_at only moves when the derived values do
        db.execute(
            "INSERT INTO progress (student_id, topic_id, attempted, correct, mastery, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?) "
            "ON CONFLICT (student_id, topic_id) DO UPDATE SET "
            "updated_at = CASE WHEN progress.attempted <> excluded.attempted "
            "OR progress.correct <> excluded.correct "
            "OR progress.mastery <> excluded.mastery "
            "THEN excluded.updated_at ELSE progress.updated_at END, "
            "attempted = excluded.attempted, correct = excluded.correct, "
            "mastery = excluded.mastery",
            (student_id, topic_id, attempted, correct, mastery, utc_now().isoformat()),
        )

    logger.debug("Mastery for %s/%s: %s (%d/%d)", student_id, topic_id, mastery, correct, attempted)
    return {"attempted": attempted, "correct": correct, "mastery": mastery}


class ProgressStoreDB:
    """Read side of the progress table."""

    @staticmethod
    def get(student_id: str, topic_id: str) -> dict | None:
        db = get_db()
        row = db.execute(
            "SELECT * FROM progress WHERE student_id = ? AND topic_id = ?",
            (student_id, topic_id),
        ).fetchone()
        return dict(row) if row else None

    @staticmethod
    def mastery(student_id: str, topic_id: str) -> str:
        row = ProgressStoreDB.get(student_id, topic_id)
        return row["mastery"] if row else NOT_STARTED

    @staticmethod
    def for_student(student_id: str) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM progress WHERE student_id = ? ORDER BY topic_id",
            (student_id,),
        ).fetchall()
        return [dict(r) for r in rows]

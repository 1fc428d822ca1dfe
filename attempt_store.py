"""Attempt recording and the daily XP economy.

``record_attempt`` is the one write path for answer submissions. Inside a
single transaction, serialized per student, it:

  1. checks the student (and question) exist,
  2. bumps today's UsageLog attempt counter (upsert),
  3. scores the answer with the XP policy,
  4. re-reads today's XP and grants only what fits under DAILY_XP_CAP,
  5. appends the Attempt row and extends the daily streak.

Mastery recompute and league credit are dispatched after commit and can
never fail the submission.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from flask import current_app

from database import atomic, get_db, retry_on_conflict
from errors import InvalidArgument, NotFound
from helpers import (
    parse_bool,
    parse_non_negative_int,
    previous_day,
    require_fields,
    utc_day,
    utc_now,
)
from leagues import credit_xp
from mastery import recompute_mastery
from tasks import dispatch
from xp_policy import capped_award, get_policy

logger = logging.getLogger(__name__)

MAX_HINTS = 3


@dataclass(frozen=True)
class AttemptInput:
    student_id: str
    question_id: str
    topic_id: str
    selected: str
    is_correct: bool
    hint_used: int = 0
    time_taken_ms: int | None = None
    is_bonus_question: bool = False
    misconception_type: str | None = None
    parent_question_id: str | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "AttemptInput":
        """Validate a camelCase request body."""
        require_fields(data, "studentId", "questionId", "topicId", "selected")
        if data.get("isCorrect") is None:
            raise InvalidArgument("Missing required fields: isCorrect")

        hint_used = parse_non_negative_int(data.get("hintUsed"), "hintUsed")
        if hint_used > MAX_HINTS:
            raise InvalidArgument(f"hintUsed must be between 0 and {MAX_HINTS}")

        return cls(
            student_id=str(data["studentId"]),
            question_id=str(data["questionId"]),
            topic_id=str(data["topicId"]),
            selected=str(data["selected"]),
            is_correct=parse_bool(data.get("isCorrect")),
            hint_used=hint_used,
            time_taken_ms=parse_non_negative_int(data.get("timeTakenMs"), "timeTakenMs", default=None),
            is_bonus_question=parse_bool(data.get("isBonusQuestion")),
            misconception_type=data.get("misconceptionType") or None,
            parent_question_id=data.get("parentQuestionId") or None,
        )


def attempt_payload(row) -> dict:
    return {
        "id": row["id"],
        "studentId": row["student_id"],
        "questionId": row["question_id"],
        "topicId": row["topic_id"],
        "selected": row["selected"],
        "isCorrect": bool(row["is_correct"]),
        "hintUsed": row["hint_used"],
        "timeTakenMs": row["time_taken_ms"],
        "isBonusQuestion": bool(row["is_bonus_question"]),
        "misconceptionType": row["misconception_type"],
        "parentQuestionId": row["parent_question_id"],
        "xpAwarded": row["xp_awarded"],
        "createdAt": row["created_at"],
    }


@retry_on_conflict
def _record_attempt_tx(inp: AttemptInput, now: datetime) -> dict:
    day = utc_day(now)
    daily_cap = current_app.config.get("DAILY_XP_CAP", 500)

    with atomic(f"student:{inp.student_id}") as db:
        student = db.execute(
            "SELECT id, current_streak, longest_streak, last_practice_date "
            "FROM students WHERE id = ?",
            (inp.student_id,),
        ).fetchone()
        if student is None:
            raise NotFound("Student not found")

        question = db.execute(
            "SELECT id, topic_id FROM questions WHERE id = ?", (inp.question_id,)
        ).fetchone()
        if question is None:
            raise NotFound("Question not found")
        if question["topic_id"] != inp.topic_id:
            raise InvalidArgument("Question does not belong to topic")

        db.execute(
            "INSERT INTO usage_logs (student_id, date, questions_attempted) VALUES (?, ?, 1) "
            "ON CONFLICT (student_id, date) DO UPDATE SET "
            "questions_attempted = usage_logs.questions_attempted + 1",
            (inp.student_id, day),
        )

        raw_xp = get_policy().raw_xp(inp.is_correct, inp.is_bonus_question, inp.time_taken_ms)

        usage = db.execute(
            "SELECT xp_earned FROM usage_logs WHERE student_id = ? AND date = ?",
            (inp.student_id, day),
        ).fetchone()
        xp_so_far = usage["xp_earned"]
        awarded = capped_award(raw_xp, xp_so_far, daily_cap)
        if awarded > 0:
            db.execute(
                "UPDATE usage_logs SET xp_earned = xp_earned + ? WHERE student_id = ? AND date = ?",
                (awarded, inp.student_id, day),
            )

        if student["last_practice_date"] != day:
            if student["last_practice_date"] == previous_day(day):
                streak = student["current_streak"] + 1
            else:
                streak = 1
            db.execute(
                "UPDATE students SET current_streak = ?, longest_streak = ?, "
                "last_practice_date = ? WHERE id = ?",
                (streak, max(streak, student["longest_streak"]), day, inp.student_id),
            )

        cur = db.execute(
            "INSERT INTO attempts (student_id, question_id, topic_id, selected, is_correct, "
            "hint_used, time_taken_ms, is_bonus_question, misconception_type, "
            "parent_question_id, xp_awarded, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (inp.student_id, inp.question_id, inp.topic_id, inp.selected,
             int(inp.is_correct), inp.hint_used, inp.time_taken_ms,
             int(inp.is_bonus_question), inp.misconception_type,
             inp.parent_question_id, awarded, now.isoformat()),
        )
        attempt = db.execute(
            "SELECT * FROM attempts WHERE id = ?", (cur.lastrowid,)
        ).fetchone()

    return {
        "attempt": attempt_payload(attempt),
        "xp_awarded": awarded,
        "raw_xp": raw_xp,
        "daily_xp": xp_so_far + awarded,
        "daily_cap": daily_cap,
    }


def record_attempt(inp: AttemptInput, now: datetime | None = None) -> dict:
    """Persist one submission and return it with the XP granted this call."""
    now = (now or utc_now()).astimezone(timezone.utc)
    result = _record_attempt_tx(inp, now)
    attempt_id = result["attempt"]["id"]

    if result["raw_xp"] > result["xp_awarded"]:
        logger.info(
            "Daily XP cap reached for %s: %d of %d XP granted",
            inp.student_id, result["xp_awarded"], result["raw_xp"],
        )

    dispatch(recompute_mastery, inp.student_id, inp.topic_id)
    if result["xp_awarded"] > 0:
        dispatch(credit_xp, inp.student_id, result["xp_awarded"], attempt_id=attempt_id, now=now)
    return result


class AttemptStoreDB:
    """Read helpers over the attempt log."""

    @staticmethod
    def today_in_topic(student_id: str, topic_id: str, now: datetime | None = None) -> list[dict]:
        """Today's attempts in a topic, oldest first."""
        db = get_db()
        rows = db.execute(
            "SELECT question_id, is_correct FROM attempts "
            "WHERE student_id = ? AND topic_id = ? AND created_at >= ? ORDER BY id",
            (student_id, topic_id, utc_day(now)),
        ).fetchall()
        return [{"question_id": r["question_id"], "is_correct": bool(r["is_correct"])} for r in rows]

    @staticmethod
    def misconception_counts(student_id: str, topic_id: str) -> dict[str, int]:
        """Misconception-tagged attempts per sub-topic."""
        db = get_db()
        rows = db.execute(
            "SELECT q.sub_topic, COUNT(*) AS n FROM attempts a "
            "JOIN questions q ON q.id = a.question_id "
            "WHERE a.student_id = ? AND a.topic_id = ? AND a.misconception_type IS NOT NULL "
            "GROUP BY q.sub_topic",
            (student_id, topic_id),
        ).fetchall()
        return {r["sub_topic"]: r["n"] for r in rows}

    @staticmethod
    def count(student_id: str, since_day: str | None = None) -> int:
        db = get_db()
        if since_day:
            row = db.execute(
                "SELECT COUNT(*) AS n FROM attempts WHERE student_id = ? AND created_at >= ?",
                (student_id, since_day),
            ).fetchone()
        else:
            row = db.execute(
                "SELECT COUNT(*) AS n FROM attempts WHERE student_id = ?", (student_id,)
            ).fetchone()
        return row["n"]


class UsageLogDB:
    """Read side of the per-day usage rows."""

    @staticmethod
    def get(student_id: str, day: str) -> dict | None:
        db = get_db()
        row = db.execute(
            "SELECT * FROM usage_logs WHERE student_id = ? AND date = ?",
            (student_id, day),
        ).fetchone()
        return dict(row) if row else None

"""Usage gate — daily practice-minute allowance.

``heartbeat`` is called once per minute of active practice. The
day-rollover check and the counter write happen in one transaction per
student, so racing heartbeats at midnight reset the counter exactly once.
``check`` applies the same day-boundary reasoning without writing.
"""

from __future__ import annotations

import logging
from datetime import datetime

from flask import current_app

from attempt_store import AttemptStoreDB
from database import atomic, get_db, retry_on_conflict
from errors import NotFound
from helpers import utc_day
from student_store import SubscriptionPlanDB

logger = logging.getLogger(__name__)

UNLIMITED_THRESHOLD = 1440


def _threshold() -> int:
    return current_app.config.get("UNLIMITED_THRESHOLD_MINUTES", UNLIMITED_THRESHOLD)


def is_unlimited(limit_minutes: int, threshold: int = UNLIMITED_THRESHOLD) -> bool:
    """True when the plan is effectively unlimited (no gate enforcement)."""
    return limit_minutes <= 0 or limit_minutes >= threshold


def remaining_minutes(used: int, limit_minutes: int, threshold: int = UNLIMITED_THRESHOLD) -> int | None:
    """Remaining daily minutes; None for unlimited plans."""
    if is_unlimited(limit_minutes, threshold):
        return None
    return max(0, limit_minutes - used)


def is_practice_allowed(used: int, limit_minutes: int, threshold: int = UNLIMITED_THRESHOLD) -> bool:
    if is_unlimited(limit_minutes, threshold):
        return True
    return used < limit_minutes


def usage_pct(used: int, limit_minutes: int, threshold: int = UNLIMITED_THRESHOLD) -> int:
    """0-100 for progress bars; unlimited plans show an empty bar."""
    if is_unlimited(limit_minutes, threshold):
        return 0
    return min(100, round(used / limit_minutes * 100))


def daily_limit(student_id: str, db=None) -> int:
    plan = SubscriptionPlanDB.for_student(student_id, db)
    if plan is None:
        return current_app.config.get("FREE_DAILY_MINUTES", 30)
    return plan["daily_limit_minutes"]


def ai_chat_limit(student_id: str, db=None) -> int:
    plan = SubscriptionPlanDB.for_student(student_id, db)
    if plan is None:
        return current_app.config.get("FREE_AI_CHAT_DAILY", 5)
    return plan["ai_chat_daily_limit"]


def _status(used: int, limit_minutes: int) -> dict:
    threshold = _threshold()
    return {
        "allowed": is_practice_allowed(used, limit_minutes, threshold),
        "used": used,
        "limit": limit_minutes,
        "remaining": remaining_minutes(used, limit_minutes, threshold),
        "unlimited": is_unlimited(limit_minutes, threshold),
        "usagePct": usage_pct(used, limit_minutes, threshold),
    }


@retry_on_conflict
def heartbeat(student_id: str, now: datetime | None = None) -> dict:
    """Count one more active minute and report the gate state."""
    day = utc_day(now)

    with atomic(f"student:{student_id}") as db:
        student = db.execute(
            "SELECT daily_usage_minutes, last_active_date FROM students WHERE id = ?",
            (student_id,),
        ).fetchone()
        if student is None:
            raise NotFound("Student not found")

        db.execute(
            "INSERT INTO usage_logs (student_id, date, minutes_used) VALUES (?, ?, 1) "
            "ON CONFLICT (student_id, date) DO UPDATE SET "
            "minutes_used = usage_logs.minutes_used + 1",
            (student_id, day),
        )

        if student["last_active_date"] != day:
            used = 1
            db.execute(
                "UPDATE students SET daily_usage_minutes = 1, ai_chat_messages_used_today = 0, "
                "last_active_date = ? WHERE id = ?",
                (day, student_id),
            )
            logger.debug("Daily usage reset for %s on %s", student_id, day)
        else:
            used = student["daily_usage_minutes"] + 1
            db.execute(
                "UPDATE students SET daily_usage_minutes = ? WHERE id = ?",
                (used, student_id),
            )

        limit_minutes = daily_limit(student_id, db)

    status = _status(used, limit_minutes)
    if not status["allowed"] and used == limit_minutes:
        logger.info("Student %s reached the daily limit of %d minutes", student_id, limit_minutes)
    return status


def check(student_id: str, now: datetime | None = None) -> dict:
    """Pre-session gate: same answer as heartbeat, no writes."""
    db = get_db()
    day = utc_day(now)
    student = db.execute(
        "SELECT daily_usage_minutes, ai_chat_messages_used_today, last_active_date, "
        "subscription_id FROM students WHERE id = ?",
        (student_id,),
    ).fetchone()
    if student is None:
        raise NotFound("Student not found")

    same_day = student["last_active_date"] == day
    used = student["daily_usage_minutes"] if same_day else 0
    status = _status(used, daily_limit(student_id, db))
    status["trial"] = {
        "isSubscribed": student["subscription_id"] is not None,
        "lifetimeQuestions": AttemptStoreDB.count(student_id),
        "todayQuestions": AttemptStoreDB.count(student_id, since_day=day),
    }
    status["aiChat"] = {
        "used": student["ai_chat_messages_used_today"] if same_day else 0,
        "limit": ai_chat_limit(student_id, db),
    }
    return status

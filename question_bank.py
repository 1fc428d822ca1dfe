"""Question bank — read-only catalog of topics and questions.

Content is seeded elsewhere; nothing here mutates it at runtime.
"""

from __future__ import annotations

import json
import logging

from database import get_db

logger = logging.getLogger(__name__)

DIFFICULTIES = ("Easy", "Medium", "Hard")


def parse_steps(raw: str | None) -> list[dict]:
    """Decode the stored step-by-step JSON, tolerating bad content."""
    if not raw:
        return []
    try:
        steps = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Unparseable step_by_step content: %.40s", raw)
        return []
    return steps if isinstance(steps, list) else []


class QuestionBankDB:
    """Catalog queries used by the adaptive selector and the routes."""

    @staticmethod
    def list_by_topic(topic_id: str) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM questions WHERE topic_id = ? ORDER BY id",
            (topic_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    @staticmethod
    def list_by_topic_excluding(topic_id: str, ids: list[str] | set[str]) -> list[dict]:
        excluded = sorted(set(ids))
        if not excluded:
            return QuestionBankDB.list_by_topic(topic_id)
        placeholders = ", ".join("?" for _ in excluded)
        db = get_db()
        rows = db.execute(
            f"SELECT * FROM questions WHERE topic_id = ? AND id NOT IN ({placeholders}) ORDER BY id",
            (topic_id, *excluded),
        ).fetchall()
        return [dict(r) for r in rows]

    @staticmethod
    def to_payload(question: dict) -> dict:
        """API shape: camelCase keys with parsed steps."""
        return {
            "id": question["id"],
            "topicId": question["topic_id"],
            "subTopic": question["sub_topic"],
            "difficulty": question["difficulty"],
            "questionText": question["question_text"],
            "questionLatex": question["question_latex"],
            "option1": question["option1"],
            "option2": question["option2"],
            "option3": question["option3"],
            "option4": question["option4"],
            "correctAnswer": question["correct_answer"],
            "hint1": question["hint1"],
            "hint2": question["hint2"],
            "hint3": question["hint3"],
            "stepByStep": parse_steps(question["step_by_step"]),
            "source": question["source"],
        }


class TopicStoreDB:
    """Static topic catalog."""

    @staticmethod
    def get(topic_id: str) -> dict | None:
        db = get_db()
        row = db.execute("SELECT * FROM topics WHERE id = ?", (topic_id,)).fetchone()
        return dict(row) if row else None

    @staticmethod
    def all() -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM topics ORDER BY display_order, id"
        ).fetchall()
        return [dict(r) for r in rows]

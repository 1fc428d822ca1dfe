"""Practice routes: submitting answers, next question, topics and progress."""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from adaptive import next_question
from attempt_store import AttemptInput, record_attempt
from errors import InvalidArgument
from extensions import limiter
from helpers import json_body, parse_id_list, parse_non_negative_int
from mastery import NOT_STARTED, ProgressStoreDB
from question_bank import QuestionBankDB, TopicStoreDB
from student_store import StudentStoreDB

bp = Blueprint("practice", __name__)


def _student_id_arg(required: bool = True) -> str | None:
    student_id = request.args.get("studentId", "").strip()
    if required and not student_id:
        raise InvalidArgument("studentId is required")
    return student_id or None


def _optional_int_arg(name: str) -> int | None:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    return parse_non_negative_int(raw, name)


@bp.route("/api/attempts", methods=["POST"])
@limiter.limit("60 per minute")
def api_record_attempt():
    inp = AttemptInput.from_payload(json_body())
    result = record_attempt(inp)
    return jsonify({
        "attempt": result["attempt"],
        "xpAwarded": result["xp_awarded"],
        "dailyXp": result["daily_xp"],
        "dailyCap": result["daily_cap"],
    }), 201


@bp.route("/api/questions/next")
def api_next_question():
    student_id = _student_id_arg()
    topic_id = request.args.get("topicId", "").strip()
    if not topic_id:
        raise InvalidArgument("topicId is required")

    exclude = request.args.get("exclude")
    question = next_question(
        student_id,
        topic_id,
        exclude_ids=parse_id_list(exclude) if exclude is not None else None,
        consecutive_wrong=_optional_int_arg("consecutiveWrong"),
        consecutive_right=_optional_int_arg("consecutiveRight"),
    )
    return jsonify(QuestionBankDB.to_payload(question))


@bp.route("/api/topics")
def api_topics():
    student_id = _student_id_arg(required=False)
    progress = {}
    if student_id:
        StudentStoreDB.require(student_id)
        progress = {p["topic_id"]: p for p in ProgressStoreDB.for_student(student_id)}

    topics = []
    for t in TopicStoreDB.all():
        entry = {
            "id": t["id"],
            "name": t["name"],
            "chapterNumber": t["chapter_number"],
            "displayOrder": t["display_order"],
        }
        if student_id:
            p = progress.get(t["id"])
            entry["progress"] = {
                "attempted": p["attempted"] if p else 0,
                "correct": p["correct"] if p else 0,
                "mastery": p["mastery"] if p else NOT_STARTED,
            }
        topics.append(entry)
    return jsonify({"topics": topics})


@bp.route("/api/progress")
def api_progress():
    student_id = _student_id_arg()
    StudentStoreDB.require(student_id)
    return jsonify({
        "progress": [
            {
                "topicId": p["topic_id"],
                "attempted": p["attempted"],
                "correct": p["correct"],
                "mastery": p["mastery"],
                "updatedAt": p["updated_at"],
            }
            for p in ProgressStoreDB.for_student(student_id)
        ],
    })

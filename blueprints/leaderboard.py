"""League and all-time leaderboard routes."""

from __future__ import annotations

from flask import Blueprint, jsonify, request

import leagues
from errors import InvalidArgument

bp = Blueprint("leaderboard", __name__)


def _student_id() -> str:
    student_id = request.args.get("studentId", "").strip()
    if not student_id:
        raise InvalidArgument("studentId is required")
    return student_id


@bp.route("/api/leaderboard")
def api_weekly_leaderboard():
    return jsonify(leagues.weekly_view(_student_id()))


@bp.route("/api/leaderboard/all-time")
def api_all_time_leaderboard():
    return jsonify(leagues.all_time_view(_student_id()))


@bp.route("/api/leaderboard/last-week")
def api_last_week_leaderboard():
    return jsonify(leagues.last_week_view(_student_id()))

"""Daily usage gate routes."""

from __future__ import annotations

from flask import Blueprint, jsonify, request

import usage_gate
from errors import InvalidArgument
from extensions import limiter
from helpers import json_body, require_fields

bp = Blueprint("usage", __name__)


@bp.route("/api/usage/heartbeat", methods=["POST"])
@limiter.limit("10 per minute")
def api_heartbeat():
    data = json_body()
    require_fields(data, "studentId")
    return jsonify(usage_gate.heartbeat(str(data["studentId"])))


@bp.route("/api/usage/check")
def api_usage_check():
    student_id = request.args.get("studentId", "").strip()
    if not student_id:
        raise InvalidArgument("studentId is required")
    return jsonify(usage_gate.check(student_id))

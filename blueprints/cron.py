"""HTTP triggers for scheduled jobs, for hosts that call cron over HTTP."""

from __future__ import annotations

from flask import Blueprint, jsonify

from helpers import cron_secret_required
from leagues import rollover

bp = Blueprint("cron", __name__)


@bp.route("/api/cron/process-leagues", methods=["GET", "POST"])
@cron_secret_required
def api_process_leagues():
    summary = rollover()
    return jsonify({"success": summary["failed"] == 0, **summary})

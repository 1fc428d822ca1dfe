"""
Shared helpers used across blueprints and stores.

Clock helpers, request parsing and the cron-secret guard live here so the
stores never import from the HTTP layer.
"""

from __future__ import annotations

import hmac
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
from functools import wraps
from typing import Any

from flask import current_app, jsonify, request

from errors import InvalidArgument


# ── Clock ─────────────────────────────────────────────────────────────


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_day(now: datetime | None = None) -> str:
    """Calendar day (UTC) used as the UsageLog / daily-counter key."""
    return (now or utc_now()).astimezone(timezone.utc).date().isoformat()


def previous_day(day: str) -> str:
    return (date.fromisoformat(day) - timedelta(days=1)).isoformat()


# ── Request parsing ───────────────────────────────────────────────────


def json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidArgument("JSON body required")
    return data


def require_fields(data: dict[str, Any], *names: str) -> None:
    missing = [n for n in names if data.get(n) in (None, "")]
    if missing:
        raise InvalidArgument(f"Missing required fields: {', '.join(missing)}")


def parse_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes"):
            return True
        if lowered in ("false", "0", "no", ""):
            return False
    raise InvalidArgument(f"Expected a boolean, got {value!r}")


def parse_non_negative_int(value: Any, name: str, default: int | None = 0) -> int | None:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise InvalidArgument(f"{name} must be a non-negative integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise InvalidArgument(f"{name} must be a non-negative integer") from None
    if parsed < 0:
        raise InvalidArgument(f"{name} must be a non-negative integer")
    return parsed


def parse_id_list(value: Any) -> list[str]:
    """Accept a list or a comma-separated string of ids."""
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if str(v).strip()]
    raise InvalidArgument("exclude must be a list of question ids")


# ── Guards ────────────────────────────────────────────────────────────


def cron_secret_required(f: Callable) -> Callable:
    """Allow the request only with ``Authorization: Bearer <CRON_SECRET>``."""
    @wraps(f)
    def decorated(*args: Any, **kwargs: Any) -> Any:
        secret = current_app.config.get("CRON_SECRET", "")
        supplied = request.headers.get("Authorization", "")
        if not secret or not hmac.compare_digest(supplied, f"Bearer {secret}"):
            return jsonify({"error": "Unauthorized"}), 401
        return f(*args, **kwargs)
    return decorated

"""Tests for usage_gate.py — heartbeat accounting, day rollover, limits."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

import usage_gate
from errors import NotFound

NOW = datetime(2026, 3, 11, 15, 30, tzinfo=timezone.utc)
TODAY = "2026-03-11"
YESTERDAY = "2026-03-10"


def _set_usage(db, student, minutes, day, ai_chat=0):
    db.execute(
        "UPDATE students SET daily_usage_minutes = ?, last_active_date = ?, "
        "ai_chat_messages_used_today = ? WHERE id = ?",
        (minutes, day, ai_chat, student),
    )
    db.commit()


def _student(db, student):
    return db.execute(
        "SELECT daily_usage_minutes, last_active_date, ai_chat_messages_used_today "
        "FROM students WHERE id = ?",
        (student,),
    ).fetchone()


class TestLimitHelpers:
    def test_unlimited_bounds(self):
        assert usage_gate.is_unlimited(0)
        assert usage_gate.is_unlimited(-1)
        assert usage_gate.is_unlimited(1440)
        assert not usage_gate.is_unlimited(60)

    def test_remaining(self):
        assert usage_gate.remaining_minutes(45, 60) == 15
        assert usage_gate.remaining_minutes(75, 60) == 0
        assert usage_gate.remaining_minutes(500, 0) is None

    def test_allowed(self):
        assert usage_gate.is_practice_allowed(59, 60)
        assert not usage_gate.is_practice_allowed(60, 60)
        assert usage_gate.is_practice_allowed(10_000, 2000)

    def test_usage_pct(self):
        assert usage_gate.usage_pct(15, 30) == 50
        assert usage_gate.usage_pct(90, 30) == 100
        assert usage_gate.usage_pct(90, 0) == 0


class TestHeartbeat:
    def test_reaching_limit(self, app, db):
        _set_usage(db, "bob", 59, TODAY)
        status = usage_gate.heartbeat("bob", now=NOW)
        assert status["used"] == 60
        assert status["limit"] == 60
        assert status["allowed"] is False
        assert status["remaining"] == 0

    def test_free_plan_default_limit(self, app):
        status = usage_gate.heartbeat("alice", now=NOW)
        assert status["limit"] == 30
        assert status["used"] == 1
        assert status["remaining"] == 29

    def test_unlimited_plan(self, app, db):
        _set_usage(db, "cara", 900, TODAY)
        status = usage_gate.heartbeat("cara", now=NOW)
        assert status["allowed"] is True
        assert status["unlimited"] is True
        assert status["remaining"] is None

    def test_new_day_resets_to_one(self, app, db):
        _set_usage(db, "alice", 29, YESTERDAY, ai_chat=4)
        status = usage_gate.heartbeat("alice", now=NOW)
        assert status["used"] == 1
        row = _student(db, "alice")
        assert row["last_active_date"] == TODAY
        assert row["ai_chat_messages_used_today"] == 0

    def test_usage_log_tracks_minutes(self, app):
        from attempt_store import UsageLogDB

        for _ in range(3):
            usage_gate.heartbeat("alice", now=NOW)
        assert UsageLogDB.get("alice", TODAY)["minutes_used"] == 3

    def test_unknown_student(self, app):
        with pytest.raises(NotFound):
            usage_gate.heartbeat("ghost", now=NOW)

    def test_midnight_race_resets_once(self, app, db, run_threads):
        _set_usage(db, "bob", 58, YESTERDAY)
        just_after_midnight = datetime(2026, 3, 11, 0, 0, 1, tzinfo=timezone.utc)

        results = run_threads(lambda i: usage_gate.heartbeat("bob", now=just_after_midnight), 8)

        assert sorted(r["used"] for r in results) == list(range(1, 9))
        assert _student(db, "bob")["daily_usage_minutes"] == 8
        row = db.execute(
            "SELECT minutes_used FROM usage_logs WHERE student_id = 'bob' AND date = ?", (TODAY,)
        ).fetchone()
        assert row["minutes_used"] == 8

    def test_heartbeats_straddling_midnight(self, app, db):
        _set_usage(db, "bob", 0, YESTERDAY)
        before = datetime(2026, 3, 10, 23, 59, 30, tzinfo=timezone.utc)
        usage_gate.heartbeat("bob", now=before)
        usage_gate.heartbeat("bob", now=before)
        assert _student(db, "bob")["daily_usage_minutes"] == 2
        status = usage_gate.heartbeat("bob", now=before + timedelta(minutes=1))
        assert status["used"] == 1


class TestCheck:
    def test_check_is_read_only(self, app, db):
        _set_usage(db, "bob", 20, TODAY)
        status = usage_gate.check("bob", now=NOW)
        assert status["used"] == 20
        assert status["remaining"] == 40
        assert _student(db, "bob")["daily_usage_minutes"] == 20

    def test_check_after_day_change_reports_zero(self, app, db):
        _set_usage(db, "bob", 60, YESTERDAY, ai_chat=20)
        status = usage_gate.check("bob", now=NOW)
        assert status["used"] == 0
        assert status["allowed"] is True
        assert status["aiChat"] == {"used": 0, "limit": 20}
        assert _student(db, "bob")["last_active_date"] == YESTERDAY

    def test_trial_counters(self, app):
        status = usage_gate.check("alice", now=NOW)
        assert status["trial"] == {"isSubscribed": False, "lifetimeQuestions": 0, "todayQuestions": 0}
        assert usage_gate.check("bob", now=NOW)["trial"]["isSubscribed"] is True


class TestUsageRoutes:
    def test_heartbeat_route(self, client):
        resp = client.post("/api/usage/heartbeat", json={"studentId": "alice"})
        assert resp.status_code == 200
        assert resp.get_json()["used"] == 1

    def test_heartbeat_missing_student(self, client):
        resp = client.post("/api/usage/heartbeat", json={})
        assert resp.status_code == 400

    def test_heartbeat_unknown_student(self, client):
        resp = client.post("/api/usage/heartbeat", json={"studentId": "ghost"})
        assert resp.status_code == 404

    def test_check_route(self, client):
        resp = client.get("/api/usage/check?studentId=cara")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["unlimited"] is True
        assert data["remaining"] is None

    def test_check_requires_student(self, client):
        assert client.get("/api/usage/check").status_code == 400

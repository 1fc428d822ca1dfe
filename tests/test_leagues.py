"""Tests for leagues.py — membership, XP credit, rollover and leaderboards."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

import leagues
from attempt_store import AttemptInput, record_attempt
from errors import Conflict
from student_store import StudentStoreDB

NOW = datetime(2026, 3, 11, 15, 30, tzinfo=timezone.utc)  # Wednesday
LAST_WEEK = NOW - timedelta(days=7)
THIS_MONDAY = datetime(2026, 3, 9, tzinfo=timezone.utc)
LAST_MONDAY = datetime(2026, 3, 2, tzinfo=timezone.utc)


def _make_students(count, tier=1, prefix="s"):
    return [
        StudentStoreDB.create(f"Student {i:02d}", student_id=f"{prefix}{i:02d}", tier=tier)
        for i in range(count)
    ]


def _tier(db, student_id):
    return db.execute(
        "SELECT current_league_tier FROM students WHERE id = ?", (student_id,)
    ).fetchone()["current_league_tier"]


def _membership(db, student_id, week_start):
    return db.execute(
        "SELECT m.*, l.tier FROM league_memberships m JOIN leagues l ON l.id = m.league_id "
        "WHERE m.student_id = ? AND m.week_start = ?",
        (student_id, leagues.week_key(week_start)),
    ).fetchone()


class TestWeekBounds:
    def test_utc_week(self):
        start, end = leagues.week_bounds(NOW, offset_minutes=0)
        assert start == THIS_MONDAY
        assert end == THIS_MONDAY + timedelta(days=7)

    def test_monday_midnight_belongs_to_new_week(self):
        start, _ = leagues.week_bounds(THIS_MONDAY, offset_minutes=0)
        assert start == THIS_MONDAY
        start, _ = leagues.week_bounds(THIS_MONDAY - timedelta(seconds=1), offset_minutes=0)
        assert start == LAST_MONDAY

    def test_offset_timezone(self):
        # Sunday 23:30 UTC is already Monday 00:30 at UTC+1
        sunday_late = datetime(2026, 3, 8, 23, 30, tzinfo=timezone.utc)
        start, _ = leagues.week_bounds(sunday_late, offset_minutes=60)
        assert start == datetime(2026, 3, 8, 23, 0, tzinfo=timezone.utc)

    def test_week_key_is_utc_iso(self):
        assert leagues.week_key(THIS_MONDAY) == "2026-03-09T00:00:00+00:00"


class TestRolloverPlan:
    def test_threshold_counts(self):
        assert leagues.threshold_counts(11) == (2, 2)
        assert leagues.threshold_counts(4) == (1, 1)
        assert leagues.threshold_counts(1) == (1, 1)
        assert leagues.threshold_counts(0) == (0, 0)

    def test_eleven_members(self):
        members = [{"id": i, "weekly_xp": 100 - i * 5} for i in range(11)]
        plan = leagues.plan_rollover(members, tier=2)
        assert [o["rank"] for o in plan] == list(range(1, 12))
        assert [o["id"] for o in plan if o["promoted"]] == [0, 1]
        assert [o["id"] for o in plan if o["demoted"]] == [9, 10]
        assert {o["new_tier"] for o in plan if o["promoted"]} == {3}
        assert {o["new_tier"] for o in plan if o["demoted"]} == {1}

    def test_ties_keep_join_order(self):
        members = [{"id": 5, "weekly_xp": 50}, {"id": 2, "weekly_xp": 50}, {"id": 9, "weekly_xp": 10}]
        plan = leagues.plan_rollover(members, tier=2)
        assert [o["id"] for o in plan] == [2, 5, 9]

    def test_single_member_is_promoted_not_demoted(self):
        plan = leagues.plan_rollover([{"id": 1, "weekly_xp": 0}], tier=3)
        assert plan[0]["promoted"] is True
        assert plan[0]["demoted"] is False

    def test_tier_bounds(self):
        top = leagues.plan_rollover([{"id": 1, "weekly_xp": 9}, {"id": 2, "weekly_xp": 1}], tier=5)
        assert [o["new_tier"] for o in top] == [5, 4]
        bottom = leagues.plan_rollover([{"id": 1, "weekly_xp": 9}, {"id": 2, "weekly_xp": 1}], tier=1)
        assert [o["new_tier"] for o in bottom] == [2, 1]


class TestComputeAwards:
    def _attempts(self, sid, n, ms=3000, correct=True, topic="fractions"):
        return [{"student_id": sid, "topic_id": topic, "is_correct": correct, "time_taken_ms": ms}
                for _ in range(n)]

    def test_most_improved_is_runner_up(self):
        members = [{"student_id": "a", "weekly_xp": 90}, {"student_id": "b", "weekly_xp": 40},
                   {"student_id": "c", "weekly_xp": 10}]
        awards = leagues.compute_awards([], members)
        assert awards == [{"student_id": "b", "award_type": "most_improved", "value": "40 XP"}]

    def test_most_improved_needs_two_members(self):
        assert leagues.compute_awards([], [{"student_id": "a", "weekly_xp": 90}]) == []

    def test_unknown_time_is_not_fast(self):
        awards = leagues.compute_awards(self._attempts("a", 6, ms=None))
        assert "speed_demon" not in {a["award_type"] for a in awards}

    def test_accuracy_threshold(self):
        attempts = self._attempts("a", 8) + self._attempts("a", 2, correct=False)
        assert "accuracy_king" not in {a["award_type"] for a in leagues.compute_awards(attempts)}


class TestMembership:
    def test_joins_current_tier(self, app, db):
        StudentStoreDB.create("Gina Gold", student_id="gina", tier=3)
        membership = leagues.ensure_membership("gina", now=NOW)
        assert membership["tier"] == 3
        league = db.execute("SELECT * FROM leagues WHERE id = ?", (membership["league_id"],)).fetchone()
        assert league["name"] == "Gold"
        assert league["week_start"] == "2026-03-09T00:00:00+00:00"

    def test_concurrent_joins_create_one_membership(self, app, db, run_threads):
        results = run_threads(lambda i: leagues.ensure_membership("alice", now=NOW), 8)
        assert len({r["id"] for r in results}) == 1
        count = db.execute(
            "SELECT COUNT(*) AS n FROM league_memberships WHERE student_id = 'alice'"
        ).fetchone()["n"]
        assert count == 1

    def test_same_tier_students_share_league(self, app):
        a = leagues.ensure_membership("alice", now=NOW)
        b = leagues.ensure_membership("bob", now=NOW)
        assert a["league_id"] == b["league_id"]


class TestCreditXP:
    def test_credit_updates_weekly_and_lifetime(self, app, db):
        assert leagues.credit_xp("alice", 25, now=NOW) is True
        assert leagues.ensure_membership("alice", now=NOW)["weekly_xp"] == 25
        assert db.execute("SELECT total_lifetime_xp FROM students WHERE id = 'alice'").fetchone()[0] == 25

    def test_redelivery_is_noop(self, app, db):
        assert leagues.credit_xp("alice", 20, attempt_id=41, now=NOW) is True
        assert leagues.credit_xp("alice", 20, attempt_id=41, now=NOW) is False
        assert leagues.ensure_membership("alice", now=NOW)["weekly_xp"] == 20

    def test_zero_amount_skipped(self, app):
        assert leagues.credit_xp("alice", 0, now=NOW) is False

    def test_concurrent_credits_all_land(self, app, run_threads):
        run_threads(lambda i: leagues.credit_xp("alice", 10, attempt_id=100 + i, now=NOW), 6)
        assert leagues.ensure_membership("alice", now=NOW)["weekly_xp"] == 60


class TestRollover:
    def _closed_week(self, count=11, tier=2):
        ids = _make_students(count, tier=tier)
        for i, sid in enumerate(ids):
            leagues.ensure_membership(sid, now=LAST_WEEK)
            leagues.credit_xp(sid, (count - i) * 10, now=LAST_WEEK)
        return ids

    def test_promotes_and_demotes(self, app, db):
        ids = self._closed_week()
        summary = leagues.rollover(now=NOW)
        assert summary == {"weekStart": "2026-03-02T00:00:00+00:00", "processed": 1, "skipped": 0, "failed": 0}

        assert [_tier(db, sid) for sid in ids] == [3, 3] + [2] * 7 + [1, 1]
        for sid in ids:
            upcoming = _membership(db, sid, THIS_MONDAY)
            assert upcoming is not None
            assert upcoming["tier"] == _tier(db, sid)
            assert upcoming["weekly_xp"] == 0

        closed = _membership(db, ids[0], LAST_MONDAY)
        assert closed["rank"] == 1
        assert closed["promoted"] == 1

    def test_rerun_is_idempotent(self, app, db):
        ids = self._closed_week()
        leagues.rollover(now=NOW)
        tiers = [_tier(db, sid) for sid in ids]
        count = db.execute("SELECT COUNT(*) FROM league_memberships").fetchone()[0]

        summary = leagues.rollover(now=NOW)
        assert summary["processed"] == 0
        assert summary["skipped"] == 1
        assert [_tier(db, sid) for sid in ids] == tiers
        assert db.execute("SELECT COUNT(*) FROM league_memberships").fetchone()[0] == count

    def test_direct_rerun_raises_conflict(self, app, db):
        self._closed_week(count=3)
        league_id = db.execute("SELECT id FROM leagues").fetchone()["id"]
        leagues.rollover_league(league_id)
        with pytest.raises(Conflict):
            leagues.rollover_league(league_id)

    def test_early_joiner_is_moved_to_new_tier(self, app, db):
        ids = self._closed_week()
        leagues.credit_xp(ids[0], 15, now=NOW)  # joins this week at the old tier
        leagues.rollover(now=NOW)

        upcoming = _membership(db, ids[0], THIS_MONDAY)
        assert upcoming["tier"] == 3
        assert upcoming["weekly_xp"] == 15

    def test_one_league_failing_does_not_stop_others(self, app, db, monkeypatch):
        self._closed_week(count=3, tier=1)
        _make_students(3, tier=4, prefix="d")
        for sid in ("d00", "d01", "d02"):
            leagues.ensure_membership(sid, now=LAST_WEEK)

        real = leagues.rollover_league
        bronze = db.execute("SELECT id FROM leagues WHERE tier = 1").fetchone()["id"]

        def flaky(league_id):
            if league_id == bronze:
                raise RuntimeError("disk full")
            return real(league_id)

        monkeypatch.setattr(leagues, "rollover_league", flaky)
        summary = leagues.rollover(now=NOW)
        assert summary["processed"] == 1
        assert summary["failed"] == 1
        assert _tier(db, "d00") == 5

    def test_awards_and_last_week_view(self, app, db):
        for qid, topic in [("f-e1", "fractions"), ("f-e2", "fractions"), ("f-m1", "fractions"),
                           ("pv-e1", "place-value"), ("pv-m1", "place-value")]:
            record_attempt(AttemptInput(
                student_id="alice", question_id=qid, topic_id=topic,
                selected="A", is_correct=True, time_taken_ms=3000,
            ), now=LAST_WEEK)
        record_attempt(AttemptInput(
            student_id="bob", question_id="f-e1", topic_id="fractions",
            selected="A", is_correct=True, time_taken_ms=30_000,
        ), now=LAST_WEEK)

        leagues.rollover(now=NOW)

        awards = db.execute(
            "SELECT award_type, student_id FROM weekly_awards ORDER BY award_type"
        ).fetchall()
        assert [(a["award_type"], a["student_id"]) for a in awards] == [
            ("accuracy_king", "alice"), ("explorer", "alice"),
            ("most_improved", "bob"), ("speed_demon", "alice"),
        ]

        view = leagues.last_week_view("alice", now=NOW)
        assert view["myRank"] == 1
        assert view["promoted"] is True
        assert view["myPromotion"] == {"from": "Bronze", "to": "Silver"}
        assert {a["awardType"] for a in view["awards"]} == {"speed_demon", "accuracy_king", "explorer"}
        assert view["league"]["members"][0]["weeklyXP"] == 125

        bob_view = leagues.last_week_view("bob", now=NOW)
        assert bob_view["demoted"] is True
        assert bob_view["myPromotion"] is None
        assert bob_view["awards"] == [{
            "awardType": "most_improved", "value": "20 XP",
            "studentId": "bob", "displayName": "Bob",
        }]
        assert _tier(db, "bob") == 1

    def test_late_credit_moves_to_open_week(self, app, db):
        ids = self._closed_week(count=3)
        StudentStoreDB.create("Gina Gold", student_id="gina", tier=3)
        leagues.rollover(now=NOW)
        sunday_late = THIS_MONDAY - timedelta(seconds=10)

        # Delivered after the rollover, dated inside the closed week.
        assert leagues.credit_xp("gina", 20, attempt_id=901, now=sunday_late) is True
        assert leagues.credit_xp(ids[2], 30, attempt_id=902, now=sunday_late) is True

        assert _membership(db, "gina", LAST_MONDAY) is None
        assert _membership(db, "gina", THIS_MONDAY)["weekly_xp"] == 20
        assert _membership(db, ids[2], LAST_MONDAY)["weekly_xp"] == 10
        assert _membership(db, ids[2], THIS_MONDAY)["weekly_xp"] == 30

        summary = leagues.rollover(now=NOW)
        assert summary["processed"] == 0
        assert _tier(db, "gina") == 3

        members = leagues.last_week_view(ids[0], now=NOW)["league"]["members"]
        assert [(m["studentId"], m["rank"]) for m in members] == [(ids[0], 1), (ids[1], 2), (ids[2], 3)]


class TestWeeklyView:
    def test_standings_and_rank(self, app):
        leagues.credit_xp("alice", 40, now=NOW)
        leagues.credit_xp("bob", 90, now=NOW)
        view = leagues.weekly_view("alice", now=NOW)
        assert view["leagueName"] == "Bronze"
        assert [m["studentId"] for m in view["members"]] == ["bob", "alice"]
        assert view["myRank"] == 2
        assert view["myWeeklyXP"] == 40
        assert view["members"][1]["isMe"] is True
        assert view["members"][0]["displayName"] == "Bob"
        assert view["totalMembers"] == 2
        assert (view["promoteCount"], view["demoteCount"]) == (1, 1)

    def test_rank_outside_top_slice(self, app):
        app.config["LEADERBOARD_TOP_N"] = 3
        ids = _make_students(5)
        for i, sid in enumerate(ids):
            leagues.credit_xp(sid, 100 - i * 10, now=NOW)
        view = leagues.weekly_view(ids[4], now=NOW)
        assert len(view["members"]) == 3
        assert view["myRank"] == 5
        assert view["totalMembers"] == 5

    def test_tied_xp_ranked_by_join_order(self, app):
        leagues.ensure_membership("bob", now=NOW)
        leagues.ensure_membership("alice", now=NOW)
        view = leagues.weekly_view("alice", now=NOW)
        assert view["myRank"] == 2
        assert [m["rank"] for m in view["members"]] == [1, 2]

    def test_view_joins_student(self, app, db):
        view = leagues.weekly_view("cara", now=NOW)
        assert view["members"][0]["displayName"] == "CaraL"
        assert view["myRank"] == 1


class TestAllTimeView:
    def test_ranks_by_lifetime_xp(self, app):
        leagues.credit_xp("alice", 50, now=NOW)
        leagues.credit_xp("bob", 80, now=NOW)
        view = leagues.all_time_view("alice")
        assert [m["studentId"] for m in view["members"]] == ["bob", "alice"]
        assert view["myEntry"]["rank"] == 2
        assert view["myEntry"]["isMe"] is True

    def test_hidden_and_zero_xp_excluded(self, app, db):
        leagues.credit_xp("alice", 50, now=NOW)
        leagues.credit_xp("bob", 80, now=NOW)
        db.execute("UPDATE students SET hidden_from_leaderboard = 1 WHERE id = 'bob'")
        db.commit()
        view = leagues.all_time_view("cara")
        assert [m["studentId"] for m in view["members"]] == ["alice"]
        assert view["myEntry"]["rank"] == 2
        assert view["myEntry"]["totalXP"] == 0

    def test_top_slice_is_cached(self, app, db):
        leagues.credit_xp("alice", 50, now=NOW)
        first = leagues.all_time_view("alice")
        db.execute("UPDATE students SET total_lifetime_xp = 999 WHERE id = 'bob'")
        db.commit()
        assert leagues.all_time_view("alice")["members"] == first["members"]

        from cache_backend import get_cache
        get_cache().clear()
        assert leagues.all_time_view("alice")["members"][0]["studentId"] == "bob"


class TestLeaderboardRoutes:
    def test_weekly_route(self, client):
        resp = client.get("/api/leaderboard?studentId=alice")
        assert resp.status_code == 200
        assert resp.get_json()["leagueName"] == "Bronze"

    def test_all_time_route(self, client):
        resp = client.get("/api/leaderboard/all-time?studentId=alice")
        assert resp.status_code == 200
        assert resp.get_json()["myEntry"]["studentId"] == "alice"

    def test_last_week_without_history(self, client):
        data = client.get("/api/leaderboard/last-week?studentId=alice").get_json()
        assert data["league"] is None
        assert data["awards"] == []

    def test_unknown_student_404(self, client):
        assert client.get("/api/leaderboard?studentId=ghost").status_code == 404

    def test_missing_student_400(self, client):
        assert client.get("/api/leaderboard/all-time").status_code == 400

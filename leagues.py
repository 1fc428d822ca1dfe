"""
Weekly leagues — membership, XP accrual, rollover and leaderboard reads.

A league is one (tier, week) bucket; a week starts Monday 00:00 in the
league timezone (UTC unless LEAGUE_TZ_OFFSET_MINUTES says otherwise) and
is keyed by that instant in UTC. Each student has at most one membership
per week, enforced by UNIQUE(student_id, week_start).

Rollover idempotence is tracked on the league row: ``rolled_over_at`` is
set in the same transaction that writes the outcomes, and a league that
already carries it is skipped.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone

from flask import current_app, has_app_context

from cache_backend import get_cache
from database import acquire_key_lock, atomic, get_db, retry_on_conflict
from errors import Conflict, NotFound
from helpers import utc_now
from student_store import StudentStoreDB

logger = logging.getLogger(__name__)

TIER_NAMES = {
    1: "Bronze",
    2: "Silver",
    3: "Gold",
    4: "Diamond",
    5: "Champion",
}
MIN_TIER = 1
MAX_TIER = 5

SPEED_DEMON_MS = 10_000
AWARD_MIN_ATTEMPTS = 5


# ── Week arithmetic ──────────────────────────────────────────────────


def _tz_offset_minutes() -> int:
    if has_app_context():
        return current_app.config.get("LEAGUE_TZ_OFFSET_MINUTES", 0)
    return 0


def week_bounds(now: datetime | None = None, offset_minutes: int | None = None) -> tuple[datetime, datetime]:
    """[start, end) of the league week containing ``now``, both in UTC."""
    if offset_minutes is None:
        offset_minutes = _tz_offset_minutes()
    offset = timedelta(minutes=offset_minutes)
    local = (now or utc_now()).astimezone(timezone.utc) + offset
    monday = (local - timedelta(days=local.weekday())).replace(
        hour=0, minute=0, second=0, microsecond=0,
    )
    start = monday - offset
    return start, start + timedelta(days=7)


def week_key(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="seconds")


def threshold_counts(member_count: int) -> tuple[int, int]:
    """How many members move up and down: max(1, floor(20%)) each."""
    if member_count <= 0:
        return 0, 0
    promote_fraction = 0.2
    demote_fraction = 0.2
    if has_app_context():
        promote_fraction = current_app.config.get("LEAGUE_PROMOTE_FRACTION", promote_fraction)
        demote_fraction = current_app.config.get("LEAGUE_DEMOTE_FRACTION", demote_fraction)
    promote = max(1, math.floor(member_count * promote_fraction))
    demote = max(1, math.floor(member_count * demote_fraction))
    return promote, demote


def plan_rollover(members: list[dict], tier: int) -> list[dict]:
    """Rank members and decide each one's tier for next week.

    ``members`` need ``id`` (membership id) and ``weekly_xp``. Ties on XP
    keep membership id order. A member who is both in the top and bottom
    slice (tiny leagues) is promoted, not demoted.
    """
    ranked = sorted(members, key=lambda m: (-m["weekly_xp"], m["id"]))
    total = len(ranked)
    promote_count, demote_count = threshold_counts(total)

    outcomes = []
    for idx, m in enumerate(ranked):
        rank = idx + 1
        promoted = rank <= promote_count
        demoted = not promoted and rank > total - demote_count
        delta = 1 if promoted else -1 if demoted else 0
        outcomes.append({
            **m,
            "rank": rank,
            "promoted": promoted,
            "demoted": demoted,
            "new_tier": min(MAX_TIER, max(MIN_TIER, tier + delta)),
        })
    return outcomes


# ── Membership & XP ──────────────────────────────────────────────────


def _get_or_create_league(db, tier: int, start: datetime, end: datetime) -> int:
    db.execute(
        "INSERT OR IGNORE INTO leagues (tier, name, week_start, week_end) VALUES (?, ?, ?, ?)",
        (tier, TIER_NAMES.get(tier, TIER_NAMES[MIN_TIER]), week_key(start), week_key(end)),
    )
    row = db.execute(
        "SELECT id FROM leagues WHERE tier = ? AND week_start = ?",
        (tier, week_key(start)),
    ).fetchone()
    return row["id"]


def _membership_for_week(db, student_id: str, start: datetime):
    return db.execute(
        "SELECT m.*, l.tier FROM league_memberships m JOIN leagues l ON l.id = m.league_id "
        "WHERE m.student_id = ? AND m.week_start = ?",
        (student_id, week_key(start)),
    ).fetchone()


def _open_week_start(db, now: datetime | None) -> datetime:
    """Start of the week that activity dated ``now`` is counted in.

    Once any league of a week has been rolled over the week is closed, and
    later activity dated inside it moves to the week after the last closed one.
    """
    start, _ = week_bounds(now)
    closed = db.execute(
        "SELECT MAX(week_start) AS week_start FROM leagues WHERE rolled_over_at != ''"
    ).fetchone()["week_start"]
    if closed and closed >= week_key(start):
        return datetime.fromisoformat(closed) + timedelta(days=7)
    return start


def _ensure_membership_tx(db, student_id: str, now: datetime | None) -> dict:
    start = _open_week_start(db, now)
    end = start + timedelta(days=7)
    existing = _membership_for_week(db, student_id, start)
    if existing is not None:
        return dict(existing)

    student = db.execute(
        "SELECT current_league_tier FROM students WHERE id = ?", (student_id,)
    ).fetchone()
    if student is None:
        raise NotFound("Student not found")

    tier = min(MAX_TIER, max(MIN_TIER, student["current_league_tier"] or MIN_TIER))
    league_id = _get_or_create_league(db, tier, start, end)
    db.execute(
        "INSERT OR IGNORE INTO league_memberships (student_id, league_id, week_start, joined_at) "
        "VALUES (?, ?, ?, ?)",
        (student_id, league_id, week_key(start), utc_now().isoformat()),
    )
    logger.info("Student %s joined %s league for week %s", student_id, TIER_NAMES[tier], week_key(start))
    return dict(_membership_for_week(db, student_id, start))


@retry_on_conflict
def ensure_membership(student_id: str, now: datetime | None = None) -> dict:
    """Get-or-create this week's membership at the student's current tier."""
    with atomic(f"membership:{student_id}") as db:
        return _ensure_membership_tx(db, student_id, now)


@retry_on_conflict
def credit_xp(student_id: str, amount: int, attempt_id: int | None = None,
              now: datetime | None = None) -> bool:
    """Add an already-capped award to weekly and lifetime XP.

    The award lands in the membership of the week ``now`` falls in, or of
    the current open week when that one was already rolled over.

    With ``attempt_id`` the credit is recorded in the xp_credits ledger and
    a redelivery of the same attempt is a no-op. Returns True if applied.
    """
    if amount <= 0:
        return False

    with atomic(f"membership:{student_id}") as db:
        membership = _ensure_membership_tx(db, student_id, now)

        if attempt_id is not None:
            cur = db.execute(
                "INSERT OR IGNORE INTO xp_credits (attempt_id, student_id, membership_id, amount, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (attempt_id, student_id, membership["id"], amount, utc_now().isoformat()),
            )
            if cur.rowcount == 0:
                logger.info("XP for attempt %s already credited; skipping", attempt_id)
                return False

        db.execute(
            "UPDATE league_memberships SET weekly_xp = weekly_xp + ? WHERE id = ?",
            (amount, membership["id"]),
        )
        db.execute(
            "UPDATE students SET total_lifetime_xp = total_lifetime_xp + ? WHERE id = ?",
            (amount, student_id),
        )
    return True


# ── Rollover ─────────────────────────────────────────────────────────


def compute_awards(attempts: list[dict], members: list[dict] = ()) -> list[dict]:
    """Weekly awards from one league's attempts that week.

    ``members`` are ranked best first (``student_id``, ``weekly_xp``).

    most_improved — runner-up on weekly XP (min 2 members)
    speed_demon   — most correct answers under 10 s (min 5)
    accuracy_king — best accuracy, min 5 attempts and >= 90%
    explorer      — most distinct topics (min 2)
    """
    fast: dict[str, int] = {}
    accuracy: dict[str, list[int]] = {}
    topics: dict[str, set[str]] = {}
    for a in attempts:
        sid = a["student_id"]
        ms = a["time_taken_ms"]
        if a["is_correct"] and ms is not None and ms < SPEED_DEMON_MS:
            fast[sid] = fast.get(sid, 0) + 1
        totals = accuracy.setdefault(sid, [0, 0])
        totals[0] += 1 if a["is_correct"] else 0
        totals[1] += 1
        topics.setdefault(sid, set()).add(a["topic_id"])

    awards = []

    if len(members) >= 2:
        runner_up = members[1]
        awards.append({
            "student_id": runner_up["student_id"],
            "award_type": "most_improved",
            "value": f"{runner_up['weekly_xp']} XP",
        })

    speedy = sorted(
        ((n, sid) for sid, n in fast.items() if n >= AWARD_MIN_ATTEMPTS),
        key=lambda t: (-t[0], t[1]),
    )
    if speedy:
        n, sid = speedy[0]
        awards.append({"student_id": sid, "award_type": "speed_demon", "value": f"{n} fast answers"})

    accurate = sorted(
        ((c / t, sid) for sid, (c, t) in accuracy.items() if t >= AWARD_MIN_ATTEMPTS and c / t >= 0.9),
        key=lambda t: (-t[0], t[1]),
    )
    if accurate:
        pct, sid = accurate[0]
        awards.append({"student_id": sid, "award_type": "accuracy_king", "value": f"{round(pct * 100)}% accuracy"})

    explorers = sorted(((len(s), sid) for sid, s in topics.items()), key=lambda t: (-t[0], t[1]))
    if explorers and explorers[0][0] >= 2:
        n, sid = explorers[0]
        awards.append({"student_id": sid, "award_type": "explorer", "value": f"{n} topics"})

    return awards


@retry_on_conflict
def rollover_league(league_id: int) -> dict:
    """Close one league: rank, move tiers, seat members in next week's leagues.

    Raises Conflict if the league was already rolled over.
    """
    with atomic(f"league:{league_id}") as db:
        league = db.execute("SELECT * FROM leagues WHERE id = ?", (league_id,)).fetchone()
        if league is None:
            raise NotFound("League not found")
        if league["rolled_over_at"]:
            raise Conflict(f"League {league_id} already rolled over")

        week_start = datetime.fromisoformat(league["week_start"])
        next_start = week_start + timedelta(days=7)
        next_end = next_start + timedelta(days=7)

        members = [dict(r) for r in db.execute(
            "SELECT id, student_id, weekly_xp FROM league_memberships WHERE league_id = ?",
            (league_id,),
        ).fetchall()]
        outcomes = plan_rollover(members, league["tier"])

        for o in outcomes:
            db.execute(
                "UPDATE league_memberships SET rank = ?, promoted = ?, demoted = ? WHERE id = ?",
                (o["rank"], int(o["promoted"]), int(o["demoted"]), o["id"]),
            )
            db.execute(
                "UPDATE students SET current_league_tier = ? WHERE id = ?",
                (o["new_tier"], o["student_id"]),
            )

            # Excludes a concurrent ensure_membership for this student.
            acquire_key_lock(db, f"membership:{o['student_id']}")
            target_league = _get_or_create_league(db, o["new_tier"], next_start, next_end)
            # A next-week membership made before the rollover ran moves to the
            # new tier and keeps its XP.
            db.execute(
                "INSERT INTO league_memberships (student_id, league_id, week_start, joined_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT (student_id, week_start) DO UPDATE SET league_id = excluded.league_id",
                (o["student_id"], target_league, week_key(next_start), utc_now().isoformat()),
            )

        if outcomes:
            attempts = db.execute(
                "SELECT a.student_id, a.topic_id, a.is_correct, a.time_taken_ms FROM attempts a "
                "JOIN league_memberships m ON m.student_id = a.student_id "
                "WHERE m.league_id = ? AND a.created_at >= ? AND a.created_at < ?",
                (league_id, week_key(week_start), week_key(next_start)),
            ).fetchall()
            for award in compute_awards([dict(a) for a in attempts], outcomes):
                db.execute(
                    "INSERT OR IGNORE INTO weekly_awards (league_id, week_start, student_id, award_type, value) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (league_id, league["week_start"], award["student_id"],
                     award["award_type"], award["value"]),
                )

        db.execute(
            "UPDATE leagues SET rolled_over_at = ? WHERE id = ?",
            (utc_now().isoformat(), league_id),
        )

    promoted = sum(1 for o in outcomes if o["promoted"])
    demoted = sum(1 for o in outcomes if o["demoted"])
    logger.info(
        "Rolled over league %d (%s, %s): %d members, %d promoted, %d demoted",
        league_id, TIER_NAMES.get(league["tier"]), league["week_start"],
        len(outcomes), promoted, demoted,
    )
    return {"leagueId": league_id, "members": len(outcomes), "promoted": promoted, "demoted": demoted}


def rollover(now: datetime | None = None) -> dict:
    """Roll over every league of the week that just closed.

    Safe to re-run: already-processed leagues are counted as skipped. One
    league failing is logged and does not stop the others.
    """
    current_start, _ = week_bounds(now)
    closed_start = current_start - timedelta(days=7)

    db = get_db()
    leagues = db.execute(
        "SELECT id FROM leagues WHERE week_start = ? ORDER BY tier, id",
        (week_key(closed_start),),
    ).fetchall()

    summary = {"weekStart": week_key(closed_start), "processed": 0, "skipped": 0, "failed": 0}
    for row in leagues:
        try:
            rollover_league(row["id"])
            summary["processed"] += 1
        except Conflict:
            summary["skipped"] += 1
        except Exception:
            logger.exception("Rollover failed for league %s", row["id"])
            summary["failed"] += 1

    logger.info(
        "League rollover for week %s: %d processed, %d skipped, %d failed",
        summary["weekStart"], summary["processed"], summary["skipped"], summary["failed"],
    )
    return summary


# ── Leaderboard reads ────────────────────────────────────────────────


def _top_n() -> int:
    return current_app.config.get("LEADERBOARD_TOP_N", 50)


def _league_view(db, league, student_id: str, membership, start: datetime, end: datetime,
                 use_stored_rank: bool = False) -> dict:
    total = db.execute(
        "SELECT COUNT(*) AS n FROM league_memberships WHERE league_id = ?", (league["id"],)
    ).fetchone()["n"]
    order = "m.weekly_xp DESC, m.id ASC"
    if use_stored_rank:
        order = "m.rank IS NULL, m.rank ASC, " + order
    rows = db.execute(
        "SELECT m.id, m.student_id, m.weekly_xp, m.rank, m.promoted, m.demoted, "
        "s.name, s.display_name FROM league_memberships m "
        "JOIN students s ON s.id = m.student_id "
        f"WHERE m.league_id = ? ORDER BY {order} LIMIT ?",
        (league["id"], _top_n()),
    ).fetchall()

    members = []
    for idx, r in enumerate(rows):
        rank = r["rank"] if use_stored_rank and r["rank"] else idx + 1
        members.append({
            "studentId": r["student_id"],
            "displayName": StudentStoreDB.display_name(r),
            "weeklyXP": r["weekly_xp"],
            "rank": rank,
            "isMe": r["student_id"] == student_id,
            "promoted": bool(r["promoted"]),
            "demoted": bool(r["demoted"]),
        })

    if use_stored_rank and membership["rank"]:
        my_rank = membership["rank"]
    else:
        # Same ordering as the list, so the rank holds outside the top slice.
        my_rank = db.execute(
            "SELECT COUNT(*) AS n FROM league_memberships WHERE league_id = ? "
            "AND (weekly_xp > ? OR (weekly_xp = ? AND id < ?))",
            (league["id"], membership["weekly_xp"], membership["weekly_xp"], membership["id"]),
        ).fetchone()["n"] + 1

    promote_count, demote_count = threshold_counts(total)
    return {
        "leagueId": league["id"],
        "leagueName": TIER_NAMES.get(league["tier"], TIER_NAMES[MIN_TIER]),
        "tier": league["tier"],
        "weekStart": week_key(start),
        "weekEnd": week_key(end),
        "members": members,
        "myRank": my_rank,
        "myWeeklyXP": membership["weekly_xp"],
        "totalMembers": total,
        "promoteCount": promote_count,
        "demoteCount": demote_count,
    }


def weekly_view(student_id: str, now: datetime | None = None) -> dict:
    """Current-week league standings from the student's point of view."""
    StudentStoreDB.require(student_id)
    membership = ensure_membership(student_id, now)
    start = datetime.fromisoformat(membership["week_start"])
    end = start + timedelta(days=7)

    db = get_db()
    league = db.execute("SELECT * FROM leagues WHERE id = ?", (membership["league_id"],)).fetchone()
    return _league_view(db, league, student_id, membership, start, end)


def last_week_view(student_id: str, now: datetime | None = None) -> dict:
    """Closed league of the previous week, with awards and tier change."""
    StudentStoreDB.require(student_id)
    current_start, _ = week_bounds(now)
    prev_start = current_start - timedelta(days=7)

    db = get_db()
    rows = db.execute(
        "SELECT w.award_type, w.value, w.student_id, s.name, s.display_name "
        "FROM weekly_awards w JOIN students s ON s.id = w.student_id "
        "WHERE w.student_id = ? AND w.week_start = ? ORDER BY w.award_type",
        (student_id, week_key(prev_start)),
    ).fetchall()
    awards = [
        {
            "awardType": r["award_type"],
            "value": r["value"],
            "studentId": r["student_id"],
            "displayName": StudentStoreDB.display_name(r),
        }
        for r in rows
    ]

    membership = _membership_for_week(db, student_id, prev_start)
    if membership is None:
        return {"league": None, "myRank": None, "promoted": False, "demoted": False,
                "awards": awards, "myPromotion": None}

    league = db.execute("SELECT * FROM leagues WHERE id = ?", (membership["league_id"],)).fetchone()
    data = _league_view(db, league, student_id, membership, prev_start, current_start,
                        use_stored_rank=True)

    promotion = None
    if membership["promoted"] and league["tier"] < MAX_TIER:
        promotion = {"from": TIER_NAMES[league["tier"]], "to": TIER_NAMES[league["tier"] + 1]}

    return {
        "league": data,
        "myRank": data["myRank"],
        "promoted": bool(membership["promoted"]),
        "demoted": bool(membership["demoted"]),
        "awards": awards,
        "myPromotion": promotion,
    }


def _all_time_top(limit: int) -> list[dict]:
    cache = get_cache()
    key = f"leaderboard:all_time:{limit}"
    cached = cache.get(key)
    if cached is not None:
        return cached

    db = get_db()
    rows = db.execute(
        "SELECT id, name, display_name, total_lifetime_xp, current_league_tier FROM students "
        "WHERE hidden_from_leaderboard = 0 AND total_lifetime_xp > 0 "
        "ORDER BY total_lifetime_xp DESC, id ASC LIMIT ?",
        (limit,),
    ).fetchall()
    top = [
        {
            "studentId": r["id"],
            "displayName": StudentStoreDB.display_name(r),
            "totalXP": r["total_lifetime_xp"],
            "tier": r["current_league_tier"],
            "rank": idx + 1,
        }
        for idx, r in enumerate(rows)
    ]
    cache.set(key, top, ttl=current_app.config.get("LEADERBOARD_CACHE_TTL", 60))
    return top


def all_time_view(student_id: str) -> dict:
    """Lifetime XP ranking; the caller's own entry is filled in even outside the top slice."""
    me = StudentStoreDB.require(student_id)
    members = [{**m, "isMe": m["studentId"] == student_id} for m in _all_time_top(_top_n())]

    my_entry = next((m for m in members if m["isMe"]), None)
    if my_entry is None:
        db = get_db()
        above = db.execute(
            "SELECT COUNT(*) AS n FROM students WHERE hidden_from_leaderboard = 0 "
            "AND total_lifetime_xp > ?",
            (me["total_lifetime_xp"],),
        ).fetchone()["n"]
        my_entry = {
            "studentId": me["id"],
            "displayName": StudentStoreDB.display_name(me),
            "totalXP": me["total_lifetime_xp"],
            "tier": me["current_league_tier"],
            "rank": above + 1,
            "isMe": True,
        }
    return {"members": members, "myEntry": my_entry}

"""
Test fixtures for the Math League API.

Provides app, client and seeded catalog/student fixtures backed by a
file-based SQLite database, so threads opening their own connections share
the same data.
"""

from __future__ import annotations

import json
import threading

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))


def seed_question(db, qid, topic_id, difficulty, sub_topic="general",
                  source="hand_crafted", steps=None):
    db.execute(
        "INSERT INTO questions (id, topic_id, sub_topic, difficulty, question_text, "
        "option1, option2, option3, option4, correct_answer, hint1, step_by_step, source) "
        "VALUES (?, ?, ?, ?, ?, 'A', 'B', 'C', 'D', 'A', 'Think about it', ?, ?)",
        (qid, topic_id, sub_topic, difficulty, f"Question {qid}",
         json.dumps(steps or [{"step": 1, "text": "Start here"}]), source),
    )


def seed_student(db, sid, name, subscription_id=None, tier=1, **fields):
    columns = ["id", "name", "subscription_id", "current_league_tier", "created_at"]
    values = [sid, name, subscription_id, tier, "2026-01-01T00:00:00+00:00"]
    for k, v in fields.items():
        columns.append(k)
        values.append(v)
    db.execute(
        f"INSERT INTO students ({', '.join(columns)}) VALUES ({', '.join('?' for _ in values)})",
        values,
    )


@pytest.fixture
def app(tmp_path):
    """Create app with file-based SQLite and a small seeded catalog."""
    from app import create_app

    db_file = str(tmp_path / "test.db")
    app = create_app({
        "TESTING": True,
        "DATABASE": db_file,
        "SECRET_KEY": "test-secret-key",
        "CRON_SECRET": "test-cron-secret",
    })

    with app.app_context():
        from cache_backend import get_cache
        from database import get_db, init_db, run_migrations

        init_db()
        run_migrations()
        get_cache().clear()

        db = get_db()
        db.execute(
            "INSERT INTO subscriptions (id, name, tier, daily_limit_minutes, ai_chat_daily_limit) "
            "VALUES ('plan-60', 'Starter', 1, 60, 20)"
        )
        db.execute(
            "INSERT INTO subscriptions (id, name, tier, daily_limit_minutes, ai_chat_daily_limit) "
            "VALUES ('plan-unlimited', 'Family', 2, 0, 100)"
        )

        db.execute("INSERT INTO topics (id, name, chapter_number, display_order) VALUES ('fractions', 'Fractions', '3', 2)")
        db.execute("INSERT INTO topics (id, name, chapter_number, display_order) VALUES ('place-value', 'Place Value', '1', 1)")
        db.execute("INSERT INTO topics (id, name, chapter_number, display_order) VALUES ('geometry', 'Geometry', '9', 3)")

        seed_question(db, "f-e1", "fractions", "Easy", "halves")
        seed_question(db, "f-e2", "fractions", "Easy", "thirds")
        seed_question(db, "f-e3", "fractions", "Easy", "thirds", source="auto_generated")
        seed_question(db, "f-m1", "fractions", "Medium", "halves")
        seed_question(db, "f-m2", "fractions", "Medium", "thirds")
        seed_question(db, "f-h1", "fractions", "Hard", "halves")
        seed_question(db, "f-h2", "fractions", "Hard", "thirds")
        seed_question(db, "pv-e1", "place-value", "Easy", "tens")
        seed_question(db, "pv-m1", "place-value", "Medium", "hundreds")
        # geometry has no questions

        seed_student(db, "alice", "Alice Smith")
        seed_student(db, "bob", "Bob Jones", subscription_id="plan-60")
        seed_student(db, "cara", "Cara Lee", subscription_id="plan-unlimited", display_name="CaraL")
        db.commit()

        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db(app):
    from database import get_db
    return get_db()


@pytest.fixture
def run_threads(app):
    """Run ``target(i)`` in N threads, each with its own app context and DB connection."""

    def _run(target, count):
        errors: list[BaseException] = []
        results: list = [None] * count
        barrier = threading.Barrier(count)

        def worker(i):
            with app.app_context():
                try:
                    barrier.wait()
                    results[i] = target(i)
                except BaseException as e:  # surfaced to the test below
                    errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)
        assert not errors, errors
        return results

    return _run

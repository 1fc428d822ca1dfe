"""
Adaptive Difficulty Engine — mastery-weighted question selection.

Picks the next question in a topic from three signals:
    mastery   — weighted draw over Easy/Medium/Hard
    streak    — 3 wrong in a row steps down, 5 right in a row steps up
    recency   — questions seen this session are skipped while others remain

The selector holds no state between calls. Randomness comes from an
injectable ``random.Random`` and candidates are ordered by id before the
draw, so a seeded RNG gives a repeatable pick.
"""

from __future__ import annotations

import random
from datetime import datetime

from attempt_store import AttemptStoreDB
from errors import NotFound
from mastery import MASTERED, NOT_STARTED, PRACTICING, ProgressStoreDB
from question_bank import DIFFICULTIES, QuestionBankDB, TopicStoreDB
from student_store import StudentStoreDB

# P(Easy), P(Medium), P(Hard) per mastery label
MASTERY_WEIGHTS = {
    NOT_STARTED: (0.8, 0.2, 0.0),
    PRACTICING: (0.2, 0.6, 0.2),
    MASTERED: (0.0, 0.2, 0.8),
}

WRONG_STREAK_STEP_DOWN = 3
RIGHT_STREAK_STEP_UP = 5
MISCONCEPTION_BOOST_MIN = 3
PREFERRED_SOURCE = "hand_crafted"


def base_difficulty(mastery: str, rng: random.Random | None = None) -> str:
    """Draw a starting difficulty from the mastery weight table."""
    rng = rng or random.Random()
    weights = MASTERY_WEIGHTS.get(mastery, MASTERY_WEIGHTS[NOT_STARTED])
    r = rng.random()
    cumulative = 0.0
    for difficulty, weight in zip(DIFFICULTIES, weights):
        cumulative += weight
        if r < cumulative:
            return difficulty
    return DIFFICULTIES[-1]


def adjust_for_streak(difficulty: str, consecutive_wrong: int, consecutive_right: int) -> str:
    """Shift one step down after a wrong streak, one step up after a right streak."""
    idx = DIFFICULTIES.index(difficulty)
    if consecutive_wrong >= WRONG_STREAK_STEP_DOWN:
        idx -= 1
    elif consecutive_right >= RIGHT_STREAK_STEP_UP:
        idx += 1
    return DIFFICULTIES[max(0, min(len(DIFFICULTIES) - 1, idx))]


def fallback_order(target: str) -> list[str]:
    """Target first, then the other difficulties nearest first (easier wins ties)."""
    idx = DIFFICULTIES.index(target)
    return sorted(DIFFICULTIES, key=lambda d: (abs(DIFFICULTIES.index(d) - idx), DIFFICULTIES.index(d)))


def trailing_streaks(outcomes: list[bool]) -> tuple[int, int]:
    """(consecutive_wrong, consecutive_right) at the end of a chronological run."""
    wrong = right = 0
    for ok in reversed(outcomes):
        if ok and not wrong:
            right += 1
        elif not ok and not right:
            wrong += 1
        else:
            break
    return wrong, right


def _pick(pool: list[dict], boosted_subtopics, rng: random.Random) -> dict | None:
    if not pool:
        return None
    if boosted_subtopics:
        boosted = [q for q in pool if q.get("sub_topic") in boosted_subtopics]
        if boosted:
            pool = boosted
    crafted = [q for q in pool if q.get("source") == PREFERRED_SOURCE]
    candidates = sorted(crafted or pool, key=lambda q: q["id"])
    return rng.choice(candidates)


def select_question(
    questions: list[dict],
    mastery: str,
    exclude_ids=(),
    consecutive_wrong: int = 0,
    consecutive_right: int = 0,
    boosted_subtopics=(),
    rng: random.Random | None = None,
) -> dict:
    """Choose one question from a topic's catalog.

    Args:
        questions: Every question in the topic (dicts with id, difficulty,
            sub_topic, source).
        mastery: The student's mastery label for the topic.
        exclude_ids: Recently seen ids. Avoided while any other question
            exists, never a hard block.
        consecutive_wrong / consecutive_right: Trailing streak counters.
        boosted_subtopics: Sub-topics to favor within each difficulty pool.
        rng: Source of randomness; pass a seeded Random for repeatable picks.

    Raises:
        NotFound: the topic has no questions at all.
    """
    if not questions:
        raise NotFound("No questions available for this topic")

    rng = rng or random.Random()
    excluded = set(exclude_ids or ())
    boosted = set(boosted_subtopics or ())

    target = adjust_for_streak(base_difficulty(mastery, rng), consecutive_wrong, consecutive_right)

    available = [q for q in questions if q["id"] not in excluded]
    for difficulty in fallback_order(target):
        picked = _pick([q for q in available if q["difficulty"] == difficulty], boosted, rng)
        if picked is not None:
            return picked

    # Questions with an unknown difficulty tag, then everything already seen.
    return _pick(available, boosted, rng) or _pick(questions, (), rng)


def next_question(
    student_id: str,
    topic_id: str,
    exclude_ids: list[str] | None = None,
    consecutive_wrong: int | None = None,
    consecutive_right: int | None = None,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> dict:
    """Load catalog and student state, then delegate to ``select_question``.

    Missing exclusions or streak counters are derived from the student's
    attempts in this topic today.
    """
    StudentStoreDB.require(student_id)
    if TopicStoreDB.get(topic_id) is None:
        raise NotFound("Topic not found")

    if exclude_ids is None or consecutive_wrong is None or consecutive_right is None:
        session = AttemptStoreDB.today_in_topic(student_id, topic_id, now)
        if exclude_ids is None:
            exclude_ids = [a["question_id"] for a in session]
        wrong, right = trailing_streaks([a["is_correct"] for a in session])
        if consecutive_wrong is None:
            consecutive_wrong = wrong
        if consecutive_right is None:
            consecutive_right = right

    boosted = {
        sub_topic
        for sub_topic, n in AttemptStoreDB.misconception_counts(student_id, topic_id).items()
        if n >= MISCONCEPTION_BOOST_MIN
    }

    # Recency is soft: once everything has been seen, the whole topic is eligible.
    questions = (
        QuestionBankDB.list_by_topic_excluding(topic_id, exclude_ids)
        or QuestionBankDB.list_by_topic(topic_id)
    )
    return select_question(
        questions,
        ProgressStoreDB.mastery(student_id, topic_id),
        consecutive_wrong=consecutive_wrong,
        consecutive_right=consecutive_right,
        boosted_subtopics=boosted,
        rng=rng,
    )

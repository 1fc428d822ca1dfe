"""XP reward policy and the daily cap arithmetic.

The reward curve is swappable: anything with a ``raw_xp`` method matching
``XPPolicy`` can be installed as ``app.config["XP_POLICY"]``. Both
functions here are pure.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from flask import current_app, has_app_context


class RewardPolicy(Protocol):
    def raw_xp(self, is_correct: bool, is_bonus_question: bool, time_taken_ms: int | None) -> int: ...


@dataclass(frozen=True)
class XPPolicy:
    """Base award for a correct answer plus additive bonuses.

    Fast answers earn ``fast_bonus`` when they come in under
    ``fast_threshold_ms``; a faster correct answer never earns less.
    """

    base: int = 20
    bonus_question: int = 10
    fast_bonus: int = 5
    fast_threshold_ms: int = 10_000

    def raw_xp(self, is_correct: bool, is_bonus_question: bool, time_taken_ms: int | None) -> int:
        if not is_correct:
            return 0
        xp = self.base
        if is_bonus_question:
            xp += self.bonus_question
        if time_taken_ms is not None and 0 <= time_taken_ms < self.fast_threshold_ms:
            xp += self.fast_bonus
        return max(0, xp)


DEFAULT_POLICY = XPPolicy()


def get_policy() -> RewardPolicy:
    """Policy from app config, else one built from the XP_* settings."""
    if not has_app_context():
        return DEFAULT_POLICY
    cfg = current_app.config
    custom = cfg.get("XP_POLICY")
    if custom is not None:
        return custom
    return XPPolicy(
        base=cfg.get("XP_BASE_AWARD", DEFAULT_POLICY.base),
        bonus_question=cfg.get("XP_BONUS_AWARD", DEFAULT_POLICY.bonus_question),
        fast_bonus=cfg.get("XP_FAST_BONUS", DEFAULT_POLICY.fast_bonus),
        fast_threshold_ms=cfg.get("XP_FAST_THRESHOLD_MS", DEFAULT_POLICY.fast_threshold_ms),
    )


def capped_award(raw_xp: int, xp_so_far: int, daily_cap: int) -> int:
    """XP that still fits under today's cap."""
    return max(0, min(raw_xp, daily_cap - xp_so_far))

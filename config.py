"""
Application configuration — environment-aware settings.

All environment variables are documented here. Values can also be placed in
a local .env file, which is loaded on import.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).parent

load_dotenv(BASE_DIR / ".env")


def _int_env(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


class BaseConfig:
    # Core Flask
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-key-change-in-production")
    # Database: SQLite (default) or PostgreSQL (set DATABASE_URL=postgresql://...)
    DATABASE = os.environ.get("DATABASE_URL", str(BASE_DIR / "mathleague.db"))

    # Shared secret for the scheduled rollover endpoint
    CRON_SECRET = os.environ.get("CRON_SECRET", "")

    # Logging
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # "json" or "text"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Redis (task queue, cache, rate limit storage)
    REDIS_URL = os.environ.get("REDIS_URL", "")

    # Rate limiting (defaults to in-memory; set REDIS_URL for Redis-backed)
    RATELIMIT_STORAGE_URI = os.environ.get("REDIS_URL", "") or "memory://"

    # XP economy
    DAILY_XP_CAP = _int_env("DAILY_XP_CAP", 500)
    XP_BASE_AWARD = _int_env("XP_BASE_AWARD", 20)
    XP_BONUS_AWARD = _int_env("XP_BONUS_AWARD", 10)
    XP_FAST_BONUS = _int_env("XP_FAST_BONUS", 5)
    XP_FAST_THRESHOLD_MS = _int_env("XP_FAST_THRESHOLD_MS", 10_000)

    # Usage limits (paid limits come from the subscriptions table)
    FREE_DAILY_MINUTES = _int_env("FREE_DAILY_MINUTES", 30)
    FREE_AI_CHAT_DAILY = _int_env("FREE_AI_CHAT_DAILY", 5)
    UNLIMITED_THRESHOLD_MINUTES = 1440

    # Leagues
    LEAGUE_TZ_OFFSET_MINUTES = _int_env("LEAGUE_TZ_OFFSET_MINUTES", 0)
    LEAGUE_PROMOTE_FRACTION = 0.2
    LEAGUE_DEMOTE_FRACTION = 0.2
    LEADERBOARD_TOP_N = 50
    LEADERBOARD_CACHE_TTL = 60

    # Background work
    DISPATCH_MAX_ATTEMPTS = 3
    TASKS_INLINE = False  # run dispatched work in the request thread when there is no queue
    TASK_JOB_TIMEOUT = 30
    TX_MAX_ATTEMPTS = 5


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")

    @classmethod
    def validate(cls):
        """Fail fast on missing or insecure configuration in production."""
        errors: list[str] = []

        if cls.SECRET_KEY in ("dev-key-change-in-production", ""):
            errors.append("SECRET_KEY must be set to a secure value in production.")
        if not cls.CRON_SECRET:
            errors.append("CRON_SECRET must be set so the league rollover endpoint is reachable.")

        if errors:
            raise RuntimeError(
                "Production configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            )


class TestingConfig(BaseConfig):
    TESTING = True
    CRON_SECRET = "test-cron-secret"
    TASKS_INLINE = True


config_by_name = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}

"""
Centralized Scheduler — registers the periodic background jobs.

Jobs:
  - Weekly league rollover (Monday 00:05 in the league timezone)
  - Cache cleanup (every 1 hour)
"""

from __future__ import annotations

from datetime import timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger


def rollover_trigger(offset_minutes: int) -> CronTrigger:
    """Monday 00:05 local league time, expressed in a fixed-offset zone."""
    tz = timezone(timedelta(minutes=offset_minutes))
    return CronTrigger(day_of_week="mon", hour=0, minute=5, timezone=tz)


def init_scheduler(app):
    """Start a background scheduler for all periodic jobs. Returns it."""
    scheduler = BackgroundScheduler(daemon=True)

    # 1. Weekly league rollover
    def _rollover_leagues():
        with app.app_context():
            from leagues import rollover
            try:
                rollover()
            except Exception:
                app.logger.exception("Scheduled league rollover failed")

    scheduler.add_job(
        func=_rollover_leagues,
        trigger=rollover_trigger(app.config.get("LEAGUE_TZ_OFFSET_MINUTES", 0)),
        id="league_rollover",
        replace_existing=True,
        misfire_grace_time=3600,
        coalesce=True,
    )

    # 2. Cache cleanup, hourly
    def _cleanup_cache():
        from cache_backend import get_cache
        removed = get_cache().cleanup()
        if removed:
            app.logger.debug("Cache cleanup removed %d entries", removed)

    scheduler.add_job(
        func=_cleanup_cache,
        trigger="interval",
        hours=1,
        id="cache_cleanup",
        replace_existing=True,
    )

    scheduler.start()
    app.logger.info("Scheduler started (league rollover, cache cleanup)")
    return scheduler

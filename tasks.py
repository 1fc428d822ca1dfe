"""Background task processing via RQ with a thread fallback.

When Redis and RQ are available, tasks are enqueued for a worker process.
Otherwise, tasks run on a daemon thread of this process after the caller
returns (inline when TASKS_INLINE is set, as under TESTING).

Usage:
    from tasks import dispatch
    dispatch(recompute_mastery, student_id, topic_id)   # fire-and-forget

``dispatch`` never raises: delivery is at-most-once with bounded retries,
and every failure is logged and dropped.
"""

from __future__ import annotations

import logging
import threading

from flask import current_app, has_app_context
from tenacity import (
    Retrying,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from errors import Conflict, InvalidArgument, NotFound, TransactionConflict

logger = logging.getLogger(__name__)

_queue = None
_max_attempts = 3
_job_timeout = 30
_worker_app = None

# Caller errors, and lock conflicts that retry_on_conflict already retried.
_PERMANENT_ERRORS = (InvalidArgument, NotFound, Conflict, TransactionConflict)


def init_tasks(app) -> None:
    """Initialize RQ queue if Redis is available. Call once from create_app()."""
    global _queue, _max_attempts, _job_timeout

    _queue = None
    _max_attempts = app.config.get("DISPATCH_MAX_ATTEMPTS", 3)
    _job_timeout = app.config.get("TASK_JOB_TIMEOUT", 30)

    redis_url = app.config.get("REDIS_URL", "")
    if not redis_url or app.config.get("TESTING"):
        app.logger.info("Task backend: in-process (no REDIS_URL)")
        return

    try:
        import redis
        from rq import Queue
        conn = redis.Redis.from_url(redis_url)
        conn.ping()
        _queue = Queue(connection=conn)
        app.logger.info("Task backend: RQ (%s)", redis_url)
    except Exception as e:
        app.logger.warning("Task backend: in-process (Redis error: %s)", e)


def run_in_app_context(func, *args, **kwargs):
    """Worker entry point: stores need an app context for get_db().

    The worker builds its app once per process, without the scheduler.
    """
    global _worker_app
    if has_app_context():
        return func(*args, **kwargs)
    if _worker_app is None:
        from app import create_app
        _worker_app = create_app(start_scheduler=False)
    with _worker_app.app_context():
        return func(*args, **kwargs)


def _run_with_retries(func, *args, **kwargs):
    retryer = Retrying(
        stop=stop_after_attempt(_max_attempts),
        wait=wait_exponential(multiplier=0.05, max=0.5),
        retry=retry_if_not_exception_type(_PERMANENT_ERRORS),
        before_sleep=lambda state: logger.warning(
            "Task %s failed (attempt %d), retrying: %s",
            func.__name__, state.attempt_number, state.outcome.exception(),
        ),
        reraise=True,
    )
    return retryer(func, *args, **kwargs)


def _runs_inline() -> bool:
    if not has_app_context():
        return True
    return bool(current_app.config.get("TASKS_INLINE", False))


def _run_in_thread(func, *args, **kwargs) -> threading.Thread:
    app = current_app._get_current_object()

    def target():
        with app.app_context():
            try:
                _run_with_retries(func, *args, **kwargs)
            except Exception:
                logger.exception("Background task %s%r dropped", func.__name__, args)

    thread = threading.Thread(target=target, name=f"task-{func.__name__}", daemon=True)
    thread.start()
    return thread


def enqueue(func, *args, **kwargs):
    """Push a task to RQ if available, else run it in-process with retries.

    Returns the RQ Job, the Thread running the task, or (inline) the
    function's return value.
    """
    if _queue is not None:
        try:
            from rq import Retry
            job = _queue.enqueue_call(
                func=run_in_app_context,
                args=(func, *args),
                kwargs=kwargs,
                timeout=_job_timeout,
                retry=Retry(max=max(0, _max_attempts - 1)),
            )
            logger.debug("Enqueued %s (job=%s)", func.__name__, job.id)
            return job
        except Exception as e:
            logger.warning("RQ enqueue failed (%s), falling back to in-process: %s", func.__name__, e)

    if _runs_inline():
        logger.debug("Running %s synchronously", func.__name__)
        return _run_with_retries(func, *args, **kwargs)

    logger.debug("Running %s on a background thread", func.__name__)
    return _run_in_thread(func, *args, **kwargs)


def dispatch(func, *args, **kwargs) -> bool:
    """Fire-and-forget: returns False (after logging) instead of raising."""
    try:
        enqueue(func, *args, **kwargs)
        return True
    except Exception:
        logger.exception("Background task %s%r dropped", func.__name__, args)
        return False


def is_async_available() -> bool:
    """Check if RQ background processing is available."""
    return _queue is not None

# salonhub/background_jobs.py
"""
Background jobs using APScheduler.

Two job stores:
- 'default': SQLAlchemyJobStore, for the recurring membership sweeps so their
  schedule survives restarts
- 'memory': MemoryJobStore, for one-off notification jobs (run_async), which
  carry unpicklable callables and only make sense inside this process

When the scheduler is disabled (tests, CLI) run_async() runs the job inline
and only logs failures.

Usage:
    from salonhub.background_jobs import init_scheduler, run_async

    init_scheduler(app)
    run_async(send_something, membership_id)
"""

import atexit
import os
from datetime import datetime
from typing import Any, Callable, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, current_app

from salonhub.extensions import db
from salonhub.monitoring import capture_exception

_app: Optional[Flask] = None


def init_scheduler(app: Flask):
    """
    Initialize APScheduler with the Flask app.

    Args:
        app: Flask application instance

    Returns:
        The started scheduler, or None when disabled
    """
    global _app

    if not app.config.get('SCHEDULER_ENABLED', True):
        app.logger.info("Background scheduler disabled")
        return None

    # Skip in Flask reloader parent process
    if os.environ.get('WERKZEUG_RUN_MAIN') == 'false':
        return None

    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI']),
        'memory': MemoryJobStore(),
    }
    executors = {
        'default': ThreadPoolExecutor(max_workers=app.config.get('SCHEDULER_MAX_WORKERS', 3))
    }
    job_defaults = {
        'coalesce': True,  # Combine missed runs
        'max_instances': 1,
        'misfire_grace_time': 300,
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    _app = app
    register_scheduled_jobs(scheduler, app)

    scheduler.start()
    app.logger.info("Background job scheduler started")

    app.extensions['scheduler'] = scheduler
    atexit.register(lambda: scheduler.shutdown(wait=False))

    return scheduler


def register_scheduled_jobs(scheduler, app):
    """Register all scheduled jobs."""

    # Remove memberships whose user was deleted (daily at 2 AM UTC)
    scheduler.add_job(
        func=cleanup_orphaned_memberships,
        trigger='cron',
        hour=2,
        minute=0,
        id='cleanup_orphaned_memberships',
        replace_existing=True,
    )

    # Expire non-renewing memberships past their end date (hourly)
    scheduler.add_job(
        func=expire_lapsed_memberships,
        trigger='interval',
        hours=1,
        id='expire_lapsed_memberships',
        replace_existing=True,
    )

    app.logger.info("Registered 2 scheduled background jobs")


# ===== Scheduled Job Functions =====

def cleanup_orphaned_memberships():
    """Hard-delete membership rows whose user no longer exists."""
    from salonhub.services.membership_service import cleanup_orphans

    with _app.app_context():
        try:
            deleted = cleanup_orphans()
            if deleted:
                current_app.logger.info(f"Cleaned up {len(deleted)} orphaned memberships")
        except Exception as e:
            current_app.logger.error(f"Error cleaning up orphaned memberships: {e}", exc_info=True)
            db.session.rollback()
            capture_exception(e)


def expire_lapsed_memberships():
    """Expire active memberships that will not renew and whose period has ended."""
    from salonhub.services.membership_service import expire_lapsed

    with _app.app_context():
        try:
            expired = expire_lapsed()
            if expired:
                current_app.logger.info(f"Expired {len(expired)} lapsed memberships")
        except Exception as e:
            current_app.logger.error(f"Error expiring lapsed memberships: {e}", exc_info=True)
            db.session.rollback()
            capture_exception(e)


# ===== One-off jobs =====

def _run_in_context(app: Flask, func: Callable, args: tuple, kwargs: dict):
    with app.app_context():
        _run_guarded(func, args, kwargs)


def _run_guarded(func: Callable, args: tuple, kwargs: dict):
    try:
        func(*args, **kwargs)
    except Exception as e:
        current_app.logger.error(f"Background job {func.__name__} failed: {e}", exc_info=True)
        capture_exception(e)


def run_async(func: Callable, *args: Any, **kwargs: Any) -> None:
    """
    Fire-and-forget a function relative to the current request.

    Runs on the scheduler's thread pool when the scheduler is running,
    otherwise inline. Failures are logged and reported, never raised.
    """
    scheduler = current_app.extensions.get('scheduler')
    if scheduler is None or not scheduler.running:
        _run_guarded(func, args, kwargs)
        return

    scheduler.add_job(
        func=_run_in_context,
        trigger='date',
        jobstore='memory',
        args=[current_app._get_current_object(), func, args, kwargs],
    )


# ===== Manual Job Execution =====

def run_job_now(job_id: str) -> bool:
    """
    Manually trigger a scheduled job to run immediately.

    Returns:
        True if job was triggered, False otherwise
    """
    scheduler = current_app.extensions.get('scheduler')
    job = scheduler.get_job(job_id) if scheduler else None
    if not job:
        current_app.logger.warning(f"Job not found: {job_id}")
        return False

    job.modify(next_run_time=datetime.now(job.next_run_time.tzinfo if job.next_run_time else None))
    current_app.logger.info(f"Manually triggered job: {job_id}")
    return True


def list_all_jobs() -> list:
    """List all registered background jobs."""
    scheduler = current_app.extensions.get('scheduler')
    if scheduler is None:
        return []
    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run_time': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        }
        for job in scheduler.get_jobs()
    ]

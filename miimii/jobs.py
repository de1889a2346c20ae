"""
Scheduled jobs
==============
One BackgroundScheduler for the process:

- reconciler sweep every minute
- expired session keys and processed message ids purged hourly
- daily operations report at 07:00 local time
- virtual account provisioning (one-off jobs added by the provisioner)
"""

import atexit
import logging

from apscheduler.schedulers.background import BackgroundScheduler

from miimii.reconciler import SWEEP_INTERVAL_SECONDS, Reconciler
from miimii.reports import DailyReport
from miimii.session_store import SessionStore
from miimii.worker import MessageDeduplicator

logger = logging.getLogger(__name__)


def create_scheduler(timezone: str = "Africa/Lagos") -> BackgroundScheduler:
    return BackgroundScheduler(daemon=True, timezone=timezone)


def _guarded(name: str, job):
    """Wrap a job so a failure is logged and the next run still happens."""
    def run():
        try:
            return job()
        except Exception as e:
            logger.error(f"[JOB {name}] {e}", exc_info=True)
    run.__name__ = name
    return run


def setup_jobs(scheduler: BackgroundScheduler, reconciler: Reconciler, sessions: SessionStore,
               dedupe: MessageDeduplicator, report: DailyReport, start: bool = True) -> BackgroundScheduler:
    scheduler.add_job(
        _guarded("reconcile", reconciler.sweep),
        'interval',
        seconds=SWEEP_INTERVAL_SECONDS,
        id="reconcile",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        _guarded("purge_sessions", sessions.purge_expired),
        'interval',
        hours=1,
        id="purge_sessions",
        replace_existing=True,
    )
    scheduler.add_job(
        _guarded("purge_processed", dedupe.purge),
        'interval',
        hours=1,
        id="purge_processed",
        replace_existing=True,
    )
    scheduler.add_job(
        _guarded("daily_report", report.send),
        'cron',
        hour=7,
        minute=0,
        id="daily_report",
        replace_existing=True,
    )

    if start and not scheduler.running:
        scheduler.start()
        atexit.register(lambda: scheduler.shutdown(wait=False) if scheduler.running else None)
        logger.info("Scheduled jobs started")
    return scheduler

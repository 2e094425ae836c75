import logging

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session

from campus_comms.config import settings
from campus_comms.db import SessionLocal
from campus_comms.metrics import run_timed_job
from campus_comms.services.scheduled_message_service import dispatch_due_scheduled_messages


scheduler = BackgroundScheduler(timezone=settings.app_timezone)
logger = logging.getLogger(__name__)


def _with_db(task):
    db: Session = SessionLocal()
    try:
        return task(db)
    finally:
        db.close()


def _run_job(label: str, task):
    return run_timed_job(label, lambda: _with_db(task))


def scheduled_message_dispatch_job():
    summary = _run_job('scheduled_message_dispatch', lambda db: dispatch_due_scheduled_messages(db))
    if summary and summary.get('due'):
        logger.info(
            'scheduled_message_dispatch due=%s sent=%s skipped=%s failed=%s',
            summary['due'],
            summary['sent'],
            summary['skipped'],
            summary['failed'],
        )


def start_scheduler():
    if scheduler.running:
        return
    scheduler.add_job(
        scheduled_message_dispatch_job,
        'interval',
        seconds=settings.scheduled_dispatch_interval_seconds,
        id='scheduled_message_dispatch',
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()

    from campus_comms.services.threshold_monitor import get_threshold_monitor

    get_threshold_monitor().start()


def stop_scheduler():
    if scheduler.running:
        from campus_comms.services.threshold_monitor import get_threshold_monitor

        get_threshold_monitor().stop()
        scheduler.shutdown(wait=False)

"""
APScheduler configuration for scheduled jobs
"""
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import PORTAL_AUTO_SYNC_TIME
from jobs.portal_sync import run_scheduled_syncs, purge_expired_sessions

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


def parse_sync_time(time_str: str, default_hour: int = 4, default_minute: int = 0) -> tuple:
    """'HH:MM' -> (hour, minute), falling back to the default on bad input"""
    try:
        hour, minute = (int(part) for part in time_str.split(':'))
        if 0 <= hour < 24 and 0 <= minute < 60:
            return hour, minute
    except (ValueError, AttributeError):
        pass
    logger.warning(f"Invalid PORTAL_AUTO_SYNC_TIME {time_str!r}, using {default_hour:02d}:{default_minute:02d}")
    return default_hour, default_minute


def start_scheduler():
    """Initialize and start the scheduler"""
    logger.info("Starting scheduler...")

    sync_hour, sync_min = parse_sync_time(PORTAL_AUTO_SYNC_TIME)
    scheduler.add_job(
        run_scheduled_syncs,
        CronTrigger(hour=sync_hour, minute=sync_min),
        id="portal_auto_sync",
        name=f"Daily Portal Sync ({sync_hour:02d}:{sync_min:02d})",
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )
    logger.info(f"  Portal auto sync scheduled for {sync_hour:02d}:{sync_min:02d}")

    scheduler.add_job(
        purge_expired_sessions,
        IntervalTrigger(hours=1),
        id="purge_portal_sessions",
        name="Hourly Portal Session Purge",
        replace_existing=True
    )

    scheduler.start()
    logger.info("Scheduler started with jobs:")
    for job in scheduler.get_jobs():
        logger.info(f"  - {job.name}: {job.trigger}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully"""
    if scheduler.running:
        logger.info("Shutting down scheduler...")
        scheduler.shutdown(wait=False)

"""
APScheduler Configuration

Background job scheduler for the order engine. The expiry sweep runs on a
fixed interval; it is safe to run on several workers at once because every
cancellation re-checks its order under a row lock.
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from app.config import settings

logger = logging.getLogger(__name__)

# Job stores
jobstores = {
    'default': MemoryJobStore()
}

# Executors
executors = {
    'default': AsyncIOExecutor(),
}

# Job defaults
job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 60,
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=settings.SCHEDULER_TIMEZONE
)


async def run_expiry_sweep_job():
    """Scheduler entry point for the expired orders sweep."""
    from app.jobs.order_jobs import cancel_expired_online_orders

    try:
        cancelled = await cancel_expired_online_orders()
        if cancelled:
            logger.info(f"Job 'expire_online_orders' cancelled {cancelled} order(s)")
    except Exception as e:
        logger.error(f"Job 'expire_online_orders' failed: {e}")


def start_scheduler():
    """Start the background job scheduler."""
    if not scheduler.running:
        scheduler.add_job(
            run_expiry_sweep_job,
            'interval',
            seconds=settings.EXPIRY_SWEEP_INTERVAL_SECONDS,
            id='expire_online_orders',
            name='Expire Unpaid Online Orders',
            replace_existing=True,
        )

        scheduler.start()
        logger.info("Background job scheduler started")

        for job in scheduler.get_jobs():
            logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background job scheduler stopped")


def get_job_status():
    """Get status of all scheduled jobs."""
    jobs = scheduler.get_jobs()
    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run_time': str(job.next_run_time) if job.next_run_time else None,
            'trigger': str(job.trigger),
        }
        for job in jobs
    ]

"""
APScheduler Configuration

Background jobs run inside the API process on the asyncio loop:
- Quote session purge (every QUOTE_PURGE_INTERVAL_MINUTES)
- In-memory cache eviction (every 10 minutes)
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from shiprate.config import settings

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
    'misfire_grace_time': 60,  # Allow 60 seconds grace time for misfires
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone='UTC'
)


async def run_job(job_name: str):
    """Run one registered job, logging instead of crashing the scheduler."""
    from shiprate.jobs.quote_jobs import cleanup_memory_cache, purge_expired_quote_sessions

    jobs = {
        'purge_expired_quote_sessions': purge_expired_quote_sessions,
        'cleanup_memory_cache': cleanup_memory_cache,
    }
    try:
        result = await jobs[job_name]()
        logger.info(f"Job '{job_name}' completed: {result}")
    except Exception as e:
        logger.error(f"Job '{job_name}' failed: {e}")


def start_scheduler():
    """Start the background job scheduler."""
    if not settings.SCHEDULER_ENABLED:
        logger.info("Background scheduler disabled")
        return

    if not scheduler.running:
        scheduler.add_job(
            run_job,
            'interval',
            minutes=settings.QUOTE_PURGE_INTERVAL_MINUTES,
            args=['purge_expired_quote_sessions'],
            id='purge_expired_quote_sessions',
            name='Purge Expired Quote Sessions',
            replace_existing=True,
        )

        scheduler.add_job(
            run_job,
            'interval',
            minutes=10,
            args=['cleanup_memory_cache'],
            id='cleanup_memory_cache',
            name='Cleanup In-Memory Cache',
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

"""
APScheduler Configuration for the Billing Core

Background job scheduler with account-aware job execution.
Every job runs once per account with per-account failure isolation.

Architecture:
- Jobs are registered with @tenant_job decorator
- Scheduler triggers jobs on daily cron schedules
- TenantJobRunner iterates through all accounts
- Failures in one account don't affect others
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
    'misfire_grace_time': 3600,
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=settings.SCHEDULER_TIMEZONE
)

# job id -> (display name, cron hour setting)
SCHEDULED_JOBS = {
    'generate_recurring_invoices': (
        '[Multi-Account] Generate Recurring Invoices',
        settings.RECURRING_INVOICE_HOUR,
    ),
    'payment_reminders_due_soon': (
        '[Multi-Account] Due-Soon Payment Reminders',
        settings.DUE_SOON_REMINDER_HOUR,
    ),
    'payment_reminders_overdue': (
        '[Multi-Account] Overdue Payment Reminders',
        settings.OVERDUE_REMINDER_HOUR,
    ),
}


async def run_tenant_aware_job(job_name: str):
    """
    Wrapper to run an account-aware job from the scheduler.

    This function is called by APScheduler and delegates to the
    TenantJobRunner which handles iterating through all accounts.
    """
    from app.jobs.tenant_job_runner import run_tenant_job

    try:
        result = await run_tenant_job(job_name)
        logger.info(
            f"Job '{job_name}' completed: "
            f"{result.get('successful', 0)}/{result.get('account_count', 0)} accounts successful"
        )
    except Exception as e:
        logger.error(f"Job '{job_name}' failed: {e}")


def register_jobs():
    """Add the daily billing jobs to the scheduler."""
    # Importing the job modules triggers their @tenant_job decorators
    from app.jobs import recurring_invoices, payment_reminders  # noqa: F401

    for job_id, (name, hour) in SCHEDULED_JOBS.items():
        scheduler.add_job(
            run_tenant_aware_job,
            'cron',
            hour=hour,
            minute=0,
            args=[job_id],
            id=job_id,
            name=name,
            replace_existing=True,
        )


def start_scheduler():
    """Start the background job scheduler with account-aware jobs."""
    if not scheduler.running:
        register_jobs()
        scheduler.start()
        logger.info("Billing background job scheduler started")

        # Log all scheduled jobs
        jobs = scheduler.get_jobs()
        for job in jobs:
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
            'next_run_time': str(job.next_run_time) if getattr(job, 'next_run_time', None) else None,
            'trigger': str(job.trigger),
        }
        for job in jobs
    ]

"""
Background Jobs Module

Handles scheduled tasks for:
- Recurring invoice generation
- Due-soon payment reminders
- Overdue marking and payment reminders
"""

from app.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler, get_job_status

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "get_job_status",
]

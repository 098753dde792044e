"""
Payment Reminder Job.

Sends payment reminders through PaymentReminderService:
- due_soon: unpaid invoices due within the next DUE_SOON_DAYS
- overdue:  marks past-due sent invoices overdue, then reminds every unpaid
            past-due invoice
- single:   one invoice, optionally forced past cooldown / max count

Triggers:
- Daily scheduled jobs (via APScheduler, once per account)
- On demand for a single invoice
"""
import logging
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.jobs.tenant_job_runner import tenant_job
from app.services.payment_reminder_service import PaymentReminderService

logger = logging.getLogger(__name__)


class ReminderType(str, Enum):
    DUE_SOON = "due_soon"
    OVERDUE = "overdue"
    SINGLE = "single"


async def run_payment_reminder_job(
    db: AsyncSession,
    account_id: uuid.UUID,
    reminder_type: str,
    invoice_id: Optional[uuid.UUID] = None,
    force: bool = False,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """
    Run one kind of reminder work for an account.

    Returns:
        Sweep results carry sent_count; single reminders carry success/message
    """
    service = PaymentReminderService(db, account_id)
    results: Dict[str, Any] = {
        "reminder_type": reminder_type,
        "started_at": datetime.now(timezone.utc).isoformat(),
    }

    try:
        kind = ReminderType(reminder_type)
    except ValueError:
        kind = None

    if kind == ReminderType.DUE_SOON:
        sweep = await service.send_due_soon_reminders(today)
        results.update(sent_count=sweep.sent_count, failed_count=sweep.failed_count)
        message = f"sent_count: {sweep.sent_count}"
    elif kind == ReminderType.OVERDUE:
        sweep = await service.send_overdue_reminders(today)
        results.update(sent_count=sweep.sent_count, failed_count=sweep.failed_count)
        message = f"sent_count: {sweep.sent_count}"
    elif kind == ReminderType.SINGLE:
        if invoice_id is None:
            reminder = {"success": False, "message": "Invoice not found"}
        else:
            reminder = (await service.send_reminder(invoice_id, force=force)).model_dump(
                include={"success", "message", "reminder_count"}
            )
        results.update(reminder)
        message = reminder["message"] if reminder["success"] else f"Failed - {reminder['message']}"
    else:
        results.update(success=False, message=f"Unknown reminder type: {reminder_type}")
        message = f"Failed - {results['message']}"

    results["completed_at"] = datetime.now(timezone.utc).isoformat()
    logger.info(f"Payment reminder job completed ({reminder_type}) for account {account_id}: {message}")
    return results


@tenant_job("payment_reminders_due_soon")
async def due_soon_reminders_job(session: AsyncSession, account: dict):
    return await run_payment_reminder_job(session, account["id"], ReminderType.DUE_SOON.value)


@tenant_job("payment_reminders_overdue")
async def overdue_reminders_job(session: AsyncSession, account: dict):
    return await run_payment_reminder_job(session, account["id"], ReminderType.OVERDUE.value)

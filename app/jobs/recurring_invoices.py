"""
Recurring Invoice Job.

Generates every due invoice from active recurring templates. Each template
is its own unit of work; a template that fails is logged and picked up again
by the next run.

Triggers:
- Daily scheduled job (via APScheduler, once per account)
"""
import logging
import uuid
from datetime import date, datetime, timezone
from typing import Dict, Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.jobs.tenant_job_runner import tenant_job
from app.services.recurring_invoice_service import RecurringInvoiceService

logger = logging.getLogger(__name__)


async def run_recurring_invoice_job(
    db: AsyncSession,
    account_id: uuid.UUID,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """
    Generate due recurring invoices for one account.

    Returns:
        Summary with generated_count and the generated invoice numbers
    """
    started_at = datetime.now(timezone.utc)
    service = RecurringInvoiceService(db, account_id)
    invoices = await service.generate_all_due(today)

    results = {
        "started_at": started_at.isoformat(),
        "generated_count": len(invoices),
        "invoice_numbers": [invoice.invoice_number for invoice in invoices],
        "completed_at": datetime.now(timezone.utc).isoformat(),
    }
    logger.info(f"Recurring invoice job completed for account {account_id}: {len(invoices)} generated")
    return results


@tenant_job("generate_recurring_invoices")
async def generate_recurring_invoices_job(session: AsyncSession, account: dict):
    return await run_recurring_invoice_job(session, account["id"])

"""
Payment Reminder Service

Controls the cadence of payment reminders for unpaid invoices.

Single-invoice contract (send_reminder), checked in this order:
    - paid / draft / cancelled invoices are refused, even with force=True
    - a reminder within the cooldown window is refused unless forced
    - once MAX_REMINDERS have gone out, further reminders are refused unless forced
Otherwise the reminder is queued for delivery and reminder_sent_at /
reminder_count are updated in the same transaction.

Batch sweeps:
    send_due_soon_reminders - unpaid invoices due within DUE_SOON_DAYS
    send_overdue_reminders  - marks past-due 'sent' invoices overdue, then
                              reminds every unpaid past-due invoice

Callers are schedulers and webhooks, so the contract returns a
ReminderResult with a display message instead of raising.
"""
import uuid
import logging
from datetime import datetime, date, timedelta
from typing import Optional, List

from sqlalchemy import select, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import DocumentNotFoundError
from app.core.time_utils import utcnow, today as current_date, as_utc
from app.models.billing import Invoice, InvoiceStatus, UNPAID_INVOICE_STATUSES
from app.schemas.billing import ReminderResult, SweepResult
from app.services.delivery_service import DeliveryQueue
from app.services.invoice_service import InvoiceService


logger = logging.getLogger(__name__)


# Refusals that apply regardless of force
TERMINAL_REFUSALS = {
    InvoiceStatus.PAID.value: "Invoice has already been paid",
    InvoiceStatus.DRAFT.value: "Invoice has not been sent yet",
    InvoiceStatus.CANCELLED.value: "Invoice has been cancelled",
}


class PaymentReminderService:
    """Service for sending payment reminders on one account's invoices."""

    def __init__(self, db: AsyncSession, account_id: uuid.UUID):
        self.db = db
        self.account_id = account_id
        self.invoices = InvoiceService(db, account_id)
        self.delivery = DeliveryQueue(db)

    def sent_recently(self, invoice: Invoice, now: datetime) -> bool:
        if invoice.reminder_sent_at is None:
            return False
        cooldown_start = now - timedelta(days=settings.REMINDER_COOLDOWN_DAYS)
        return as_utc(invoice.reminder_sent_at) > cooldown_start

    def max_reminders_reached(self, invoice: Invoice) -> bool:
        return invoice.reminder_count >= settings.MAX_REMINDERS

    def refusal_reason(self, invoice: Invoice, force: bool, now: datetime) -> Optional[str]:
        """Display message explaining why no reminder may go out, or None."""
        if invoice.status in TERMINAL_REFUSALS:
            return TERMINAL_REFUSALS[invoice.status]
        if not force and self.sent_recently(invoice, now):
            return "Reminder was sent recently"
        if not force and self.max_reminders_reached(invoice):
            return "Maximum number of reminders reached"
        return None

    async def send_reminder(
        self,
        invoice_id: uuid.UUID,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> ReminderResult:
        """
        Send a payment reminder for one invoice.

        Args:
            invoice_id: Invoice of this account
            force: Skip the cooldown and max-count checks (never the status checks)
            now: Reference time, defaults to the current UTC time

        Returns:
            ReminderResult with success flag and a message fit for display
        """
        now = now or utcnow()
        try:
            invoice = await self.invoices.get_invoice(invoice_id, lock=True)
        except DocumentNotFoundError:
            logger.warning(f"Payment reminder requested for unknown invoice {invoice_id}")
            return ReminderResult(success=False, message="Invoice not found", invoice_id=invoice_id)

        reason = self.refusal_reason(invoice, force, now)
        if reason is not None:
            reminder_count = invoice.reminder_count
            # Release the row lock; this expires the loaded invoice
            await self.db.rollback()
            return ReminderResult(
                success=False,
                message=reason,
                invoice_id=invoice_id,
                reminder_count=reminder_count,
            )

        try:
            self.delivery.enqueue_payment_reminder(invoice, today=now.date())
            invoice.reminder_sent_at = now
            invoice.reminder_count = invoice.reminder_count + 1
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to send payment reminder for invoice {invoice_id}: {e}")
            return ReminderResult(
                success=False,
                message=f"Failed to send reminder: {e}",
                invoice_id=invoice_id,
            )

        logger.info(
            f"Payment reminder {invoice.reminder_count} sent for invoice {invoice.invoice_number}"
            f"{' (forced)' if force else ''}"
        )
        return ReminderResult(
            success=True,
            message="Payment reminder sent successfully",
            invoice_id=invoice_id,
            reminder_count=invoice.reminder_count,
        )

    async def _remind_all(self, invoice_ids: List[uuid.UUID], now: datetime) -> SweepResult:
        result = SweepResult()
        for invoice_id in invoice_ids:
            try:
                reminder = await self.send_reminder(invoice_id, now=now)
            except Exception as e:
                await self.db.rollback()
                logger.error(f"Payment reminder for invoice {invoice_id} failed: {e}")
                result.failed_count += 1
                continue
            if reminder.success:
                result.sent_count += 1
        return result

    async def send_due_soon_reminders(
        self,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> SweepResult:
        """Remind unpaid invoices due between today and today + DUE_SOON_DAYS (inclusive)."""
        today = today or current_date()
        now = now or utcnow()
        rows = await self.db.execute(
            select(Invoice.id).where(
                and_(
                    Invoice.account_id == self.account_id,
                    Invoice.status.in_(UNPAID_INVOICE_STATUSES),
                    Invoice.due_date >= today,
                    Invoice.due_date <= today + timedelta(days=settings.DUE_SOON_DAYS),
                )
            ).order_by(Invoice.due_date)
        )
        result = await self._remind_all(list(rows.scalars().all()), now)
        logger.info(f"Due-soon reminders for account {self.account_id}: sent_count={result.sent_count}")
        return result

    async def send_overdue_reminders(
        self,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> SweepResult:
        """Mark past-due sent invoices overdue, then remind every unpaid past-due invoice."""
        today = today or current_date()
        now = now or utcnow()

        await self.invoices.mark_past_due_sent_invoices(today)

        rows = await self.db.execute(
            select(Invoice.id).where(
                and_(
                    Invoice.account_id == self.account_id,
                    Invoice.status.in_(UNPAID_INVOICE_STATUSES),
                    Invoice.due_date < today,
                )
            ).order_by(Invoice.due_date)
        )
        result = await self._remind_all(list(rows.scalars().all()), now)
        logger.info(f"Overdue reminders for account {self.account_id}: sent_count={result.sent_count}")
        return result

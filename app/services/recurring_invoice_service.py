"""
Recurring Invoice Service

Spawns invoices from recurring templates on a calendar cadence.

GENERATION (one unit of work per template):
    1. Re-read the template FOR UPDATE and re-check can_generate
    2. Build a draft invoice from the template (line items copied)
    3. Recalculate totals; optionally mark sent and queue delivery
    4. Advance: occurrences_count += 1, next date = start + count intervals
    5. Complete the template when the limit is hit or the next date is past
       end_date; completed templates have no next date

Month arithmetic is always anchored at start_date, so a Jan 31 monthly
template fires on Feb 29 / Feb 28, then Mar 31, never drifting to the 28th.
"""
import uuid
import logging
from datetime import date, timedelta
from typing import Optional, List

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import (
    DocumentNotFoundError,
    GenerationBlockReason,
    InvalidTransitionError,
    RecurringGenerationError,
)
from app.core.time_utils import today as current_date
from app.models.billing import (
    Invoice,
    RecurringFrequency,
    RecurringInvoice,
    RecurringInvoiceLineItem,
    RecurringStatus,
)
from app.schemas.billing import RecurringInvoiceCreate
from app.services.invoice_service import InvoiceService, apply_mark_sent, build_line_items, copy_line_items
from app.services.totals_service import recalculate, validate_document_terms


logger = logging.getLogger(__name__)


# Frequency -> step of one interval
FREQUENCY_INTERVALS = {
    RecurringFrequency.WEEKLY.value: relativedelta(weeks=1),
    RecurringFrequency.BIWEEKLY.value: relativedelta(weeks=2),
    RecurringFrequency.MONTHLY.value: relativedelta(months=1),
    RecurringFrequency.QUARTERLY.value: relativedelta(months=3),
    RecurringFrequency.ANNUALLY.value: relativedelta(months=12),
}

_STATUS_BLOCKS = {
    RecurringStatus.PAUSED.value: GenerationBlockReason.PAUSED,
    RecurringStatus.CANCELLED.value: GenerationBlockReason.CANCELLED,
    RecurringStatus.COMPLETED.value: GenerationBlockReason.COMPLETED,
}


def occurrence_date(start_date: date, frequency: str, occurrence: int) -> date:
    """
    Date of the n-th occurrence after start_date (occurrence 0 is start_date).

    relativedelta clamps to the last day of a shorter month, and scaling the
    interval from start_date keeps the original day-of-month afterwards.
    """
    if frequency not in FREQUENCY_INTERVALS:
        raise ValueError(f"Unknown recurring frequency '{frequency}'")
    return start_date + FREQUENCY_INTERVALS[frequency] * occurrence


def blocking_reason(template: RecurringInvoice, today: date) -> Optional[GenerationBlockReason]:
    """First unmet generation precondition, or None when generation may proceed."""
    if template.status in _STATUS_BLOCKS:
        return _STATUS_BLOCKS[template.status]
    if template.next_occurrence_date is None or template.next_occurrence_date > today:
        return GenerationBlockReason.NOT_DUE
    if template.occurrences_limit is not None and template.occurrences_count >= template.occurrences_limit:
        return GenerationBlockReason.LIMIT_REACHED
    if template.end_date is not None and today > template.end_date:
        return GenerationBlockReason.END_DATE_PASSED
    return None


def can_generate(template: RecurringInvoice, today: date) -> bool:
    return blocking_reason(template, today) is None


def advance(template: RecurringInvoice, today: date) -> None:
    """Record one generated occurrence and complete the template if it is spent."""
    template.occurrences_count += 1
    template.last_generated_at = today
    next_date = occurrence_date(template.start_date, template.frequency, template.occurrences_count)

    limit_hit = (
        template.occurrences_limit is not None
        and template.occurrences_count >= template.occurrences_limit
    )
    past_end = template.end_date is not None and next_date > template.end_date

    if limit_hit or past_end:
        template.status = RecurringStatus.COMPLETED.value
        template.next_occurrence_date = None
    else:
        template.next_occurrence_date = next_date


class RecurringInvoiceService:
    """Service for recurring invoice templates of one account."""

    def __init__(self, db: AsyncSession, account_id: uuid.UUID):
        self.db = db
        self.account_id = account_id

    async def get_template(self, template_id: uuid.UUID, lock: bool = False) -> RecurringInvoice:
        query = select(RecurringInvoice).where(
            and_(
                RecurringInvoice.id == template_id,
                RecurringInvoice.account_id == self.account_id,
            )
        )
        if lock:
            # Re-read under the lock; an instance already in the session may be stale
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        template = result.scalar_one_or_none()
        if template is None:
            raise DocumentNotFoundError("Recurring invoice", template_id)
        return template

    async def create_recurring_invoice(self, data: RecurringInvoiceCreate) -> RecurringInvoice:
        """Create an active template whose first occurrence is its start date."""
        validate_document_terms(data.tax_rate, data.discount_amount)
        template = RecurringInvoice(
            id=uuid.uuid4(),
            account_id=self.account_id,
            client_id=data.client_id,
            project_id=data.project_id,
            name=data.name,
            frequency=data.frequency.value,
            status=RecurringStatus.ACTIVE.value,
            start_date=data.start_date,
            end_date=data.end_date,
            next_occurrence_date=data.start_date,
            occurrences_count=0,
            occurrences_limit=data.occurrences_limit,
            payment_terms=(
                data.payment_terms if data.payment_terms is not None
                else settings.DEFAULT_PAYMENT_TERMS_DAYS
            ),
            auto_send=data.auto_send,
            email_subject=data.email_subject,
            email_body=data.email_body,
            currency=data.currency or settings.DEFAULT_CURRENCY,
            tax_rate=data.tax_rate,
            discount_amount=data.discount_amount,
            notes=data.notes,
            terms=data.terms,
            subtotal=data.subtotal,
            tax_amount=data.tax_amount,
            total_amount=data.total_amount,
            line_items=build_line_items(data.line_items, model=RecurringInvoiceLineItem),
        )
        recalculate(template)
        self.db.add(template)
        await self.db.commit()

        logger.info(f"Created recurring invoice '{template.name}' ({template.frequency}) for account {self.account_id}")
        return template

    async def generate_invoice(self, template_id: uuid.UUID, today: Optional[date] = None) -> Invoice:
        """
        Generate the next invoice of a template.

        Raises:
            RecurringGenerationError: If a precondition fails; nothing is persisted
        """
        today = today or current_date()
        template = await self.get_template(template_id, lock=True)

        reason = blocking_reason(template, today)
        if reason is not None:
            # Release the row lock
            await self.db.rollback()
            raise RecurringGenerationError(reason)

        invoices = InvoiceService(self.db, self.account_id)
        try:
            invoice = await invoices.new_invoice(
                client_id=template.client_id,
                project_id=template.project_id,
                recurring_invoice_id=template.id,
                issue_date=today,
                due_date=today + timedelta(days=template.payment_terms),
                currency=template.currency,
                tax_rate=template.tax_rate,
                discount_amount=template.discount_amount,
                notes=template.notes,
                terms=template.terms,
                subtotal=template.subtotal,
                tax_amount=template.tax_amount,
                total_amount=template.total_amount,
                line_items=copy_line_items(template.line_items),
            )
            if template.auto_send:
                apply_mark_sent(invoice)
                invoices.delivery.enqueue_invoice(
                    invoice,
                    subject=template.email_subject,
                    message=template.email_body,
                )

            advance(template, today)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to generate invoice for recurring invoice {template_id}: {e}")
            raise

        logger.info(
            f"Generated invoice {invoice.invoice_number} from recurring invoice {template_id} "
            f"(occurrence {template.occurrences_count}, status {template.status})"
        )
        return invoice

    async def generate_all_due(self, today: Optional[date] = None) -> List[Invoice]:
        """
        Generate invoices for every template of this account that can generate today.

        Each template is its own unit of work; a failure is logged and the
        template is retried wholesale on the next sweep.
        """
        today = today or current_date()
        result = await self.db.execute(
            select(RecurringInvoice).where(
                and_(
                    RecurringInvoice.account_id == self.account_id,
                    RecurringInvoice.status == RecurringStatus.ACTIVE.value,
                    RecurringInvoice.next_occurrence_date <= today,
                )
            )
        )
        due_ids = [t.id for t in result.scalars().all() if can_generate(t, today)]

        generated = []
        for template_id in due_ids:
            try:
                generated.append(await self.generate_invoice(template_id, today))
            except RecurringGenerationError as e:
                # Changed between the scan and the lock
                logger.info(f"Skipped recurring invoice {template_id}: {e}")
            except Exception as e:
                logger.error(f"Recurring invoice {template_id} failed, will retry next run: {e}")

        if due_ids:
            logger.info(f"Recurring invoices for account {self.account_id}: {len(generated)}/{len(due_ids)} generated")
        return generated

    async def pause(self, template_id: uuid.UUID) -> RecurringInvoice:
        template = await self.get_template(template_id, lock=True)
        if template.status != RecurringStatus.ACTIVE.value:
            raise InvalidTransitionError(
                f"recurring invoice '{template.name}'", "pause", template.status,
                {RecurringStatus.ACTIVE.value},
            )
        template.status = RecurringStatus.PAUSED.value
        await self.db.commit()
        logger.info(f"Recurring invoice {template_id} paused")
        return template

    async def resume(self, template_id: uuid.UUID) -> RecurringInvoice:
        """
        Reactivate a paused template. next_occurrence_date is left untouched,
        so occurrences missed while paused are caught up one per sweep.
        """
        template = await self.get_template(template_id, lock=True)
        if template.status != RecurringStatus.PAUSED.value:
            raise InvalidTransitionError(
                f"recurring invoice '{template.name}'", "resume", template.status,
                {RecurringStatus.PAUSED.value},
            )
        template.status = RecurringStatus.ACTIVE.value
        await self.db.commit()
        logger.info(f"Recurring invoice {template_id} resumed")
        return template

    async def cancel(self, template_id: uuid.UUID) -> RecurringInvoice:
        template = await self.get_template(template_id, lock=True)
        allowed = {RecurringStatus.ACTIVE.value, RecurringStatus.PAUSED.value}
        if template.status not in allowed:
            raise InvalidTransitionError(
                f"recurring invoice '{template.name}'", "cancel", template.status, allowed,
            )
        template.status = RecurringStatus.CANCELLED.value
        await self.db.commit()
        logger.info(f"Recurring invoice {template_id} cancelled")
        return template

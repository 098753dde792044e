"""Estimate Service: estimate lifecycle and conversion into invoices.

STATE MACHINE:
    draft -> sent -> viewed -> accepted -> converted
    sent / viewed -> declined
    draft / sent / viewed -> expired   (system, once valid_until has passed)

Conversion is a single unit of work: the new invoice (with copied line items)
and the estimate's converted state commit together or not at all.
"""
import uuid
import logging
from datetime import datetime, date, timedelta
from typing import Optional, Tuple

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import DocumentNotFoundError, InvalidTransitionError, ConversionError
from app.core.time_utils import utcnow, today as current_date
from app.models.billing import Estimate, EstimateLineItem, EstimateStatus, Invoice
from app.schemas.billing import EstimateCreate
from app.services.delivery_service import DeliveryQueue
from app.services.document_sequence_service import DocumentSequenceService
from app.services.invoice_service import InvoiceService, build_line_items, copy_line_items
from app.services.totals_service import recalculate, validate_document_terms


logger = logging.getLogger(__name__)

RESPONDABLE_STATUSES = {EstimateStatus.SENT.value, EstimateStatus.VIEWED.value}
EXPIRABLE_STATUSES = {
    EstimateStatus.DRAFT.value,
    EstimateStatus.SENT.value,
    EstimateStatus.VIEWED.value,
}
# Statuses at or beyond "viewed"; mark_viewed is a no-op for these
VIEWED_OR_LATER = {
    EstimateStatus.VIEWED.value,
    EstimateStatus.ACCEPTED.value,
    EstimateStatus.DECLINED.value,
    EstimateStatus.EXPIRED.value,
    EstimateStatus.CONVERTED.value,
}


class EstimateService:
    """Service for estimate lifecycle management, scoped to one account."""

    def __init__(self, db: AsyncSession, account_id: uuid.UUID):
        self.db = db
        self.account_id = account_id
        self.sequences = DocumentSequenceService(db, account_id)
        self.delivery = DeliveryQueue(db)

    async def get_estimate(self, estimate_id: uuid.UUID, lock: bool = False) -> Estimate:
        query = select(Estimate).where(
            and_(
                Estimate.id == estimate_id,
                Estimate.account_id == self.account_id,
            )
        )
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query)
        estimate = result.scalar_one_or_none()
        if estimate is None:
            raise DocumentNotFoundError("Estimate", estimate_id)
        return estimate

    def _require(self, estimate: Estimate, action: str, allowed: set) -> None:
        if estimate.status not in allowed:
            raise InvalidTransitionError(
                f"estimate {estimate.estimate_number}", action, estimate.status, allowed,
            )

    async def create_estimate(self, data: EstimateCreate, today: Optional[date] = None) -> Estimate:
        """Create a draft estimate with the next EST- number."""
        validate_document_terms(data.tax_rate, data.discount_amount)
        issue_date = data.issue_date or today or current_date()
        valid_until = data.valid_until or issue_date + timedelta(days=settings.DEFAULT_ESTIMATE_VALIDITY_DAYS)

        estimate = Estimate(
            id=uuid.uuid4(),
            account_id=self.account_id,
            client_id=data.client_id,
            project_id=data.project_id,
            estimate_number=await self.sequences.get_next_number("ESTIMATE"),
            issue_date=issue_date,
            valid_until=valid_until,
            currency=data.currency or settings.DEFAULT_CURRENCY,
            tax_rate=data.tax_rate,
            discount_amount=data.discount_amount,
            notes=data.notes,
            terms=data.terms,
            subtotal=data.subtotal,
            tax_amount=data.tax_amount,
            total_amount=data.total_amount,
            status=EstimateStatus.DRAFT.value,
            line_items=build_line_items(data.line_items, model=EstimateLineItem),
        )
        recalculate(estimate)
        self.db.add(estimate)
        await self.db.commit()

        logger.info(f"Created estimate {estimate.estimate_number} for account {self.account_id}")
        return estimate

    async def mark_sent(self, estimate_id: uuid.UUID, now: Optional[datetime] = None) -> Estimate:
        estimate = await self.get_estimate(estimate_id, lock=True)
        self._require(estimate, "mark as sent", {EstimateStatus.DRAFT.value})
        estimate.status = EstimateStatus.SENT.value
        estimate.sent_at = now or utcnow()
        await self.db.commit()
        logger.info(f"Estimate {estimate.estimate_number} marked as sent")
        return estimate

    async def send_estimate(
        self,
        estimate_id: uuid.UUID,
        subject: Optional[str] = None,
        message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Estimate:
        """Mark a draft estimate as sent and queue its delivery."""
        estimate = await self.get_estimate(estimate_id, lock=True)
        self._require(estimate, "send", {EstimateStatus.DRAFT.value})
        estimate.status = EstimateStatus.SENT.value
        estimate.sent_at = now or utcnow()
        self.delivery.enqueue_estimate(estimate, subject=subject, message=message)
        await self.db.commit()
        logger.info(f"Estimate {estimate.estimate_number} sent")
        return estimate

    async def mark_viewed(self, estimate_id: uuid.UUID, now: Optional[datetime] = None) -> Estimate:
        estimate = await self.get_estimate(estimate_id, lock=True)
        if estimate.status in VIEWED_OR_LATER:
            return estimate
        self._require(estimate, "mark as viewed", {EstimateStatus.SENT.value})
        estimate.status = EstimateStatus.VIEWED.value
        estimate.viewed_at = now or utcnow()
        await self.db.commit()
        logger.info(f"Estimate {estimate.estimate_number} viewed")
        return estimate

    async def mark_accepted(self, estimate_id: uuid.UUID, now: Optional[datetime] = None) -> Estimate:
        estimate = await self.get_estimate(estimate_id, lock=True)
        self._require(estimate, "accept", RESPONDABLE_STATUSES)
        estimate.status = EstimateStatus.ACCEPTED.value
        estimate.accepted_at = now or utcnow()
        await self.db.commit()
        logger.info(f"Estimate {estimate.estimate_number} accepted")
        return estimate

    async def mark_declined(self, estimate_id: uuid.UUID, now: Optional[datetime] = None) -> Estimate:
        estimate = await self.get_estimate(estimate_id, lock=True)
        self._require(estimate, "decline", RESPONDABLE_STATUSES)
        estimate.status = EstimateStatus.DECLINED.value
        estimate.declined_at = now or utcnow()
        await self.db.commit()
        logger.info(f"Estimate {estimate.estimate_number} declined")
        return estimate

    async def mark_expired(self, estimate_id: uuid.UUID, today: Optional[date] = None) -> bool:
        """System transition; returns True only if the estimate expired now."""
        today = today or current_date()
        estimate = await self.get_estimate(estimate_id, lock=True)
        if estimate.status not in EXPIRABLE_STATUSES or not estimate.is_expired(today):
            return False
        estimate.status = EstimateStatus.EXPIRED.value
        await self.db.commit()
        logger.info(f"Estimate {estimate.estimate_number} expired")
        return True

    async def convert_to_invoice(
        self,
        estimate_id: uuid.UUID,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[Estimate, Invoice]:
        """
        Convert an accepted estimate into a draft invoice.

        The invoice is issued today and due after the default payment terms.
        Client, project, currency, tax rate, discount, notes, terms and every
        line item are copied. On any failure nothing is persisted.

        Raises:
            ConversionError: If the estimate is not accepted or already converted
        """
        today = today or current_date()
        estimate = await self.get_estimate(estimate_id, lock=True)
        if not estimate.can_convert:
            raise ConversionError(
                f"Cannot convert estimate {estimate.estimate_number}: "
                f"status is '{estimate.status}', must be accepted and not yet converted"
            )

        invoices = InvoiceService(self.db, self.account_id)
        try:
            invoice = await invoices.new_invoice(
                client_id=estimate.client_id,
                project_id=estimate.project_id,
                issue_date=today,
                due_date=today + timedelta(days=settings.DEFAULT_PAYMENT_TERMS_DAYS),
                currency=estimate.currency,
                tax_rate=estimate.tax_rate,
                discount_amount=estimate.discount_amount,
                notes=estimate.notes,
                terms=estimate.terms,
                subtotal=estimate.subtotal,
                tax_amount=estimate.tax_amount,
                total_amount=estimate.total_amount,
                line_items=copy_line_items(estimate.line_items),
            )
            estimate.status = EstimateStatus.CONVERTED.value
            estimate.converted_at = now or utcnow()
            estimate.converted_invoice_id = invoice.id
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to convert estimate {estimate_id}: {e}")
            raise

        logger.info(f"Converted estimate {estimate.estimate_number} to invoice {invoice.invoice_number}")
        return estimate, invoice

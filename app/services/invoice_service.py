"""Invoice Service: creation, numbering and the invoice state machine.

STATE MACHINE:
    draft -> sent -> viewed -> paid
    sent / viewed -> overdue      (system, once due_date has passed unpaid)
    draft / sent / viewed / overdue -> cancelled

    paid and cancelled are terminal. Invoices are never deleted once they
    leave draft; cancellation is a status, not a row removal.

The apply_* functions implement the transitions on an in-memory invoice so
other services (recurring generation, payment webhooks) can reuse them inside
their own unit of work. InvoiceService methods load, apply and commit.
"""
import uuid
import logging
import secrets
from datetime import datetime, date, timedelta
from decimal import Decimal
from typing import Optional, List, Iterable

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import DocumentNotFoundError, InvalidTransitionError
from app.core.time_utils import utcnow, today as current_date
from app.models.billing import Invoice, InvoiceLineItem, InvoiceStatus
from app.schemas.billing import InvoiceCreate, LineItemCreate
from app.services.delivery_service import DeliveryQueue
from app.services.document_sequence_service import DocumentSequenceService
from app.services.totals_service import recalculate, validate_line_item, validate_document_terms


logger = logging.getLogger(__name__)

PAYABLE_STATUSES = {
    InvoiceStatus.SENT.value,
    InvoiceStatus.VIEWED.value,
    InvoiceStatus.OVERDUE.value,
}
CANCELLABLE_STATUSES = {
    InvoiceStatus.DRAFT.value,
    InvoiceStatus.SENT.value,
    InvoiceStatus.VIEWED.value,
    InvoiceStatus.OVERDUE.value,
}
# Statuses at or beyond "viewed"; mark_viewed is a no-op for these
VIEWED_OR_LATER = {
    InvoiceStatus.VIEWED.value,
    InvoiceStatus.PAID.value,
    InvoiceStatus.OVERDUE.value,
}
OVERDUE_SOURCE_STATUSES = {
    InvoiceStatus.SENT.value,
    InvoiceStatus.VIEWED.value,
}


# ==================== Transitions ====================

def apply_mark_sent(invoice: Invoice, now: Optional[datetime] = None) -> Invoice:
    if invoice.status != InvoiceStatus.DRAFT.value:
        raise InvalidTransitionError(
            f"invoice {invoice.invoice_number}", "mark as sent", invoice.status,
            {InvoiceStatus.DRAFT.value},
        )
    invoice.status = InvoiceStatus.SENT.value
    invoice.sent_at = now or utcnow()
    return invoice


def apply_mark_viewed(invoice: Invoice, now: Optional[datetime] = None) -> bool:
    """Returns False when the invoice was already viewed (or further along)."""
    if invoice.status in VIEWED_OR_LATER:
        return False
    if invoice.status != InvoiceStatus.SENT.value:
        raise InvalidTransitionError(
            f"invoice {invoice.invoice_number}", "mark as viewed", invoice.status,
            {InvoiceStatus.SENT.value},
        )
    invoice.status = InvoiceStatus.VIEWED.value
    invoice.viewed_at = now or utcnow()
    return True


def apply_mark_paid(
    invoice: Invoice,
    paid_at: Optional[datetime] = None,
    payment_method: Optional[str] = None,
    payment_reference: Optional[str] = None,
) -> Invoice:
    if invoice.status not in PAYABLE_STATUSES:
        raise InvalidTransitionError(
            f"invoice {invoice.invoice_number}", "mark as paid", invoice.status, PAYABLE_STATUSES,
        )
    invoice.status = InvoiceStatus.PAID.value
    invoice.paid_at = paid_at or utcnow()
    invoice.payment_method = payment_method
    invoice.payment_reference = payment_reference
    return invoice


def apply_mark_overdue(invoice: Invoice, today: date) -> bool:
    """System transition. Returns True only if the status changed."""
    if invoice.status in OVERDUE_SOURCE_STATUSES and invoice.is_past_due(today):
        invoice.status = InvoiceStatus.OVERDUE.value
        return True
    return False


def apply_cancel(invoice: Invoice, now: Optional[datetime] = None) -> Invoice:
    if invoice.status not in CANCELLABLE_STATUSES:
        raise InvalidTransitionError(
            f"invoice {invoice.invoice_number}", "cancel", invoice.status, CANCELLABLE_STATUSES,
        )
    invoice.status = InvoiceStatus.CANCELLED.value
    invoice.cancelled_at = now or utcnow()
    return invoice


def generate_payment_token() -> str:
    return secrets.token_hex(16)


def checkout_params(invoice: Invoice) -> dict:
    """
    Parameters for a one-off processor checkout covering the invoice total.

    metadata["invoice_id"] is what InvoicePaymentService matches the
    completed payment back to.
    """
    if not invoice.is_payable:
        raise InvalidTransitionError(
            f"invoice {invoice.invoice_number}", "start checkout for", invoice.status, PAYABLE_STATUSES,
        )
    descriptions = [item.description for item in invoice.line_items if item.description][:3]
    base_url = invoice.payment_url
    return {
        "mode": "payment",
        "currency": invoice.currency.lower(),
        "name": f"Invoice {invoice.invoice_number}",
        "description": ", ".join(descriptions)[:200] or "Payment for services",
        "unit_amount": int((invoice.total_amount or Decimal("0")) * 100),
        "quantity": 1,
        "success_url": f"{base_url}/success",
        "cancel_url": f"{base_url}/cancel",
        "metadata": {
            "invoice_id": str(invoice.id),
            "invoice_number": invoice.invoice_number,
            "account_id": str(invoice.account_id),
        },
    }


async def find_by_payment_token(db: AsyncSession, token: str) -> Invoice:
    """Resolve a public payment link; not scoped to an account."""
    result = await db.execute(select(Invoice).where(Invoice.payment_token == token))
    invoice = result.scalar_one_or_none()
    if invoice is None:
        raise DocumentNotFoundError("Invoice", "for payment link")
    return invoice


def build_line_items(items: Iterable[LineItemCreate], model=InvoiceLineItem) -> list:
    """Validate line item input and build ORM rows, positions default to input order."""
    rows = []
    for index, item in enumerate(items):
        validate_line_item(item.quantity, item.unit_price, item.description)
        rows.append(model(
            description=item.description,
            quantity=item.quantity,
            unit_price=item.unit_price,
            position=item.position if item.position is not None else index,
        ))
    return rows


def copy_line_items(source_items: Iterable, model=InvoiceLineItem) -> list:
    """Copy (never reference) line items from one document into new rows."""
    return [
        model(
            description=item.description,
            quantity=item.quantity,
            unit_price=item.unit_price,
            amount=item.amount,
            position=item.position,
        )
        for item in source_items
        if not item.marked_for_removal
    ]


class InvoiceService:
    """Service for invoice lifecycle management, scoped to one account."""

    def __init__(self, db: AsyncSession, account_id: uuid.UUID):
        self.db = db
        self.account_id = account_id
        self.sequences = DocumentSequenceService(db, account_id)
        self.delivery = DeliveryQueue(db)

    async def get_invoice(self, invoice_id: uuid.UUID, lock: bool = False) -> Invoice:
        """Load an invoice of this account; lock=True takes a row lock for the transaction."""
        query = select(Invoice).where(
            and_(
                Invoice.id == invoice_id,
                Invoice.account_id == self.account_id,
            )
        )
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query)
        invoice = result.scalar_one_or_none()
        if invoice is None:
            raise DocumentNotFoundError("Invoice", invoice_id)
        return invoice

    async def new_invoice(
        self,
        *,
        client_id: uuid.UUID,
        issue_date: date,
        due_date: date,
        line_items: List[InvoiceLineItem],
        project_id: Optional[uuid.UUID] = None,
        recurring_invoice_id: Optional[uuid.UUID] = None,
        currency: Optional[str] = None,
        tax_rate: Decimal = Decimal("0"),
        discount_amount: Decimal = Decimal("0"),
        notes: Optional[str] = None,
        terms: Optional[str] = None,
        subtotal: Optional[Decimal] = None,
        tax_amount: Optional[Decimal] = None,
        total_amount: Optional[Decimal] = None,
    ) -> Invoice:
        """
        Build a numbered draft invoice, recalculate it and add it to the session.

        Nothing is committed; the caller owns the unit of work.
        """
        validate_document_terms(tax_rate, discount_amount)
        invoice = Invoice(
            id=uuid.uuid4(),
            account_id=self.account_id,
            client_id=client_id,
            project_id=project_id,
            recurring_invoice_id=recurring_invoice_id,
            invoice_number=await self.sequences.get_next_number("INVOICE"),
            issue_date=issue_date,
            due_date=due_date,
            currency=currency or settings.DEFAULT_CURRENCY,
            tax_rate=tax_rate,
            discount_amount=discount_amount,
            notes=notes,
            terms=terms,
            subtotal=subtotal,
            tax_amount=tax_amount,
            total_amount=total_amount,
            status=InvoiceStatus.DRAFT.value,
            payment_token=generate_payment_token(),
            reminder_count=0,
            line_items=line_items,
        )
        recalculate(invoice)
        self.db.add(invoice)
        return invoice

    async def create_invoice(self, data: InvoiceCreate, today: Optional[date] = None, attempts: int = 3) -> Invoice:
        """
        Create a draft invoice.

        Retries number assignment when a concurrent writer took the same
        number (unique constraint violation).
        """
        issue_date = data.issue_date or today or current_date()
        due_date = data.due_date or issue_date + timedelta(days=settings.DEFAULT_PAYMENT_TERMS_DAYS)

        for attempt in range(attempts):
            invoice = await self.new_invoice(
                client_id=data.client_id,
                project_id=data.project_id,
                issue_date=issue_date,
                due_date=due_date,
                currency=data.currency,
                tax_rate=data.tax_rate,
                discount_amount=data.discount_amount,
                notes=data.notes,
                terms=data.terms,
                subtotal=data.subtotal,
                tax_amount=data.tax_amount,
                total_amount=data.total_amount,
                line_items=build_line_items(data.line_items),
            )
            try:
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                if attempt >= attempts - 1:
                    raise
                logger.warning(f"Invoice number {invoice.invoice_number} taken, retrying")
                continue

            logger.info(f"Created invoice {invoice.invoice_number} for account {self.account_id}")
            return invoice

    async def mark_sent(self, invoice_id: uuid.UUID, now: Optional[datetime] = None) -> Invoice:
        invoice = await self.get_invoice(invoice_id, lock=True)
        apply_mark_sent(invoice, now)
        await self.db.commit()
        logger.info(f"Invoice {invoice.invoice_number} marked as sent")
        return invoice

    async def send_invoice(
        self,
        invoice_id: uuid.UUID,
        subject: Optional[str] = None,
        message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Invoice:
        """Mark a draft invoice as sent and queue its delivery in the same transaction."""
        invoice = await self.get_invoice(invoice_id, lock=True)
        apply_mark_sent(invoice, now)
        self.delivery.enqueue_invoice(invoice, subject=subject, message=message)
        await self.db.commit()
        logger.info(f"Invoice {invoice.invoice_number} sent")
        return invoice

    async def mark_viewed(self, invoice_id: uuid.UUID, now: Optional[datetime] = None) -> Invoice:
        invoice = await self.get_invoice(invoice_id, lock=True)
        if apply_mark_viewed(invoice, now):
            await self.db.commit()
            logger.info(f"Invoice {invoice.invoice_number} viewed")
        return invoice

    async def mark_paid(
        self,
        invoice_id: uuid.UUID,
        paid_at: Optional[datetime] = None,
        payment_method: Optional[str] = None,
        payment_reference: Optional[str] = None,
    ) -> Invoice:
        invoice = await self.get_invoice(invoice_id, lock=True)
        apply_mark_paid(invoice, paid_at, payment_method, payment_reference)
        await self.db.commit()
        logger.info(f"Invoice {invoice.invoice_number} marked as paid ({payment_method or 'manual'})")
        return invoice

    async def mark_overdue(self, invoice_id: uuid.UUID, today: Optional[date] = None) -> bool:
        invoice = await self.get_invoice(invoice_id, lock=True)
        changed = apply_mark_overdue(invoice, today or current_date())
        if changed:
            await self.db.commit()
            logger.info(f"Invoice {invoice.invoice_number} is overdue")
        return changed

    async def cancel(self, invoice_id: uuid.UUID, now: Optional[datetime] = None) -> Invoice:
        invoice = await self.get_invoice(invoice_id, lock=True)
        apply_cancel(invoice, now)
        await self.db.commit()
        logger.info(f"Invoice {invoice.invoice_number} cancelled")
        return invoice

    async def mark_past_due_sent_invoices(self, today: Optional[date] = None) -> int:
        """
        Status maintenance for the overdue sweep: every 'sent' invoice whose
        due date has passed becomes 'overdue'. Each invoice commits on its own.
        """
        today = today or current_date()
        result = await self.db.execute(
            select(Invoice.id).where(
                and_(
                    Invoice.account_id == self.account_id,
                    Invoice.status == InvoiceStatus.SENT.value,
                    Invoice.due_date < today,
                )
            )
        )
        marked = 0
        for invoice_id in result.scalars().all():
            try:
                if await self.mark_overdue(invoice_id, today):
                    marked += 1
            except Exception as e:
                await self.db.rollback()
                logger.error(f"Failed to mark invoice {invoice_id} overdue: {e}")
        return marked

"""
Invoice payments collected through the payment processor.

Handles the processor events raised when a client pays an invoice online:
- checkout.session.completed (only when payment_status is "paid")
- payment_intent.succeeded

Both carry the local invoice id in metadata["invoice_id"]. Payments for
anything else (subscriptions, ad-hoc charges) have no such entry and are
ignored.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidTransitionError
from app.core.time_utils import utcnow
from app.models.billing import Invoice, InvoiceStatus
from app.schemas.processor_events import (
    ProcessorEvent,
    ProcessorEventKind,
    ReconciliationOutcome,
    INVOICE_PAYMENT_EVENT_KINDS,
    WebhookResult,
)
from app.services.invoice_service import apply_mark_paid


logger = logging.getLogger(__name__)

PROCESSOR_PAYMENT_METHOD = "stripe"


class InvoicePaymentService:
    """Marks invoices paid from processor payment events."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _result(
        self,
        event: ProcessorEvent,
        status: ReconciliationOutcome,
        invoice_id: Optional[uuid.UUID] = None,
        account_id: Optional[uuid.UUID] = None,
        detail: Optional[str] = None,
    ) -> WebhookResult:
        return WebhookResult(
            status=status,
            event_id=event.id,
            event_type=event.type,
            invoice_id=invoice_id,
            account_id=account_id,
            detail=detail,
        )

    async def handle(self, event: ProcessorEvent) -> WebhookResult:
        if event.kind not in INVOICE_PAYMENT_EVENT_KINDS:
            return self._result(event, ReconciliationOutcome.IGNORED, detail="Unhandled event type")

        invoice_ref = event.invoice_ref
        if not invoice_ref:
            if event.kind == ProcessorEventKind.CHECKOUT_SESSION_COMPLETED:
                logger.warning(f"No invoice_id in checkout session metadata for {event.object_id}")
            return self._result(event, ReconciliationOutcome.IGNORED, detail="Not an invoice payment")

        if (
            event.kind == ProcessorEventKind.CHECKOUT_SESSION_COMPLETED
            and event.payment_status != "paid"
        ):
            logger.info(f"Checkout session {event.object_id} payment_status: {event.payment_status}")
            return self._result(event, ReconciliationOutcome.IGNORED, detail="Payment not completed")

        try:
            invoice_id = uuid.UUID(invoice_ref)
        except ValueError:
            logger.error(f"Invalid invoice_id '{invoice_ref}' in {event.type} {event.object_id}")
            return self._result(event, ReconciliationOutcome.UNRESOLVED, detail="Invoice not found")

        # Payment events are not tenant-scoped; the invoice carries its account
        result = await self.db.execute(
            select(Invoice).where(Invoice.id == invoice_id).with_for_update()
        )
        invoice = result.scalar_one_or_none()
        if invoice is None:
            logger.error(f"Invoice not found for {event.type} {event.object_id}, invoice_id: {invoice_ref}")
            return self._result(event, ReconciliationOutcome.UNRESOLVED, detail="Invoice not found")

        account_id = invoice.account_id
        if invoice.status == InvoiceStatus.PAID.value:
            await self.db.rollback()
            logger.warning(f"Invoice {invoice_id} is already paid, skipping")
            return self._result(
                event, ReconciliationOutcome.DUPLICATE, invoice_id, account_id, "Invoice already paid",
            )

        try:
            apply_mark_paid(
                invoice,
                paid_at=utcnow(),
                payment_method=PROCESSOR_PAYMENT_METHOD,
                payment_reference=event.payment_ref,
            )
        except InvalidTransitionError as e:
            await self.db.rollback()
            logger.warning(f"Payment for invoice {invoice_id} not applied: {e}")
            return self._result(event, ReconciliationOutcome.IGNORED, invoice_id, account_id, str(e))

        await self.db.commit()
        logger.info(f"Invoice {invoice.invoice_number} marked as paid via processor (ref: {event.payment_ref})")
        return self._result(event, ReconciliationOutcome.APPLIED, invoice_id, account_id)

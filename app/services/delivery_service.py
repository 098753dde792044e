"""
Outbound delivery queue.

Billing operations enqueue "send email with attachment" jobs here. Enqueueing
only adds a DeliveryJob row to the caller's session, so the job commits or
rolls back together with the billing change that produced it. Transport,
rendering and retries belong to whatever drains the queue.
"""
import logging
import uuid
from datetime import date
from typing import Optional, Dict, Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import Invoice, Estimate
from app.models.notifications import DeliveryJob, DeliveryKind, DeliveryTargetKind

logger = logging.getLogger(__name__)


def _money(value) -> Optional[str]:
    return None if value is None else str(value)


def _document_snapshot(document, number: str) -> Dict[str, Any]:
    """Totals and line items handed to the rendering collaborator."""
    return {
        "number": number,
        "currency": document.currency,
        "subtotal": _money(document.subtotal),
        "tax_rate": _money(document.tax_rate),
        "tax_amount": _money(document.tax_amount),
        "discount_amount": _money(document.discount_amount),
        "total_amount": _money(document.total_amount),
        "line_items": [
            {
                "description": item.description,
                "quantity": _money(item.quantity),
                "unit_price": _money(item.unit_price),
                "amount": _money(item.amount),
                "position": item.position,
            }
            for item in document.line_items
        ],
    }


class DeliveryQueue:
    """Writes delivery jobs into the current unit of work."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _enqueue(
        self,
        account_id: uuid.UUID,
        kind: DeliveryKind,
        target_kind: DeliveryTargetKind,
        target_id: uuid.UUID,
        subject: Optional[str],
        message: Optional[str],
        payload: Dict[str, Any],
    ) -> DeliveryJob:
        job = DeliveryJob(
            account_id=account_id,
            kind=kind.value,
            target_kind=target_kind.value,
            target_id=target_id,
            subject=subject,
            message=message,
            payload=payload,
        )
        self.db.add(job)
        logger.info(f"Queued {kind.value} delivery for {target_kind.value} {target_id}")
        return job

    def enqueue_invoice(
        self,
        invoice: Invoice,
        subject: Optional[str] = None,
        message: Optional[str] = None,
    ) -> DeliveryJob:
        payload = _document_snapshot(invoice, invoice.invoice_number)
        payload.update({
            "attachment": f"{invoice.invoice_number}.pdf",
            "due_date": invoice.due_date.isoformat(),
            "payment_url": invoice.payment_url,
        })
        return self._enqueue(
            invoice.account_id,
            DeliveryKind.INVOICE,
            DeliveryTargetKind.INVOICE,
            invoice.id,
            subject or f"Invoice {invoice.invoice_number}",
            message,
            payload,
        )

    def enqueue_payment_reminder(self, invoice: Invoice, today: date) -> DeliveryJob:
        payload = _document_snapshot(invoice, invoice.invoice_number)
        payload.update({
            "attachment": f"{invoice.invoice_number}.pdf",
            "due_date": invoice.due_date.isoformat(),
            "status": invoice.status,
            "reminder_number": invoice.reminder_count + 1,
            "days_until_due": invoice.days_until_due(today),
            "days_overdue": invoice.days_overdue(today),
            "payment_url": invoice.payment_url,
        })
        return self._enqueue(
            invoice.account_id,
            DeliveryKind.PAYMENT_REMINDER,
            DeliveryTargetKind.INVOICE,
            invoice.id,
            f"Payment reminder: invoice {invoice.invoice_number}",
            None,
            payload,
        )

    def enqueue_estimate(
        self,
        estimate: Estimate,
        subject: Optional[str] = None,
        message: Optional[str] = None,
    ) -> DeliveryJob:
        payload = _document_snapshot(estimate, estimate.estimate_number)
        payload.update({
            "attachment": f"{estimate.estimate_number}.pdf",
            "valid_until": estimate.valid_until.isoformat(),
        })
        return self._enqueue(
            estimate.account_id,
            DeliveryKind.ESTIMATE,
            DeliveryTargetKind.ESTIMATE,
            estimate.id,
            subject or f"Estimate {estimate.estimate_number}",
            message,
            payload,
        )

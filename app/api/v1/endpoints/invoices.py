"""
Invoice API Endpoints

Create invoices and drive them through their lifecycle:
draft -> sent -> viewed -> paid, with cancel and payment reminders.
"""
import uuid

from fastapi import APIRouter, status

from app.api.deps import DB, CurrentAccountId, billing_http_error
from app.core.exceptions import BillingError
from app.schemas.billing import (
    InvoiceCreate,
    InvoiceResponse,
    MarkPaidRequest,
    ReminderResult,
    SendDocumentRequest,
)
from app.services.invoice_service import InvoiceService
from app.services.payment_reminder_service import PaymentReminderService


router = APIRouter(tags=["Invoices"])


@router.post("/invoices", response_model=InvoiceResponse, status_code=status.HTTP_201_CREATED)
async def create_invoice(data: InvoiceCreate, db: DB, account_id: CurrentAccountId):
    """Create a draft invoice. The invoice number is assigned here."""
    service = InvoiceService(db, account_id)
    try:
        return await service.create_invoice(data)
    except BillingError as e:
        raise billing_http_error(e)


@router.get("/invoices/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(invoice_id: uuid.UUID, db: DB, account_id: CurrentAccountId):
    service = InvoiceService(db, account_id)
    try:
        return await service.get_invoice(invoice_id)
    except BillingError as e:
        raise billing_http_error(e)


@router.post("/invoices/{invoice_id}/send", response_model=InvoiceResponse)
async def send_invoice(
    invoice_id: uuid.UUID,
    db: DB,
    account_id: CurrentAccountId,
    data: SendDocumentRequest = None,
):
    """Mark a draft invoice as sent and queue it for delivery to the client."""
    data = data or SendDocumentRequest()
    service = InvoiceService(db, account_id)
    try:
        return await service.send_invoice(invoice_id, subject=data.subject, message=data.message)
    except BillingError as e:
        raise billing_http_error(e)


@router.post("/invoices/{invoice_id}/view", response_model=InvoiceResponse)
async def mark_invoice_viewed(invoice_id: uuid.UUID, db: DB, account_id: CurrentAccountId):
    service = InvoiceService(db, account_id)
    try:
        return await service.mark_viewed(invoice_id)
    except BillingError as e:
        raise billing_http_error(e)


@router.post("/invoices/{invoice_id}/pay", response_model=InvoiceResponse)
async def mark_invoice_paid(
    invoice_id: uuid.UUID,
    db: DB,
    account_id: CurrentAccountId,
    data: MarkPaidRequest = None,
):
    """Record a payment received outside the processor (bank transfer, cash, ...)."""
    data = data or MarkPaidRequest()
    service = InvoiceService(db, account_id)
    try:
        return await service.mark_paid(
            invoice_id,
            paid_at=data.paid_at,
            payment_method=data.payment_method,
            payment_reference=data.payment_reference,
        )
    except BillingError as e:
        raise billing_http_error(e)


@router.post("/invoices/{invoice_id}/cancel", response_model=InvoiceResponse)
async def cancel_invoice(invoice_id: uuid.UUID, db: DB, account_id: CurrentAccountId):
    service = InvoiceService(db, account_id)
    try:
        return await service.cancel(invoice_id)
    except BillingError as e:
        raise billing_http_error(e)


@router.post("/invoices/{invoice_id}/remind", response_model=ReminderResult)
async def send_payment_reminder(
    invoice_id: uuid.UUID,
    db: DB,
    account_id: CurrentAccountId,
    force: bool = False,
):
    """
    Send a payment reminder now.

    Refusals (paid, draft, cancelled, cooldown, max reminders) come back as
    success=false with a message for display, not as an HTTP error.
    """
    service = PaymentReminderService(db, account_id)
    return await service.send_reminder(invoice_id, force=force)

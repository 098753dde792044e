"""
Invoice Payment Link Endpoints

PUBLIC endpoints (no account header): the unguessable payment token in the
path identifies the invoice. The client reviews the invoice, gets the
parameters for a processor checkout, and lands back on success or cancel.
Payment itself is confirmed only by the processor webhook.
"""
from fastapi import APIRouter

from app.api.deps import DB, billing_http_error
from app.core.exceptions import BillingError
from app.core.time_utils import today as current_date
from app.models.billing import InvoiceStatus
from app.schemas.billing import CheckoutParams, PaymentPageResponse
from app.services.invoice_service import InvoiceService, checkout_params, find_by_payment_token


router = APIRouter(tags=["Payments"])


@router.get("/pay/{payment_token}", response_model=PaymentPageResponse)
async def show_payment_page(payment_token: str, db: DB):
    try:
        invoice = await find_by_payment_token(db, payment_token)
    except BillingError as e:
        raise billing_http_error(e)
    return PaymentPageResponse.from_invoice(invoice, current_date())


@router.post("/pay/{payment_token}/checkout", response_model=CheckoutParams)
async def start_checkout(payment_token: str, db: DB):
    """Checkout parameters for the invoice total; 422 once it is no longer payable."""
    try:
        invoice = await find_by_payment_token(db, payment_token)
        return checkout_params(invoice)
    except BillingError as e:
        raise billing_http_error(e)


@router.get("/pay/{payment_token}/success", response_model=PaymentPageResponse)
async def payment_success(payment_token: str, db: DB):
    """Return page after checkout; a sent invoice counts as viewed from here on."""
    try:
        invoice = await find_by_payment_token(db, payment_token)
        if invoice.status == InvoiceStatus.SENT.value:
            invoice = await InvoiceService(db, invoice.account_id).mark_viewed(invoice.id)
    except BillingError as e:
        raise billing_http_error(e)
    return PaymentPageResponse.from_invoice(invoice, current_date())


@router.get("/pay/{payment_token}/cancel", response_model=PaymentPageResponse)
async def payment_cancelled(payment_token: str, db: DB):
    try:
        invoice = await find_by_payment_token(db, payment_token)
    except BillingError as e:
        raise billing_http_error(e)
    return PaymentPageResponse.from_invoice(invoice, current_date())

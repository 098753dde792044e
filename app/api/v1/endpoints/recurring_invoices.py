"""
Recurring Invoice API Endpoints

Manage recurring templates and trigger generation on demand. Scheduled
generation runs in app.jobs.recurring_invoices.
"""
import uuid

from fastapi import APIRouter, status

from app.api.deps import DB, CurrentAccountId, billing_http_error
from app.core.exceptions import BillingError
from app.schemas.billing import InvoiceResponse, RecurringInvoiceCreate, RecurringInvoiceResponse
from app.services.recurring_invoice_service import RecurringInvoiceService


router = APIRouter(tags=["Recurring Invoices"])


@router.post(
    "/recurring-invoices",
    response_model=RecurringInvoiceResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_recurring_invoice(data: RecurringInvoiceCreate, db: DB, account_id: CurrentAccountId):
    service = RecurringInvoiceService(db, account_id)
    try:
        return await service.create_recurring_invoice(data)
    except BillingError as e:
        raise billing_http_error(e)


@router.get("/recurring-invoices/{template_id}", response_model=RecurringInvoiceResponse)
async def get_recurring_invoice(template_id: uuid.UUID, db: DB, account_id: CurrentAccountId):
    service = RecurringInvoiceService(db, account_id)
    try:
        return await service.get_template(template_id)
    except BillingError as e:
        raise billing_http_error(e)


@router.post(
    "/recurring-invoices/{template_id}/generate",
    response_model=InvoiceResponse,
    status_code=status.HTTP_201_CREATED,
)
async def generate_recurring_invoice(template_id: uuid.UUID, db: DB, account_id: CurrentAccountId):
    """
    Generate the next occurrence now.

    Returns 422 naming the blocking reason when the template is paused,
    not due, out of occurrences or past its end date.
    """
    service = RecurringInvoiceService(db, account_id)
    try:
        return await service.generate_invoice(template_id)
    except BillingError as e:
        raise billing_http_error(e)


@router.post("/recurring-invoices/{template_id}/pause", response_model=RecurringInvoiceResponse)
async def pause_recurring_invoice(template_id: uuid.UUID, db: DB, account_id: CurrentAccountId):
    service = RecurringInvoiceService(db, account_id)
    try:
        return await service.pause(template_id)
    except BillingError as e:
        raise billing_http_error(e)


@router.post("/recurring-invoices/{template_id}/resume", response_model=RecurringInvoiceResponse)
async def resume_recurring_invoice(template_id: uuid.UUID, db: DB, account_id: CurrentAccountId):
    service = RecurringInvoiceService(db, account_id)
    try:
        return await service.resume(template_id)
    except BillingError as e:
        raise billing_http_error(e)


@router.post("/recurring-invoices/{template_id}/cancel", response_model=RecurringInvoiceResponse)
async def cancel_recurring_invoice(template_id: uuid.UUID, db: DB, account_id: CurrentAccountId):
    service = RecurringInvoiceService(db, account_id)
    try:
        return await service.cancel(template_id)
    except BillingError as e:
        raise billing_http_error(e)

"""
Estimate API Endpoints

Estimates move draft -> sent -> viewed -> accepted / declined; accepted
estimates convert into invoices.
"""
import uuid

from fastapi import APIRouter, status
from pydantic import BaseModel

from app.api.deps import DB, CurrentAccountId, billing_http_error
from app.core.exceptions import BillingError
from app.schemas.billing import EstimateCreate, EstimateResponse, InvoiceResponse, SendDocumentRequest
from app.services.estimate_service import EstimateService


router = APIRouter(tags=["Estimates"])


class ConversionResponse(BaseModel):
    """Converted estimate together with the invoice it produced."""
    estimate: EstimateResponse
    invoice: InvoiceResponse


@router.post("/estimates", response_model=EstimateResponse, status_code=status.HTTP_201_CREATED)
async def create_estimate(data: EstimateCreate, db: DB, account_id: CurrentAccountId):
    service = EstimateService(db, account_id)
    try:
        return await service.create_estimate(data)
    except BillingError as e:
        raise billing_http_error(e)


@router.get("/estimates/{estimate_id}", response_model=EstimateResponse)
async def get_estimate(estimate_id: uuid.UUID, db: DB, account_id: CurrentAccountId):
    service = EstimateService(db, account_id)
    try:
        return await service.get_estimate(estimate_id)
    except BillingError as e:
        raise billing_http_error(e)


@router.post("/estimates/{estimate_id}/send", response_model=EstimateResponse)
async def send_estimate(
    estimate_id: uuid.UUID,
    db: DB,
    account_id: CurrentAccountId,
    data: SendDocumentRequest = None,
):
    data = data or SendDocumentRequest()
    service = EstimateService(db, account_id)
    try:
        return await service.send_estimate(estimate_id, subject=data.subject, message=data.message)
    except BillingError as e:
        raise billing_http_error(e)


@router.post("/estimates/{estimate_id}/view", response_model=EstimateResponse)
async def mark_estimate_viewed(estimate_id: uuid.UUID, db: DB, account_id: CurrentAccountId):
    service = EstimateService(db, account_id)
    try:
        return await service.mark_viewed(estimate_id)
    except BillingError as e:
        raise billing_http_error(e)


@router.post("/estimates/{estimate_id}/accept", response_model=EstimateResponse)
async def accept_estimate(estimate_id: uuid.UUID, db: DB, account_id: CurrentAccountId):
    service = EstimateService(db, account_id)
    try:
        return await service.mark_accepted(estimate_id)
    except BillingError as e:
        raise billing_http_error(e)


@router.post("/estimates/{estimate_id}/decline", response_model=EstimateResponse)
async def decline_estimate(estimate_id: uuid.UUID, db: DB, account_id: CurrentAccountId):
    service = EstimateService(db, account_id)
    try:
        return await service.mark_declined(estimate_id)
    except BillingError as e:
        raise billing_http_error(e)


@router.post("/estimates/{estimate_id}/convert", response_model=ConversionResponse)
async def convert_estimate(estimate_id: uuid.UUID, db: DB, account_id: CurrentAccountId):
    """Turn an accepted estimate into a draft invoice, atomically."""
    service = EstimateService(db, account_id)
    try:
        estimate, invoice = await service.convert_to_invoice(estimate_id)
    except BillingError as e:
        raise billing_http_error(e)
    return ConversionResponse(
        estimate=EstimateResponse.model_validate(estimate),
        invoice=InvoiceResponse.model_validate(invoice),
    )

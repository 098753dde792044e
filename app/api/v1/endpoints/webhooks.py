"""
Payment Processor Webhook Endpoint

PUBLIC endpoint (no account header): the processor identifies the account
through the customer id or invoice metadata inside the event.

Subscription events go to SubscriptionReconciliationService; invoice payment
events go to InvoicePaymentService. Unknown event types are acknowledged and
ignored so the processor stops redelivering them.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Request, Header

from app.api.deps import DB, billing_http_error
from app.config import settings
from app.core.exceptions import WebhookSignatureError
from app.core.security import verify_webhook_signature
from app.schemas.processor_events import (
    ProcessorEvent,
    ReconciliationOutcome,
    INVOICE_PAYMENT_EVENT_KINDS,
    SUBSCRIPTION_EVENT_KINDS,
    WebhookResult,
)
from app.services.invoice_payment_service import InvoicePaymentService
from app.services.subscription_reconciliation_service import SubscriptionReconciliationService


logger = logging.getLogger(__name__)

router = APIRouter(tags=["Webhooks"])


@router.post("/webhooks/processor", response_model=WebhookResult)
async def processor_webhook(
    request: Request,
    db: DB,
    processor_signature: Optional[str] = Header(None, alias="Processor-Signature"),
):
    """
    Receive a payment processor event.

    Signature verification runs when PROCESSOR_WEBHOOK_SECRET is configured.
    Returns 500 on database failures so the processor retries the delivery.
    """
    body = await request.body()

    if settings.PROCESSOR_WEBHOOK_SECRET:
        try:
            verify_webhook_signature(
                body,
                processor_signature,
                settings.PROCESSOR_WEBHOOK_SECRET,
                tolerance=settings.PROCESSOR_WEBHOOK_TOLERANCE_SECONDS,
            )
        except WebhookSignatureError as e:
            raise billing_http_error(e)

    try:
        payload = json.loads(body)
    except ValueError:
        logger.error("Invalid JSON in processor webhook")
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(payload, dict) or not payload.get("id"):
        raise HTTPException(status_code=400, detail="Event id missing from payload")

    try:
        event = ProcessorEvent.from_payload(payload)
    except ValueError as e:
        logger.error(f"Malformed processor event {payload.get('id')}: {e}")
        raise HTTPException(status_code=400, detail="Malformed event payload")
    logger.info(f"Processing processor event {event.id} ({event.type})")

    try:
        if event.kind in SUBSCRIPTION_EVENT_KINDS:
            return await SubscriptionReconciliationService(db).reconcile(event)
        if event.kind in INVOICE_PAYMENT_EVENT_KINDS:
            return await InvoicePaymentService(db).handle(event)
    except Exception as e:
        logger.error(f"Error processing processor event {event.id} ({event.type}): {e}")
        raise HTTPException(
            status_code=500,
            detail=f"Webhook processing failed: {str(e)}"
        )

    return WebhookResult(
        status=ReconciliationOutcome.IGNORED,
        event_id=event.id,
        event_type=event.type,
        detail="Unhandled event type",
    )

"""
Typed envelope for payment processor webhook events.

Raw processor JSON is mapped onto ProcessorEvent once, at the webhook
boundary. Services only see the typed fields below; the set of recognised
event kinds is closed and anything else arrives with kind=None.
"""
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any
from uuid import UUID

from pydantic import BaseModel, Field

from app.core.time_utils import from_unix


class ProcessorEventKind(str, Enum):
    """Processor event types the billing core reacts to."""
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_PAUSED = "customer.subscription.paused"
    SUBSCRIPTION_RESUMED = "customer.subscription.resumed"
    TRIAL_WILL_END = "customer.subscription.trial_will_end"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"


SUBSCRIPTION_EVENT_KINDS = frozenset({
    ProcessorEventKind.SUBSCRIPTION_CREATED,
    ProcessorEventKind.SUBSCRIPTION_UPDATED,
    ProcessorEventKind.SUBSCRIPTION_DELETED,
    ProcessorEventKind.SUBSCRIPTION_PAUSED,
    ProcessorEventKind.SUBSCRIPTION_RESUMED,
    ProcessorEventKind.TRIAL_WILL_END,
    ProcessorEventKind.INVOICE_PAYMENT_FAILED,
    ProcessorEventKind.INVOICE_PAYMENT_SUCCEEDED,
})

INVOICE_PAYMENT_EVENT_KINDS = frozenset({
    ProcessorEventKind.CHECKOUT_SESSION_COMPLETED,
    ProcessorEventKind.PAYMENT_INTENT_SUCCEEDED,
})


class ReconciliationOutcome(str, Enum):
    """What happened to a processor event."""
    APPLIED = "applied"
    RECORDED = "recorded"        # informational, no state change
    IGNORED = "ignored"          # unrecognised kind or nothing to do
    DUPLICATE = "duplicate"      # already processed
    STALE = "stale"              # older than the newest applied event
    UNRESOLVED = "unresolved"    # no matching account / invoice


def _kind(event_type: Optional[str]) -> Optional[ProcessorEventKind]:
    try:
        return ProcessorEventKind(event_type)
    except ValueError:
        return None


def _timestamp(value: Any, field: str) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{field} must be a unix timestamp, got {value!r}")
    return from_unix(value)


def _mapping(value: Any, field: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{field} must be an object")
    return value


def _first_price_id(obj: Dict[str, Any]) -> Optional[str]:
    items = (obj.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price") or {}
    return price.get("id")


class ProcessorEvent(BaseModel):
    """A processor event reduced to the fields reconciliation needs."""
    id: str
    type: str
    kind: Optional[ProcessorEventKind] = None
    created: Optional[datetime] = None

    object_id: Optional[str] = None
    customer_ref: Optional[str] = None
    plan_price_ref: Optional[str] = None
    status: Optional[str] = None
    trial_end: Optional[datetime] = None

    # Invoice payment fields
    payment_status: Optional[str] = None
    payment_ref: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @property
    def is_recognized(self) -> bool:
        return self.kind is not None

    @property
    def invoice_ref(self) -> Optional[str]:
        return self.metadata.get("invoice_id") or None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ProcessorEvent":
        """
        Build an event from the processor's JSON body:

            {"id": "evt_...", "type": "...", "created": 1700000000,
             "data": {"object": {...}}}

        Raises:
            ValueError: If a field has the wrong shape (pydantic's
                ValidationError is a ValueError too)
        """
        obj = _mapping(_mapping(payload.get("data"), "data").get("object"), "data.object")
        kind = _kind(payload.get("type"))

        if kind == ProcessorEventKind.PAYMENT_INTENT_SUCCEEDED:
            payment_ref = obj.get("id")
        else:
            payment_ref = obj.get("payment_intent")

        return cls(
            id=payload.get("id") or "",
            type=payload.get("type") or "",
            kind=kind,
            created=_timestamp(payload.get("created"), "created"),
            object_id=obj.get("id"),
            customer_ref=obj.get("customer"),
            plan_price_ref=_first_price_id(obj),
            status=obj.get("status"),
            trial_end=_timestamp(obj.get("trial_end"), "trial_end"),
            payment_status=obj.get("payment_status"),
            payment_ref=payment_ref,
            metadata={str(k): str(v) for k, v in _mapping(obj.get("metadata"), "metadata").items() if v is not None},
        )


class WebhookResult(BaseModel):
    """Processing result returned to the processor and logged."""
    status: ReconciliationOutcome
    event_id: str
    event_type: str
    account_id: Optional[UUID] = None
    invoice_id: Optional[UUID] = None
    detail: Optional[str] = None

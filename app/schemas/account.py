"""Pydantic schemas for an account's plan and subscription state."""
from datetime import datetime
from typing import Optional
from uuid import UUID

from app.schemas.base import BaseResponseSchema


class PlanBrief(BaseResponseSchema):
    id: UUID
    name: str
    processor_price_id: str
    price_cents: int
    interval: str
    is_free: bool


class SubscriptionStatusResponse(BaseResponseSchema):
    """Read-only; the state only changes through processor events."""
    id: UUID
    name: str
    slug: str
    plan: Optional[PlanBrief] = None
    subscription_status: str
    trial_ends_at: Optional[datetime] = None
    trial_expired: bool
    has_active_subscription: bool
    days_remaining_in_trial: int
    subscription_synced_at: Optional[datetime] = None

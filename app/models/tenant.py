"""
Account and plan models for the multi-tenant billing core.

An Account is an isolated customer organization. Its subscription state is
owned by the payment processor and only ever changed by reconciliation of
processor events.
"""
from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
import uuid

from app.database import Base
from app.db_types import UUIDType, JSONType
from app.core.time_utils import as_utc, utcnow


class SubscriptionStatus(str, Enum):
    """Local subscription status enumeration."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    PAUSED = "paused"


class Plan(Base):
    """
    Pricing plan model

    Each paid plan maps to exactly one processor price id. The free plan is
    the fallback every account lands on when its subscription ends.
    """
    __tablename__ = "plans"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    processor_price_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    processor_product_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    price_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    interval: Mapped[str] = mapped_column(String(10), default="month", nullable=False)
    trial_days: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    features: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    accounts: Mapped[list["Account"]] = relationship("Account", back_populates="plan")

    @property
    def is_free(self) -> bool:
        return self.price_cents == 0

    def __repr__(self) -> str:
        return f"<Plan(name='{self.name}', price_id='{self.processor_price_id}')>"


class Account(Base):
    """
    Tenant/Organization model

    Every billing entity belongs to exactly one account. plan_id is never
    reset to null once set; cancellation moves the account to the free plan.
    """
    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    plan_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("plans.id", ondelete="RESTRICT"),
        nullable=True
    )
    subscription_status: Mapped[str] = mapped_column(
        String(20),
        default=SubscriptionStatus.TRIALING.value,
        nullable=False
    )
    trial_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processor_customer_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        unique=True,
        nullable=True,
        index=True,
        comment="Customer reference at the payment processor"
    )
    subscription_synced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Creation time of the newest processor event applied to this account"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    plan: Mapped[Optional["Plan"]] = relationship("Plan", back_populates="accounts", lazy="selectin")

    @property
    def trial_expired(self) -> bool:
        return (
            self.subscription_status == SubscriptionStatus.TRIALING.value
            and self.trial_ends_at is not None
            and as_utc(self.trial_ends_at) < utcnow()
        )

    @property
    def has_active_subscription(self) -> bool:
        if self.subscription_status == SubscriptionStatus.ACTIVE.value:
            return True
        return self.subscription_status == SubscriptionStatus.TRIALING.value and not self.trial_expired

    @property
    def days_remaining_in_trial(self) -> int:
        if self.subscription_status != SubscriptionStatus.TRIALING.value or self.trial_ends_at is None:
            return 0
        return max((as_utc(self.trial_ends_at).date() - utcnow().date()).days, 0)

    def __repr__(self) -> str:
        return f"<Account(slug='{self.slug}', status='{self.subscription_status}')>"


class ProcessedProcessorEvent(Base):
    """
    Ledger of processor events already applied.

    Lets reconciliation recognise an at-least-once redelivery of the same
    event without re-evaluating it.
    """
    __tablename__ = "processed_processor_events"

    event_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    customer_ref: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

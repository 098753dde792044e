"""Database models for the outbound delivery queue.

A DeliveryJob is written in the same transaction as the billing change that
caused it (transactional outbox). A separate worker hands queued jobs to the
mail transport; the billing core never talks to the transport directly.
"""
from datetime import datetime, timezone
from typing import Optional
from enum import Enum
import uuid

from sqlalchemy import String, DateTime, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import UUIDType, JSONType


class DeliveryKind(str, Enum):
    """What the recipient is being sent."""
    INVOICE = "invoice"
    PAYMENT_REMINDER = "payment_reminder"
    ESTIMATE = "estimate"


class DeliveryTargetKind(str, Enum):
    """The closed set of documents a delivery can be about."""
    INVOICE = "invoice"
    ESTIMATE = "estimate"


class DeliveryStatus(str, Enum):
    """Delivery job status."""
    QUEUED = "queued"
    DELIVERED = "delivered"
    FAILED = "failed"


class DeliveryJob(Base):
    """Outbound email job with a document attachment."""
    __tablename__ = "delivery_jobs"
    __table_args__ = (
        Index("ix_delivery_jobs_status_created", "status", "created_at"),
        Index("ix_delivery_jobs_target", "target_kind", "target_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    kind: Mapped[str] = mapped_column(String(30), nullable=False)

    # Tagged reference: (target_kind, target_id) instead of a free-form polymorphic pair
    target_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    target_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), nullable=False)

    subject: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default=DeliveryStatus.QUEUED.value,
        nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<DeliveryJob(kind='{self.kind}', target='{self.target_kind}:{self.target_id}')>"

"""Billing models: invoices, estimates and recurring invoice templates.

Supports:
- Invoices with a payment lifecycle and reminder tracking
- Estimates (quotes) that convert into invoices
- Recurring invoice templates that spawn invoices on a cadence

Totals on every billable document are a cache of the line items; they are
recomputed by app.services.totals_service.recalculate before each persist.
"""
import uuid
from datetime import datetime, date, timezone
from enum import Enum
from typing import Optional, List
from decimal import Decimal

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Text, Date
from sqlalchemy import UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.config import settings
from app.database import Base
from app.db_types import UUIDType, MoneyType, QuantityType, RateType


class InvoiceStatus(str, Enum):
    """Invoice status enumeration."""
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


# Statuses in which the customer still owes money
UNPAID_INVOICE_STATUSES = (
    InvoiceStatus.SENT.value,
    InvoiceStatus.VIEWED.value,
    InvoiceStatus.OVERDUE.value,
)


class EstimateStatus(str, Enum):
    """Estimate status enumeration."""
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    CONVERTED = "converted"


class RecurringFrequency(str, Enum):
    """How often a recurring invoice fires."""
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


class RecurringStatus(str, Enum):
    """Recurring invoice template status."""
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class BillableDocumentMixin:
    """Columns shared by invoices, estimates and recurring templates."""

    client_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), nullable=False, index=True)
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    tax_rate: Mapped[Decimal] = mapped_column(RateType, default=Decimal("0"), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)
    subtotal: Mapped[Optional[Decimal]] = mapped_column(MoneyType, nullable=True)
    tax_amount: Mapped[Optional[Decimal]] = mapped_column(MoneyType, nullable=True)
    total_amount: Mapped[Optional[Decimal]] = mapped_column(MoneyType, nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    terms: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

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


class LineItemMixin:
    """Columns shared by every line item table."""

    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(QuantityType, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    amount: Mapped[Optional[Decimal]] = mapped_column(
        MoneyType,
        nullable=True,
        comment="Cached quantity x unit_price"
    )
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Set by editors to drop the item on the next save; never persisted
    marked_for_removal = False


class Invoice(BillableDocumentMixin, Base):
    """
    Customer invoice.

    Lifecycle: draft -> sent -> viewed -> paid, with overdue reachable from
    sent/viewed and cancelled from any non-terminal status.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("account_id", "invoice_number", name="uq_invoices_account_number"),
        Index("ix_invoices_account_status_due", "account_id", "status", "due_date"),
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
    recurring_invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("recurring_invoices.id", ondelete="SET NULL"),
        nullable=True
    )

    invoice_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Per-account number e.g., INV-10001"
    )
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default=InvoiceStatus.DRAFT.value,
        nullable=False
    )
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    viewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_token: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
        comment="Unguessable key of the public payment page"
    )

    # Reminder cadence state, mutated only by PaymentReminderService
    reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reminder_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    line_items: Mapped[List["InvoiceLineItem"]] = relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineItem.position",
        lazy="selectin"
    )

    @property
    def is_payable(self) -> bool:
        return self.status in UNPAID_INVOICE_STATUSES

    @property
    def payment_url(self) -> str:
        """Public page where the client reviews and pays the invoice."""
        return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/api/v1/pay/{self.payment_token}"

    def is_past_due(self, today: date) -> bool:
        return self.due_date < today

    def days_overdue(self, today: date) -> int:
        if not self.is_past_due(today):
            return 0
        return (today - self.due_date).days

    def days_until_due(self, today: date) -> int:
        if self.is_past_due(today):
            return 0
        return (self.due_date - today).days

    def __repr__(self) -> str:
        return f"<Invoice(number='{self.invoice_number}', status='{self.status}')>"


class InvoiceLineItem(LineItemMixin, Base):
    """Invoice line item."""
    __tablename__ = "invoice_line_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="line_items")


class Estimate(BillableDocumentMixin, Base):
    """
    Estimate (quote) sent to a client before work is invoiced.

    accepted -> converted is the only path from an estimate to an invoice.
    """
    __tablename__ = "estimates"
    __table_args__ = (
        UniqueConstraint("account_id", "estimate_number", name="uq_estimates_account_number"),
        Index("ix_estimates_account_status", "account_id", "status"),
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

    estimate_number: Mapped[str] = mapped_column(String(50), nullable=False)
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    valid_until: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default=EstimateStatus.DRAFT.value,
        nullable=False
    )
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    viewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    declined_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    converted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    converted_invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("invoices.id", ondelete="SET NULL"),
        nullable=True
    )

    line_items: Mapped[List["EstimateLineItem"]] = relationship(
        "EstimateLineItem",
        back_populates="estimate",
        cascade="all, delete-orphan",
        order_by="EstimateLineItem.position",
        lazy="selectin"
    )

    @property
    def can_convert(self) -> bool:
        return self.status == EstimateStatus.ACCEPTED.value and self.converted_invoice_id is None

    def is_expired(self, today: date) -> bool:
        return self.valid_until < today

    def __repr__(self) -> str:
        return f"<Estimate(number='{self.estimate_number}', status='{self.status}')>"


class EstimateLineItem(LineItemMixin, Base):
    """Estimate line item."""
    __tablename__ = "estimate_line_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    estimate_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("estimates.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    estimate: Mapped["Estimate"] = relationship("Estimate", back_populates="line_items")


class RecurringInvoice(BillableDocumentMixin, Base):
    """
    Recurring invoice template.

    next_occurrence_date is always start_date plus a whole number of
    frequency intervals, and null once the template is completed.
    """
    __tablename__ = "recurring_invoices"
    __table_args__ = (
        Index("ix_recurring_invoices_sweep", "account_id", "next_occurrence_date", "status"),
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

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=RecurringStatus.ACTIVE.value,
        nullable=False
    )

    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    next_occurrence_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    occurrences_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    occurrences_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_generated_at: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    payment_terms: Mapped[int] = mapped_column(
        Integer,
        default=30,
        nullable=False,
        comment="Days between issue date and due date of spawned invoices"
    )
    auto_send: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    email_subject: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    line_items: Mapped[List["RecurringInvoiceLineItem"]] = relationship(
        "RecurringInvoiceLineItem",
        back_populates="recurring_invoice",
        cascade="all, delete-orphan",
        order_by="RecurringInvoiceLineItem.position",
        lazy="selectin"
    )

    @property
    def remaining_occurrences(self) -> Optional[int]:
        if self.occurrences_limit is None:
            return None
        return max(self.occurrences_limit - self.occurrences_count, 0)

    def __repr__(self) -> str:
        return f"<RecurringInvoice(name='{self.name}', frequency='{self.frequency}', status='{self.status}')>"


class RecurringInvoiceLineItem(LineItemMixin, Base):
    """Template line item, copied verbatim into each spawned invoice."""
    __tablename__ = "recurring_invoice_line_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    recurring_invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("recurring_invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    recurring_invoice: Mapped["RecurringInvoice"] = relationship(
        "RecurringInvoice",
        back_populates="line_items"
    )

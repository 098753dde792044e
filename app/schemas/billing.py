"""Pydantic schemas for invoices, estimates and recurring invoices."""
from datetime import datetime, date
from typing import Optional, List, Dict
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from app.schemas.base import BaseResponseSchema, BaseCreateSchema
from app.models.billing import RecurringFrequency


# ==================== Line Items ====================

class LineItemCreate(BaseCreateSchema):
    """Line item input, shared by every billable document."""
    description: str = Field(..., min_length=1, max_length=500)
    quantity: Decimal = Field(..., gt=0)
    unit_price: Decimal = Field(..., ge=0)
    position: Optional[int] = Field(None, ge=0)


class LineItemResponse(BaseResponseSchema):
    id: UUID
    description: str
    quantity: Decimal
    unit_price: Decimal
    amount: Optional[Decimal] = None
    position: int


class DocumentTermsBase(BaseCreateSchema):
    """Fields shared by the create schemas of billable documents."""
    client_id: UUID
    project_id: Optional[UUID] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    tax_rate: Decimal = Field(Decimal("0"), ge=0)
    discount_amount: Decimal = Field(Decimal("0"), ge=0)
    notes: Optional[str] = None
    terms: Optional[str] = None
    line_items: List[LineItemCreate] = Field(default_factory=list)

    # Manually priced documents with no line items
    subtotal: Optional[Decimal] = Field(None, ge=0)
    tax_amount: Optional[Decimal] = Field(None, ge=0)
    total_amount: Optional[Decimal] = None


# ==================== Invoice Schemas ====================

class InvoiceCreate(DocumentTermsBase):
    issue_date: Optional[date] = None
    due_date: Optional[date] = None

    @model_validator(mode="after")
    def due_date_after_issue_date(self):
        if self.issue_date and self.due_date and self.due_date < self.issue_date:
            raise ValueError("due_date must be on or after issue_date")
        return self


class MarkPaidRequest(BaseModel):
    paid_at: Optional[datetime] = None
    payment_method: Optional[str] = Field(None, max_length=50)
    payment_reference: Optional[str] = Field(None, max_length=255)


class SendDocumentRequest(BaseModel):
    subject: Optional[str] = Field(None, max_length=255)
    message: Optional[str] = None


class InvoiceResponse(BaseResponseSchema):
    id: UUID
    account_id: UUID
    client_id: UUID
    project_id: Optional[UUID] = None
    recurring_invoice_id: Optional[UUID] = None
    invoice_number: str
    issue_date: date
    due_date: date
    currency: str
    status: str
    tax_rate: Decimal
    discount_amount: Decimal
    subtotal: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    sent_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    payment_url: str
    reminder_sent_at: Optional[datetime] = None
    reminder_count: int
    notes: Optional[str] = None
    line_items: List[LineItemResponse] = []


# ==================== Estimate Schemas ====================

class EstimateCreate(DocumentTermsBase):
    issue_date: Optional[date] = None
    valid_until: Optional[date] = None

    @model_validator(mode="after")
    def valid_until_after_issue_date(self):
        if self.issue_date and self.valid_until and self.valid_until < self.issue_date:
            raise ValueError("valid_until must be on or after issue_date")
        return self


class EstimateResponse(BaseResponseSchema):
    id: UUID
    account_id: UUID
    client_id: UUID
    project_id: Optional[UUID] = None
    estimate_number: str
    issue_date: date
    valid_until: date
    currency: str
    status: str
    tax_rate: Decimal
    discount_amount: Decimal
    subtotal: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    sent_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    converted_at: Optional[datetime] = None
    converted_invoice_id: Optional[UUID] = None
    line_items: List[LineItemResponse] = []


# ==================== Recurring Invoice Schemas ====================

class RecurringInvoiceCreate(DocumentTermsBase):
    name: str = Field(..., min_length=1, max_length=200)
    frequency: RecurringFrequency
    start_date: date
    end_date: Optional[date] = None
    occurrences_limit: Optional[int] = Field(None, gt=0)
    payment_terms: Optional[int] = Field(None, ge=0)
    auto_send: bool = False
    email_subject: Optional[str] = Field(None, max_length=255)
    email_body: Optional[str] = None

    @model_validator(mode="after")
    def end_date_after_start_date(self):
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class RecurringInvoiceResponse(BaseResponseSchema):
    id: UUID
    account_id: UUID
    client_id: UUID
    name: str
    frequency: str
    status: str
    start_date: date
    end_date: Optional[date] = None
    next_occurrence_date: Optional[date] = None
    occurrences_count: int
    occurrences_limit: Optional[int] = None
    remaining_occurrences: Optional[int] = None
    last_generated_at: Optional[date] = None
    payment_terms: int
    auto_send: bool
    tax_rate: Decimal
    discount_amount: Decimal
    subtotal: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    line_items: List[LineItemResponse] = []


# ==================== Reminders ====================

class ReminderResult(BaseModel):
    """Outcome of a single reminder request; message is safe to show to users."""
    success: bool
    message: str
    invoice_id: Optional[UUID] = None
    reminder_count: Optional[int] = None


class SweepResult(BaseModel):
    """Outcome of a batch pass over invoices or templates."""
    sent_count: int = 0
    failed_count: int = 0


# ==================== Payment Links ====================

class PaymentPageResponse(BaseModel):
    """Public view of an invoice behind its payment link; carries no account data."""
    invoice_number: str
    status: str
    currency: str
    issue_date: date
    due_date: date
    subtotal: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    discount_amount: Decimal
    total_amount: Optional[Decimal] = None
    is_payable: bool
    days_until_due: int
    days_overdue: int
    line_items: List[LineItemResponse] = []

    @classmethod
    def from_invoice(cls, invoice, today: date) -> "PaymentPageResponse":
        return cls(
            invoice_number=invoice.invoice_number,
            status=invoice.status,
            currency=invoice.currency,
            issue_date=invoice.issue_date,
            due_date=invoice.due_date,
            subtotal=invoice.subtotal,
            tax_amount=invoice.tax_amount,
            discount_amount=invoice.discount_amount,
            total_amount=invoice.total_amount,
            is_payable=invoice.is_payable,
            days_until_due=invoice.days_until_due(today),
            days_overdue=invoice.days_overdue(today),
            line_items=[LineItemResponse.model_validate(item) for item in invoice.line_items],
        )


class CheckoutParams(BaseModel):
    """One-off processor checkout for an invoice total, amount in minor units."""
    mode: str
    currency: str
    name: str
    description: str
    unit_amount: int
    quantity: int
    success_url: str
    cancel_url: str
    metadata: Dict[str, str]

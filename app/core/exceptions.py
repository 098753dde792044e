"""
Domain errors for the billing core.

These are business-rule failures, not technical errors. Services raise them;
the API layer maps them onto HTTP status codes and background jobs log them
per unit and move on.
"""
from enum import Enum
from typing import Optional


class BillingError(Exception):
    """Base class for billing domain errors."""
    pass


class DocumentNotFoundError(BillingError):
    """Raised when a document id does not exist for the account."""

    def __init__(self, kind: str, document_id):
        self.kind = kind
        self.document_id = document_id
        super().__init__(f"{kind} {document_id} not found")


class InvalidTransitionError(BillingError):
    """
    Raised when a lifecycle transition is attempted from a status that
    does not allow it.
    """

    def __init__(self, document: str, action: str, current_status: str, allowed: Optional[set] = None):
        self.document = document
        self.action = action
        self.current_status = current_status
        self.allowed = allowed or set()
        message = f"Cannot {action} {document}: current status is '{current_status}'"
        if self.allowed:
            message += f", must be one of: {', '.join(sorted(self.allowed))}"
        super().__init__(message)


class InvalidLineItemError(BillingError, ValueError):
    """Raised for negative or zero quantities, negative prices, rates or discounts."""
    pass


class ConversionError(BillingError):
    """Raised when an estimate cannot be converted into an invoice."""
    pass


class GenerationBlockReason(str, Enum):
    """Why a recurring invoice cannot generate right now."""
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NOT_DUE = "not_due"
    LIMIT_REACHED = "limit_reached"
    END_DATE_PASSED = "end_date_passed"


GENERATION_BLOCK_MESSAGES = {
    GenerationBlockReason.PAUSED: "recurring invoice is paused",
    GenerationBlockReason.CANCELLED: "recurring invoice is cancelled",
    GenerationBlockReason.COMPLETED: "recurring invoice is completed",
    GenerationBlockReason.NOT_DUE: "not due yet",
    GenerationBlockReason.LIMIT_REACHED: "occurrences limit reached",
    GenerationBlockReason.END_DATE_PASSED: "end date has passed",
}


class RecurringGenerationError(BillingError):
    """Raised by generate_invoice when a precondition is not met."""

    def __init__(self, reason: GenerationBlockReason):
        self.reason = reason
        super().__init__(f"Cannot generate invoice: {GENERATION_BLOCK_MESSAGES[reason]}")


class WebhookSignatureError(BillingError):
    """Raised when a processor webhook fails signature verification."""
    pass

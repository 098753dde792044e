# Services module
from app.services.invoice_service import InvoiceService
from app.services.estimate_service import EstimateService
from app.services.document_sequence_service import DocumentSequenceService
from app.services.recurring_invoice_service import RecurringInvoiceService
from app.services.payment_reminder_service import PaymentReminderService

# Processor event handling
from app.services.subscription_reconciliation_service import SubscriptionReconciliationService
from app.services.invoice_payment_service import InvoicePaymentService

__all__ = [
    "InvoiceService",
    "EstimateService",
    "DocumentSequenceService",
    "RecurringInvoiceService",
    "PaymentReminderService",
    # Processor events
    "SubscriptionReconciliationService",
    "InvoicePaymentService",
]

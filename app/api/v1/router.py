from fastapi import APIRouter

from app.api.v1.endpoints import (
    # Billing documents
    invoices,
    estimates,
    recurring_invoices,
    payments,
    # Account
    account,
    # Payment processor
    webhooks,
)


# Create main API router
api_router = APIRouter(prefix="/api/v1")

# ==================== Invoices ====================
api_router.include_router(
    invoices.router,
    tags=["Invoices"]
)

# ==================== Estimates ====================
api_router.include_router(
    estimates.router,
    tags=["Estimates"]
)

# ==================== Recurring Invoices ====================
api_router.include_router(
    recurring_invoices.router,
    tags=["Recurring Invoices"]
)

# ==================== Invoice Payment Links (Public) ====================
api_router.include_router(
    payments.router,
    tags=["Payments"]
)

# ==================== Account ====================
api_router.include_router(
    account.router,
    tags=["Account"]
)

# ==================== Payment Processor Webhooks (Public) ====================
api_router.include_router(
    webhooks.router,
    tags=["Webhooks"]
)

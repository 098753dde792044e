"""
Money / line item calculator.

Computes subtotal, tax and total for a billable document:

    subtotal     = sum(quantity * unit_price) over kept line items
    tax_amount   = round(subtotal * tax_rate / 100, 2)   (half-up)
    total_amount = subtotal + tax_amount - discount_amount

Rounding happens only at the tax step. Inputs are validated before anything
is computed; invalid values are rejected, never clamped.

Documents with no line items keep whatever totals were stored before. That
supports manually priced documents, but it also hides a forgotten line item,
so new documents should always be given either items or explicit totals.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Protocol

from app.core.exceptions import InvalidLineItemError

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CENT = Decimal("0.01")


class PricedLine(Protocol):
    quantity: Decimal
    unit_price: Decimal


@dataclass(frozen=True)
class DocumentTotals:
    subtotal: Decimal
    tax_amount: Decimal
    total_amount: Decimal


def to_decimal(value) -> Decimal:
    """Coerce ints, strings and floats to Decimal without binary float artifacts."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def line_amount(quantity, unit_price) -> Decimal:
    return to_decimal(quantity) * to_decimal(unit_price)


def round_tax(subtotal: Decimal, tax_rate: Decimal) -> Decimal:
    return (subtotal * tax_rate / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)


def validate_line_item(quantity, unit_price, description: Optional[str] = "item") -> None:
    """Raise InvalidLineItemError unless quantity > 0 and unit_price >= 0."""
    if quantity is None or to_decimal(quantity) <= ZERO:
        raise InvalidLineItemError(f"Quantity for '{description}' must be greater than 0")
    if unit_price is None or to_decimal(unit_price) < ZERO:
        raise InvalidLineItemError(f"Unit price for '{description}' must be 0 or greater")


def validate_document_terms(tax_rate, discount_amount) -> None:
    if to_decimal(tax_rate) < ZERO:
        raise InvalidLineItemError("Tax rate must be 0 or greater")
    if to_decimal(discount_amount) < ZERO:
        raise InvalidLineItemError("Discount amount must be 0 or greater")


def kept_items(line_items: Iterable) -> list:
    return [li for li in line_items if not getattr(li, "marked_for_removal", False)]


def calculate_totals(
    line_items: Iterable[PricedLine],
    tax_rate=ZERO,
    discount_amount=ZERO,
    previous: Optional[DocumentTotals] = None,
) -> DocumentTotals:
    """
    Compute document totals from line items.

    Args:
        line_items: Items with quantity and unit_price; items whose
            marked_for_removal flag is set are ignored
        tax_rate: Percentage, >= 0
        discount_amount: Absolute amount subtracted after tax, >= 0
        previous: Totals already persisted on the document, used only when
            there are no line items

    Raises:
        InvalidLineItemError: On any negative/zero quantity, negative price,
            negative tax rate or negative discount
    """
    tax_rate = to_decimal(tax_rate)
    discount_amount = to_decimal(discount_amount)
    validate_document_terms(tax_rate, discount_amount)

    items = kept_items(line_items)
    for item in items:
        validate_line_item(item.quantity, item.unit_price, getattr(item, "description", "item"))

    if not items:
        previous = previous or DocumentTotals(None, None, None)
        subtotal = previous.subtotal if previous.subtotal is not None else ZERO
        tax_amount = previous.tax_amount if previous.tax_amount is not None else ZERO
        total_amount = previous.total_amount
        if total_amount is None:
            total_amount = subtotal + tax_amount - discount_amount
        logger.debug("No line items; keeping previously stored totals")
        return DocumentTotals(subtotal, tax_amount, total_amount)

    subtotal = sum((line_amount(li.quantity, li.unit_price) for li in items), ZERO)
    tax_amount = round_tax(subtotal, tax_rate)
    return DocumentTotals(
        subtotal=subtotal,
        tax_amount=tax_amount,
        total_amount=subtotal + tax_amount - discount_amount,
    )


def recalculate(document) -> DocumentTotals:
    """
    Refresh cached line amounts and totals on an invoice, estimate or
    recurring template. Idempotent; call it right before persisting.
    """
    items = kept_items(document.line_items)
    totals = calculate_totals(
        document.line_items,
        tax_rate=document.tax_rate,
        discount_amount=document.discount_amount,
        previous=DocumentTotals(document.subtotal, document.tax_amount, document.total_amount),
    )
    for item in items:
        item.amount = line_amount(item.quantity, item.unit_price)
    for item in [li for li in document.line_items if li not in items]:
        document.line_items.remove(item)

    document.subtotal = totals.subtotal
    document.tax_amount = totals.tax_amount
    document.total_amount = totals.total_amount
    return totals

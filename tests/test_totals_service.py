"""Tests for document totals and line item validation."""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.core.exceptions import InvalidLineItemError
from app.services.totals_service import (
    DocumentTotals,
    calculate_totals,
    recalculate,
    round_tax,
)


def item(quantity, unit_price, description="item", marked_for_removal=False):
    return SimpleNamespace(
        description=description,
        quantity=Decimal(quantity),
        unit_price=Decimal(unit_price),
        amount=None,
        marked_for_removal=marked_for_removal,
    )


def document(line_items, tax_rate="0", discount_amount="0", subtotal=None, tax_amount=None, total_amount=None):
    return SimpleNamespace(
        line_items=line_items,
        tax_rate=Decimal(tax_rate),
        discount_amount=Decimal(discount_amount),
        subtotal=subtotal,
        tax_amount=tax_amount,
        total_amount=total_amount,
    )


# ── Calculation Tests ──────────────────────────────────────────────────


class TestCalculateTotals:
    def test_two_items_with_tax(self):
        totals = calculate_totals([item("10", "150"), item("5", "100")], tax_rate=Decimal("10"))
        assert totals.subtotal == Decimal("2000")
        assert totals.tax_amount == Decimal("200.00")
        assert totals.total_amount == Decimal("2200.00")

    def test_discount_applied_after_tax(self):
        totals = calculate_totals([item("1", "100")], tax_rate=Decimal("10"), discount_amount=Decimal("15"))
        assert totals.tax_amount == Decimal("10.00")
        assert totals.total_amount == Decimal("95.00")

    def test_tax_rounds_half_up(self):
        # 0.05 * 10% = 0.005 -> 0.01
        totals = calculate_totals([item("1", "0.05")], tax_rate=Decimal("10"))
        assert totals.tax_amount == Decimal("0.01")

    def test_subtotal_is_not_rounded(self):
        totals = calculate_totals([item("3", "0.3333")])
        assert totals.subtotal == Decimal("0.9999")
        assert totals.tax_amount == Decimal("0.00")

    def test_items_marked_for_removal_are_excluded(self):
        totals = calculate_totals([item("1", "100"), item("2", "50", marked_for_removal=True)])
        assert totals.subtotal == Decimal("100")

    def test_discount_can_exceed_total(self):
        totals = calculate_totals([item("1", "10")], discount_amount=Decimal("25"))
        assert totals.total_amount == Decimal("-15")

    def test_zero_price_item_allowed(self):
        totals = calculate_totals([item("2", "0")])
        assert totals.subtotal == Decimal("0")

    def test_round_tax(self):
        assert round_tax(Decimal("333.33"), Decimal("7.5")) == Decimal("25.00")
        assert round_tax(Decimal("1.01"), Decimal("50")) == Decimal("0.51")


# ── Validation Tests ───────────────────────────────────────────────────


class TestValidation:
    def test_zero_quantity_rejected(self):
        with pytest.raises(InvalidLineItemError):
            calculate_totals([item("0", "10")])

    def test_negative_quantity_rejected(self):
        with pytest.raises(InvalidLineItemError):
            calculate_totals([item("-1", "10")])

    def test_negative_price_rejected(self):
        with pytest.raises(InvalidLineItemError):
            calculate_totals([item("1", "-10")])

    def test_negative_tax_rate_rejected(self):
        with pytest.raises(InvalidLineItemError):
            calculate_totals([item("1", "10")], tax_rate=Decimal("-1"))

    def test_negative_discount_rejected(self):
        with pytest.raises(InvalidLineItemError):
            calculate_totals([item("1", "10")], discount_amount=Decimal("-5"))

    def test_invalid_item_marked_for_removal_is_ignored(self):
        totals = calculate_totals([item("1", "10"), item("0", "10", marked_for_removal=True)])
        assert totals.subtotal == Decimal("10")


# ── Recalculate Tests ──────────────────────────────────────────────────


class TestRecalculate:
    def test_caches_line_amounts_and_totals(self):
        doc = document([item("10", "150"), item("5", "100")], tax_rate="10")
        recalculate(doc)
        assert [li.amount for li in doc.line_items] == [Decimal("1500"), Decimal("500")]
        assert doc.total_amount == Decimal("2200.00")

    def test_drops_items_marked_for_removal(self):
        doc = document([item("1", "100"), item("1", "40", marked_for_removal=True)])
        recalculate(doc)
        assert len(doc.line_items) == 1
        assert doc.subtotal == Decimal("100")

    def test_is_idempotent(self):
        doc = document([item("3", "19.99")], tax_rate="8.25")
        first = recalculate(doc)
        second = recalculate(doc)
        assert first == second

    def test_no_items_keeps_stored_totals(self):
        doc = document(
            [],
            subtotal=Decimal("500"),
            tax_amount=Decimal("50"),
            total_amount=Decimal("550"),
        )
        totals = recalculate(doc)
        assert totals == DocumentTotals(Decimal("500"), Decimal("50"), Decimal("550"))

    def test_no_items_and_no_stored_totals_is_zero(self):
        doc = document([])
        recalculate(doc)
        assert doc.subtotal == Decimal("0")
        assert doc.total_amount == Decimal("0")

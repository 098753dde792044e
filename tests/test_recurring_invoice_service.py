"""Tests for recurring invoice templates and invoice generation."""

from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from app.core.exceptions import GenerationBlockReason, InvalidTransitionError, RecurringGenerationError
from app.models.billing import Invoice, InvoiceStatus, RecurringInvoice, RecurringStatus
from app.models.notifications import DeliveryJob
from app.services.recurring_invoice_service import (
    RecurringInvoiceService,
    advance,
    blocking_reason,
    occurrence_date,
)
from tests.factories import recurring_data


def template(**overrides):
    values = {
        "status": RecurringStatus.ACTIVE.value,
        "frequency": "monthly",
        "start_date": date(2024, 1, 31),
        "end_date": None,
        "next_occurrence_date": date(2024, 1, 31),
        "occurrences_count": 0,
        "occurrences_limit": None,
        "last_generated_at": None,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


async def invoice_count(db) -> int:
    return (await db.execute(select(func.count()).select_from(Invoice))).scalar_one()


# ── Date Arithmetic Tests ──────────────────────────────────────────────


class TestOccurrenceDate:
    def test_month_end_clamps_then_recovers(self):
        start = date(2024, 1, 31)
        assert occurrence_date(start, "monthly", 1) == date(2024, 2, 29)
        assert occurrence_date(start, "monthly", 2) == date(2024, 3, 31)
        assert occurrence_date(start, "monthly", 3) == date(2024, 4, 30)

    def test_weekly_and_biweekly(self):
        start = date(2024, 3, 1)
        assert occurrence_date(start, "weekly", 2) == date(2024, 3, 15)
        assert occurrence_date(start, "biweekly", 2) == date(2024, 3, 29)

    def test_quarterly_and_annually(self):
        start = date(2024, 2, 29)
        assert occurrence_date(start, "quarterly", 1) == date(2024, 5, 29)
        assert occurrence_date(start, "annually", 1) == date(2025, 2, 28)
        assert occurrence_date(start, "annually", 4) == date(2028, 2, 29)

    def test_unknown_frequency(self):
        with pytest.raises(ValueError):
            occurrence_date(date(2024, 1, 1), "daily", 1)


# ── Precondition Tests ─────────────────────────────────────────────────


class TestBlockingReason:
    def test_due_template_can_generate(self):
        assert blocking_reason(template(), date(2024, 1, 31)) is None

    def test_status_checked_first(self):
        paused = template(status=RecurringStatus.PAUSED.value, next_occurrence_date=date(2025, 1, 1))
        assert blocking_reason(paused, date(2024, 1, 31)) == GenerationBlockReason.PAUSED

    def test_not_due(self):
        assert blocking_reason(template(), date(2024, 1, 30)) == GenerationBlockReason.NOT_DUE
        assert blocking_reason(template(next_occurrence_date=None), date(2024, 6, 1)) == GenerationBlockReason.NOT_DUE

    def test_limit_reached(self):
        spent = template(occurrences_count=3, occurrences_limit=3)
        assert blocking_reason(spent, date(2024, 2, 1)) == GenerationBlockReason.LIMIT_REACHED

    def test_end_date_passed(self):
        ended = template(end_date=date(2024, 1, 15), next_occurrence_date=date(2024, 1, 10))
        assert blocking_reason(ended, date(2024, 1, 20)) == GenerationBlockReason.END_DATE_PASSED


class TestAdvance:
    def test_advance_moves_to_next_occurrence(self):
        t = template()
        advance(t, date(2024, 1, 31))
        assert t.occurrences_count == 1
        assert t.next_occurrence_date == date(2024, 2, 29)
        assert t.last_generated_at == date(2024, 1, 31)

    def test_completes_at_limit(self):
        t = template(occurrences_limit=1)
        advance(t, date(2024, 1, 31))
        assert t.status == RecurringStatus.COMPLETED.value
        assert t.next_occurrence_date is None

    def test_completes_when_next_date_past_end(self):
        t = template(end_date=date(2024, 2, 15))
        advance(t, date(2024, 1, 31))
        assert t.status == RecurringStatus.COMPLETED.value
        assert t.next_occurrence_date is None


# ── Generation Tests ───────────────────────────────────────────────────


class TestGenerateInvoice:
    @pytest.mark.asyncio
    async def test_create_template(self, db, account):
        tpl = await RecurringInvoiceService(db, account.id).create_recurring_invoice(
            recurring_data(occurrences_limit=12)
        )
        assert tpl.status == RecurringStatus.ACTIVE.value
        assert tpl.next_occurrence_date == tpl.start_date
        assert tpl.payment_terms == 30
        assert tpl.total_amount == Decimal("1100.00")
        assert tpl.remaining_occurrences == 12

    @pytest.mark.asyncio
    async def test_generates_draft_and_advances(self, db, account):
        service = RecurringInvoiceService(db, account.id)
        tpl = await service.create_recurring_invoice(
            recurring_data(start_date=date(2024, 1, 31), payment_terms=14)
        )

        invoice = await service.generate_invoice(tpl.id, today=date(2024, 1, 31))

        assert invoice.status == InvoiceStatus.DRAFT.value
        assert invoice.recurring_invoice_id == tpl.id
        assert invoice.issue_date == date(2024, 1, 31)
        assert invoice.due_date == date(2024, 2, 14)
        assert invoice.total_amount == Decimal("1100.00")
        assert [li.description for li in invoice.line_items] == ["Retainer"]

        assert tpl.occurrences_count == 1
        assert tpl.next_occurrence_date == date(2024, 2, 29)
        assert tpl.last_generated_at == date(2024, 1, 31)

    @pytest.mark.asyncio
    async def test_auto_send_marks_sent_and_queues_delivery(self, db, account):
        service = RecurringInvoiceService(db, account.id)
        tpl = await service.create_recurring_invoice(
            recurring_data(auto_send=True, email_subject="March retainer", email_body="See attached")
        )

        invoice = await service.generate_invoice(tpl.id, today=tpl.start_date)

        assert invoice.status == InvoiceStatus.SENT.value
        assert invoice.sent_at is not None
        job = (await db.execute(select(DeliveryJob))).scalar_one()
        assert job.target_id == invoice.id
        assert job.subject == "March retainer"
        assert job.message == "See attached"

    @pytest.mark.asyncio
    async def test_paused_template_fails_and_persists_nothing(self, db, account):
        service = RecurringInvoiceService(db, account.id)
        tpl = await service.create_recurring_invoice(recurring_data())
        await service.pause(tpl.id)

        with pytest.raises(RecurringGenerationError) as exc_info:
            await service.generate_invoice(tpl.id, today=tpl.start_date)
        assert exc_info.value.reason == GenerationBlockReason.PAUSED

        assert await invoice_count(db) == 0
        await db.refresh(tpl)
        assert tpl.occurrences_count == 0
        assert tpl.status == RecurringStatus.PAUSED.value

    @pytest.mark.asyncio
    async def test_not_due_template_fails(self, db, account):
        service = RecurringInvoiceService(db, account.id)
        tpl = await service.create_recurring_invoice(recurring_data(start_date=date(2024, 4, 1)))
        with pytest.raises(RecurringGenerationError) as exc_info:
            await service.generate_invoice(tpl.id, today=date(2024, 3, 31))
        assert exc_info.value.reason == GenerationBlockReason.NOT_DUE

    @pytest.mark.asyncio
    async def test_limit_completes_template(self, db, account):
        service = RecurringInvoiceService(db, account.id)
        tpl = await service.create_recurring_invoice(
            recurring_data(start_date=date(2024, 1, 1), occurrences_limit=2)
        )
        await service.generate_invoice(tpl.id, today=date(2024, 1, 1))
        await service.generate_invoice(tpl.id, today=date(2024, 2, 1))

        assert tpl.status == RecurringStatus.COMPLETED.value
        assert tpl.next_occurrence_date is None
        assert tpl.remaining_occurrences == 0

        with pytest.raises(RecurringGenerationError) as exc_info:
            await service.generate_invoice(tpl.id, today=date(2024, 3, 1))
        assert exc_info.value.reason == GenerationBlockReason.COMPLETED
        assert await invoice_count(db) == 2

    @pytest.mark.asyncio
    async def test_failed_generation_rolls_back(self, db, account):
        service = RecurringInvoiceService(db, account.id)
        tpl = await service.create_recurring_invoice(recurring_data())
        template_id = tpl.id

        with patch(
            "app.services.recurring_invoice_service.advance",
            side_effect=RuntimeError("boom"),
        ):
            with pytest.raises(RuntimeError):
                await service.generate_invoice(template_id, today=tpl.start_date)

        assert await invoice_count(db) == 0
        reloaded = (
            await db.execute(select(RecurringInvoice).where(RecurringInvoice.id == template_id))
        ).scalar_one()
        assert reloaded.occurrences_count == 0


# ── Sweep Tests ────────────────────────────────────────────────────────


class TestGenerateAllDue:
    @pytest.mark.asyncio
    async def test_generates_only_due_templates(self, db, account):
        service = RecurringInvoiceService(db, account.id)
        await service.create_recurring_invoice(recurring_data(name="Due", start_date=date(2024, 3, 1)))
        await service.create_recurring_invoice(recurring_data(name="Future", start_date=date(2024, 4, 1)))
        paused = await service.create_recurring_invoice(recurring_data(name="Paused", start_date=date(2024, 3, 1)))
        await service.pause(paused.id)

        generated = await service.generate_all_due(today=date(2024, 3, 15))
        assert len(generated) == 1
        assert generated[0].invoice_number == "INV-10001"

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_sweep(self, db, account):
        service = RecurringInvoiceService(db, account.id)
        first = await service.create_recurring_invoice(recurring_data(name="First", start_date=date(2024, 3, 1)))
        await service.create_recurring_invoice(recurring_data(name="Second", start_date=date(2024, 3, 2)))
        first_id = first.id

        real_advance = advance

        def flaky_advance(tpl, today):
            if tpl.id == first_id:
                raise RuntimeError("boom")
            return real_advance(tpl, today)

        with patch("app.services.recurring_invoice_service.advance", side_effect=flaky_advance):
            generated = await service.generate_all_due(today=date(2024, 3, 15))

        assert len(generated) == 1
        assert await invoice_count(db) == 1

    @pytest.mark.asyncio
    async def test_other_accounts_untouched(self, db, account, other_account):
        await RecurringInvoiceService(db, other_account.id).create_recurring_invoice(
            recurring_data(start_date=date(2024, 3, 1))
        )
        generated = await RecurringInvoiceService(db, account.id).generate_all_due(today=date(2024, 3, 15))
        assert generated == []


# ── Pause / Resume Tests ───────────────────────────────────────────────


class TestPauseResume:
    @pytest.mark.asyncio
    async def test_resume_keeps_next_occurrence(self, db, account):
        service = RecurringInvoiceService(db, account.id)
        tpl = await service.create_recurring_invoice(recurring_data(start_date=date(2024, 1, 15)))
        await service.pause(tpl.id)
        await service.resume(tpl.id)
        assert tpl.status == RecurringStatus.ACTIVE.value
        assert tpl.next_occurrence_date == date(2024, 1, 15)

    @pytest.mark.asyncio
    async def test_cannot_resume_active(self, db, account):
        service = RecurringInvoiceService(db, account.id)
        tpl = await service.create_recurring_invoice(recurring_data())
        with pytest.raises(InvalidTransitionError):
            await service.resume(tpl.id)

    @pytest.mark.asyncio
    async def test_cancelled_template_cannot_generate(self, db, account):
        service = RecurringInvoiceService(db, account.id)
        tpl = await service.create_recurring_invoice(recurring_data())
        await service.cancel(tpl.id)
        with pytest.raises(RecurringGenerationError) as exc_info:
            await service.generate_invoice(tpl.id, today=tpl.start_date)
        assert exc_info.value.reason == GenerationBlockReason.CANCELLED


# ── Concurrency Tests ──────────────────────────────────────────────────


class TestGenerationSerialization:
    @pytest.mark.asyncio
    async def test_second_session_cannot_generate_the_same_occurrence(self, session_factory, account):
        async with session_factory() as first, session_factory() as second:
            tpl = await RecurringInvoiceService(second, account.id).create_recurring_invoice(
                recurring_data(start_date=date(2024, 3, 1))
            )

            # The first session holds a copy from before the other run
            stale = await RecurringInvoiceService(first, account.id).get_template(tpl.id)
            assert stale.next_occurrence_date == date(2024, 3, 1)
            await first.commit()

            await RecurringInvoiceService(second, account.id).generate_invoice(tpl.id, today=date(2024, 3, 1))

            with pytest.raises(RecurringGenerationError) as exc_info:
                await RecurringInvoiceService(first, account.id).generate_invoice(tpl.id, today=date(2024, 3, 1))
            assert exc_info.value.reason == GenerationBlockReason.NOT_DUE

            assert await invoice_count(second) == 1
            await first.refresh(stale)
            assert stale.occurrences_count == 1
            assert stale.next_occurrence_date == date(2024, 4, 1)

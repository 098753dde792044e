"""Tests for reconciling processor subscription events onto accounts."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from app.core.time_utils import as_utc
from app.models.tenant import Account, Plan, ProcessedProcessorEvent, SubscriptionStatus
from app.schemas.processor_events import ProcessorEvent, ProcessorEventKind, ReconciliationOutcome
from app.services.subscription_reconciliation_service import (
    SubscriptionReconciliationService,
    map_status,
)


T0 = 1710000000  # 2024-03-09T16:00:00Z


def subscription_event(
    event_id="evt_1",
    event_type="customer.subscription.updated",
    created=T0,
    customer="cus_a",
    price="price_pro",
    status="active",
    trial_end=None,
):
    obj = {
        "id": "sub_1",
        "object": "subscription",
        "customer": customer,
        "status": status,
        "items": {"data": [{"price": {"id": price}}]} if price else {"data": []},
    }
    if trial_end is not None:
        obj["trial_end"] = trial_end
    return ProcessorEvent.from_payload({
        "id": event_id,
        "type": event_type,
        "created": created,
        "data": {"object": obj},
    })


def invoice_event(event_id, event_type, created=T0, customer="cus_a"):
    return ProcessorEvent.from_payload({
        "id": event_id,
        "type": event_type,
        "created": created,
        "data": {"object": {"id": "in_1", "customer": customer}},
    })


async def load_account(db, account_id) -> Account:
    return (
        await db.execute(
            select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
        )
    ).scalar_one()


# ── Envelope Tests ─────────────────────────────────────────────────────


class TestProcessorEvent:
    def test_from_payload(self):
        event = subscription_event(trial_end=T0 + 86400)
        assert event.kind == ProcessorEventKind.SUBSCRIPTION_UPDATED
        assert event.customer_ref == "cus_a"
        assert event.plan_price_ref == "price_pro"
        assert event.created == datetime(2024, 3, 9, 16, 0, tzinfo=timezone.utc)
        assert event.trial_end == datetime(2024, 3, 10, 16, 0, tzinfo=timezone.utc)

    def test_unknown_type_has_no_kind(self):
        event = ProcessorEvent.from_payload({"id": "evt_x", "type": "charge.refunded", "data": {"object": {}}})
        assert event.kind is None
        assert event.is_recognized is False

    def test_non_numeric_created_rejected(self):
        with pytest.raises(ValueError, match="created"):
            subscription_event(created="2024-03-09")

    def test_non_object_metadata_rejected(self):
        with pytest.raises(ValueError, match="metadata"):
            ProcessorEvent.from_payload({
                "id": "evt_y",
                "type": "checkout.session.completed",
                "data": {"object": {"metadata": "invoice_id=1"}},
            })


class TestStatusMapping:
    def test_known_statuses(self):
        assert map_status("trialing") == "trialing"
        assert map_status("past_due") == "past_due"
        assert map_status("unpaid") == "canceled"
        assert map_status("incomplete") == "past_due"
        assert map_status("incomplete_expired") == "canceled"

    def test_unknown_status_is_active(self):
        assert map_status("something_new") == "active"
        assert map_status(None) == "active"


# ── Reconciliation Tests ───────────────────────────────────────────────


class TestReconcile:
    @pytest.mark.asyncio
    async def test_subscription_updated_sets_plan_and_status(self, db, account, pro_plan):
        result = await SubscriptionReconciliationService(db).reconcile(
            subscription_event(trial_end=T0 + 14 * 86400)
        )
        assert result.status == ReconciliationOutcome.APPLIED
        assert result.account_id == account.id

        reloaded = await load_account(db, account.id)
        assert reloaded.plan_id == pro_plan.id
        assert reloaded.subscription_status == SubscriptionStatus.ACTIVE.value
        assert as_utc(reloaded.trial_ends_at) == datetime(2024, 3, 23, 16, 0, tzinfo=timezone.utc)
        assert as_utc(reloaded.subscription_synced_at) == datetime(2024, 3, 9, 16, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_replayed_event_is_duplicate(self, db, account, pro_plan):
        service = SubscriptionReconciliationService(db)
        first = await service.reconcile(subscription_event())
        second = await service.reconcile(subscription_event())
        assert first.status == ReconciliationOutcome.APPLIED
        assert second.status == ReconciliationOutcome.DUPLICATE

        count = (await db.execute(select(func.count()).select_from(ProcessedProcessorEvent))).scalar_one()
        assert count == 1

    @pytest.mark.asyncio
    async def test_older_event_is_stale(self, db, account, pro_plan):
        service = SubscriptionReconciliationService(db)
        newer = subscription_event(event_id="evt_new", created=T0 + 60, status="past_due")
        older = subscription_event(event_id="evt_old", created=T0, status="active")

        assert (await service.reconcile(newer)).status == ReconciliationOutcome.APPLIED
        assert (await service.reconcile(older)).status == ReconciliationOutcome.STALE

        reloaded = await load_account(db, account.id)
        assert reloaded.subscription_status == SubscriptionStatus.PAST_DUE.value

    @pytest.mark.asyncio
    async def test_event_with_same_timestamp_applies(self, db, account, pro_plan):
        service = SubscriptionReconciliationService(db)
        await service.reconcile(subscription_event(event_id="evt_1", status="past_due"))
        result = await service.reconcile(subscription_event(event_id="evt_2", status="active"))
        assert result.status == ReconciliationOutcome.APPLIED

    @pytest.mark.asyncio
    async def test_unknown_customer_is_unresolved(self, db, account):
        result = await SubscriptionReconciliationService(db).reconcile(
            subscription_event(customer="cus_nobody")
        )
        assert result.status == ReconciliationOutcome.UNRESOLVED
        assert result.account_id is None

    @pytest.mark.asyncio
    async def test_unknown_price_keeps_plan(self, db, account, free_plan):
        result = await SubscriptionReconciliationService(db).reconcile(
            subscription_event(price="price_mystery", status="active")
        )
        assert result.status == ReconciliationOutcome.APPLIED

        reloaded = await load_account(db, account.id)
        assert reloaded.plan_id == free_plan.id
        assert reloaded.subscription_status == SubscriptionStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_deleted_moves_account_to_free_plan(self, db, account, free_plan, pro_plan):
        service = SubscriptionReconciliationService(db)
        await service.reconcile(subscription_event(event_id="evt_1", trial_end=T0 + 86400))
        result = await service.reconcile(
            subscription_event(event_id="evt_2", event_type="customer.subscription.deleted",
                               created=T0 + 60, status="canceled")
        )
        assert result.status == ReconciliationOutcome.APPLIED

        reloaded = await load_account(db, account.id)
        assert reloaded.plan_id == free_plan.id
        assert reloaded.subscription_status == SubscriptionStatus.CANCELED.value
        assert reloaded.trial_ends_at is None

    @pytest.mark.asyncio
    async def test_deleted_without_free_plan_keeps_plan(self, db, pro_plan):
        account = Account(
            name="Solo", slug="solo", plan=pro_plan,
            subscription_status=SubscriptionStatus.ACTIVE.value,
            processor_customer_id="cus_solo",
        )
        db.add(account)
        await db.commit()

        await SubscriptionReconciliationService(db).reconcile(
            subscription_event(event_type="customer.subscription.deleted", customer="cus_solo", status="canceled")
        )
        reloaded = await load_account(db, account.id)
        assert reloaded.plan_id == pro_plan.id
        assert reloaded.subscription_status == SubscriptionStatus.CANCELED.value

    @pytest.mark.asyncio
    async def test_paused_and_resumed(self, db, account, pro_plan):
        service = SubscriptionReconciliationService(db)
        await service.reconcile(subscription_event(event_id="evt_1", event_type="customer.subscription.paused"))
        assert (await load_account(db, account.id)).subscription_status == SubscriptionStatus.PAUSED.value

        await service.reconcile(subscription_event(
            event_id="evt_2", event_type="customer.subscription.resumed", created=T0 + 60, status="active",
        ))
        assert (await load_account(db, account.id)).subscription_status == SubscriptionStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_trial_will_end_is_recorded_only(self, db, account):
        result = await SubscriptionReconciliationService(db).reconcile(
            subscription_event(event_type="customer.subscription.trial_will_end", status="active")
        )
        assert result.status == ReconciliationOutcome.RECORDED

        reloaded = await load_account(db, account.id)
        assert reloaded.subscription_status == SubscriptionStatus.TRIALING.value
        assert reloaded.subscription_synced_at is None

    @pytest.mark.asyncio
    async def test_payment_failed_then_recovered(self, db, account):
        service = SubscriptionReconciliationService(db)
        failed = await service.reconcile(invoice_event("evt_1", "invoice.payment_failed"))
        assert failed.status == ReconciliationOutcome.APPLIED
        assert (await load_account(db, account.id)).subscription_status == SubscriptionStatus.PAST_DUE.value

        recovered = await service.reconcile(invoice_event("evt_2", "invoice.payment_succeeded", created=T0 + 60))
        assert recovered.status == ReconciliationOutcome.APPLIED
        assert (await load_account(db, account.id)).subscription_status == SubscriptionStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_payment_succeeded_without_arrears_is_recorded(self, db, account):
        result = await SubscriptionReconciliationService(db).reconcile(
            invoice_event("evt_1", "invoice.payment_succeeded")
        )
        assert result.status == ReconciliationOutcome.RECORDED
        assert (await load_account(db, account.id)).subscription_status == SubscriptionStatus.TRIALING.value

    @pytest.mark.asyncio
    async def test_unknown_event_kind_ignored(self, db, account):
        event = ProcessorEvent.from_payload({
            "id": "evt_x", "type": "customer.created", "created": T0,
            "data": {"object": {"id": "cus_a", "customer": "cus_a"}},
        })
        result = await SubscriptionReconciliationService(db).reconcile(event)
        assert result.status == ReconciliationOutcome.IGNORED

    @pytest.mark.asyncio
    async def test_events_only_touch_matching_account(self, db, account, other_account, pro_plan):
        await SubscriptionReconciliationService(db).reconcile(subscription_event(customer="cus_b", status="past_due"))

        assert (await load_account(db, account.id)).subscription_status == SubscriptionStatus.TRIALING.value
        assert (await load_account(db, other_account.id)).subscription_status == SubscriptionStatus.PAST_DUE.value


class TestPlanSeed:
    @pytest.mark.asyncio
    async def test_free_plan_is_lowest_sort_order(self, db, free_plan):
        db.add(Plan(name="Legacy free", processor_price_id="price_legacy", price_cents=0, sort_order=5))
        await db.commit()
        plan = await SubscriptionReconciliationService(db).get_free_plan()
        assert plan.id == free_plan.id

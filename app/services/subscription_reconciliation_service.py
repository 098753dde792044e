"""
Subscription Reconciliation Service

Applies payment processor subscription events to local Account state.

Events arrive at least once and in any order, so every event goes through:
    1. Replay ledger - an event id already processed is a duplicate
    2. Account resolution by processor customer id - unknown customers are
       logged and skipped, never raised
    3. Ordering guard - an event created before the newest event already
       applied to the account is stale and does not touch state
    4. The handler for its kind, then the ledger entry, in one commit

Events handled:
- customer.subscription.created / updated: plan + status + trial end
- customer.subscription.deleted: canceled, moved to the free plan
- customer.subscription.paused / resumed
- customer.subscription.trial_will_end: logged only
- invoice.payment_failed: past_due
- invoice.payment_succeeded: past_due -> active
"""
import logging
from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.time_utils import as_utc
from app.models.tenant import Account, Plan, ProcessedProcessorEvent, SubscriptionStatus
from app.schemas.processor_events import (
    ProcessorEvent,
    ProcessorEventKind,
    ReconciliationOutcome,
    SUBSCRIPTION_EVENT_KINDS,
    WebhookResult,
)


logger = logging.getLogger(__name__)


# External status -> local status. Anything unlisted maps to active.
PROCESSOR_STATUS_MAP = {
    "trialing": SubscriptionStatus.TRIALING.value,
    "active": SubscriptionStatus.ACTIVE.value,
    "past_due": SubscriptionStatus.PAST_DUE.value,
    "canceled": SubscriptionStatus.CANCELED.value,
    "unpaid": SubscriptionStatus.CANCELED.value,
    "paused": SubscriptionStatus.PAUSED.value,
    "incomplete": SubscriptionStatus.PAST_DUE.value,
    "incomplete_expired": SubscriptionStatus.CANCELED.value,
}


def map_status(processor_status: Optional[str]) -> str:
    """Normalise a processor subscription status; unmapped values become active."""
    mapped = PROCESSOR_STATUS_MAP.get(processor_status or "")
    if mapped is None:
        logger.warning(f"Unmapped processor subscription status '{processor_status}', treating as active")
        return SubscriptionStatus.ACTIVE.value
    return mapped


class SubscriptionReconciliationService:
    """Keeps account subscription state in sync with processor events."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== Lookups ====================

    async def is_processed(self, event_id: str) -> bool:
        result = await self.db.execute(
            select(ProcessedProcessorEvent.event_id).where(ProcessedProcessorEvent.event_id == event_id)
        )
        return result.scalar_one_or_none() is not None

    async def find_account(self, customer_ref: Optional[str]) -> Optional[Account]:
        if not customer_ref:
            return None
        result = await self.db.execute(
            select(Account)
            .where(Account.processor_customer_id == customer_ref)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def find_plan(self, price_ref: Optional[str]) -> Optional[Plan]:
        if not price_ref:
            return None
        result = await self.db.execute(
            select(Plan).where(Plan.processor_price_id == price_ref)
        )
        return result.scalar_one_or_none()

    async def get_free_plan(self) -> Optional[Plan]:
        result = await self.db.execute(
            select(Plan)
            .where(
                and_(
                    Plan.is_active == True,  # noqa: E712
                    Plan.price_cents == 0,
                )
            )
            .order_by(Plan.sort_order)
            .limit(1)
        )
        return result.scalars().first()

    def is_stale(self, account: Account, event: ProcessorEvent) -> bool:
        if event.created is None or account.subscription_synced_at is None:
            return False
        return as_utc(event.created) < as_utc(account.subscription_synced_at)

    # ==================== Entry point ====================

    async def reconcile(self, event: ProcessorEvent) -> WebhookResult:
        """
        Apply one processor event. Never raises for unknown customers, unknown
        kinds or replays; database errors propagate after rollback so the
        processor retries the delivery.
        """
        def result(status: ReconciliationOutcome, account: Optional[Account] = None, detail: str = None):
            return WebhookResult(
                status=status,
                event_id=event.id,
                event_type=event.type,
                account_id=account.id if account is not None else None,
                detail=detail,
            )

        if event.kind not in SUBSCRIPTION_EVENT_KINDS:
            logger.info(f"Ignoring processor event {event.id} of type {event.type}")
            return result(ReconciliationOutcome.IGNORED, detail="Unhandled event type")

        if await self.is_processed(event.id):
            logger.info(f"Processor event {event.id} already processed, skipping")
            return result(ReconciliationOutcome.DUPLICATE)

        account = await self.find_account(event.customer_ref)
        if account is None:
            logger.warning(f"No account for processor customer {event.customer_ref} ({event.type} {event.id})")
            await self.db.rollback()
            return result(ReconciliationOutcome.UNRESOLVED, detail="Account not found")

        account_id = account.id
        if self.is_stale(account, event):
            logger.info(
                f"Processor event {event.id} for account {account_id} is older than the last "
                f"applied event, not applied"
            )
            outcome, detail = ReconciliationOutcome.STALE, "Older than the newest applied event"
        else:
            outcome, detail = await self._apply(account, event)
            if outcome == ReconciliationOutcome.APPLIED and event.created is not None:
                account.subscription_synced_at = event.created

        self.db.add(ProcessedProcessorEvent(
            event_id=event.id,
            event_type=event.type,
            customer_ref=event.customer_ref,
            outcome=outcome.value,
        ))
        try:
            await self.db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event won the ledger insert
            await self.db.rollback()
            logger.info(f"Processor event {event.id} processed concurrently, skipping")
            return WebhookResult(
                status=ReconciliationOutcome.DUPLICATE,
                event_id=event.id,
                event_type=event.type,
                account_id=account_id,
            )
        except Exception:
            await self.db.rollback()
            logger.error(f"Error processing {event.type} ({event.id}) for account {account_id}")
            raise

        return result(outcome, account, detail)

    async def _apply(self, account: Account, event: ProcessorEvent):
        kind = event.kind
        if kind in (ProcessorEventKind.SUBSCRIPTION_CREATED, ProcessorEventKind.SUBSCRIPTION_UPDATED):
            return await self._handle_subscription_changed(account, event)
        if kind == ProcessorEventKind.SUBSCRIPTION_DELETED:
            return await self._handle_subscription_deleted(account)
        if kind == ProcessorEventKind.SUBSCRIPTION_PAUSED:
            account.subscription_status = SubscriptionStatus.PAUSED.value
            logger.info(f"Account {account.id} subscription paused")
            return ReconciliationOutcome.APPLIED, None
        if kind == ProcessorEventKind.SUBSCRIPTION_RESUMED:
            account.subscription_status = map_status(event.status)
            logger.info(f"Account {account.id} subscription resumed ({account.subscription_status})")
            return ReconciliationOutcome.APPLIED, None
        if kind == ProcessorEventKind.TRIAL_WILL_END:
            logger.info(f"Account {account.id} trial ending at {event.trial_end or account.trial_ends_at}")
            return ReconciliationOutcome.RECORDED, "Trial ending soon"
        if kind == ProcessorEventKind.INVOICE_PAYMENT_FAILED:
            account.subscription_status = SubscriptionStatus.PAST_DUE.value
            logger.warning(f"Account {account.id} payment failed for processor invoice {event.object_id}")
            return ReconciliationOutcome.APPLIED, None
        if kind == ProcessorEventKind.INVOICE_PAYMENT_SUCCEEDED:
            if account.subscription_status == SubscriptionStatus.PAST_DUE.value:
                account.subscription_status = SubscriptionStatus.ACTIVE.value
                logger.info(f"Account {account.id} payment recovered, status now active")
                return ReconciliationOutcome.APPLIED, None
            return ReconciliationOutcome.RECORDED, "No status change"
        return ReconciliationOutcome.IGNORED, "Unhandled event type"

    async def _handle_subscription_changed(self, account: Account, event: ProcessorEvent):
        previous_status = account.subscription_status
        plan = await self.find_plan(event.plan_price_ref)
        if plan is not None:
            account.plan_id = plan.id
            account.plan = plan
        elif event.plan_price_ref:
            logger.warning(
                f"Unknown processor price {event.plan_price_ref} for account {account.id}, keeping current plan"
            )

        account.subscription_status = map_status(event.status)
        if event.trial_end is not None:
            account.trial_ends_at = event.trial_end

        logger.info(
            f"Account {account.id} subscription {event.type.rsplit('.', 1)[-1]}: "
            f"{previous_status} -> {account.subscription_status}"
            f"{f' on {plan.name}' if plan is not None else ''}"
        )
        return ReconciliationOutcome.APPLIED, None

    async def _handle_subscription_deleted(self, account: Account):
        free_plan = await self.get_free_plan()
        if free_plan is not None:
            account.plan_id = free_plan.id
            account.plan = free_plan
        else:
            logger.warning(f"No free plan configured; account {account.id} keeps its current plan")

        account.subscription_status = SubscriptionStatus.CANCELED.value
        account.trial_ends_at = None
        logger.info(f"Account {account.id} subscription canceled, downgraded to free plan")
        return ReconciliationOutcome.APPLIED, None

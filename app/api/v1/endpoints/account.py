"""
Account API Endpoints

Read-only view of the calling account's plan and subscription. Plan changes
start at the processor's checkout and arrive here through webhooks.
"""
from fastapi import APIRouter
from sqlalchemy import select

from app.api.deps import DB, CurrentAccountId
from app.models.tenant import Account
from app.schemas.account import SubscriptionStatusResponse


router = APIRouter(tags=["Account"])


@router.get("/account/subscription", response_model=SubscriptionStatusResponse)
async def get_subscription(db: DB, account_id: CurrentAccountId):
    result = await db.execute(select(Account).where(Account.id == account_id))
    return result.scalar_one()

from typing import Annotated
import uuid
import logging

from fastapi import Depends, HTTPException, Header, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.core.exceptions import (
    BillingError,
    DocumentNotFoundError,
    InvalidLineItemError,
    WebhookSignatureError,
)
from app.models.tenant import Account


logger = logging.getLogger(__name__)


DB = Annotated[AsyncSession, Depends(get_db)]


async def get_current_account_id(
    db: DB,
    x_account_id: Annotated[str, Header(alias="X-Account-ID")],
) -> uuid.UUID:
    """
    Dependency resolving the account a request acts on.

    Authentication happens upstream; this only checks that the header names
    an existing account.
    """
    try:
        account_id = uuid.UUID(x_account_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Account-ID must be a UUID",
        )

    result = await db.execute(select(Account.id).where(Account.id == account_id))
    if result.scalar_one_or_none() is None:
        logger.warning(f"Request for unknown account {account_id}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")

    return account_id


CurrentAccountId = Annotated[uuid.UUID, Depends(get_current_account_id)]


def billing_http_error(exc: BillingError) -> HTTPException:
    """
    Translate a domain error into an HTTPException.

    - DocumentNotFoundError -> 404
    - InvalidLineItemError  -> 400
    - WebhookSignatureError -> 401
    - any other BillingError (transitions, generation, conversion) -> 422
    """
    if isinstance(exc, DocumentNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, InvalidLineItemError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, WebhookSignatureError):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))

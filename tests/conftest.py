"""
Pytest fixtures for the billing core tests.

Provides a fresh in-memory database per test plus plan and account fixtures.
Input builders live in tests/factories.py.
"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.database import Base, custom_json_dumps, import_models
from app.models.tenant import Account, Plan, SubscriptionStatus


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite database with the full schema."""
    import_models()
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        json_serializer=custom_json_dumps,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def free_plan(db):
    plan = Plan(name="Free", processor_price_id="price_free", price_cents=0, sort_order=0)
    db.add(plan)
    await db.commit()
    return plan


@pytest_asyncio.fixture
async def pro_plan(db):
    plan = Plan(name="Pro", processor_price_id="price_pro", price_cents=2900, sort_order=1)
    db.add(plan)
    await db.commit()
    return plan


@pytest_asyncio.fixture
async def account(db, free_plan):
    """Account A, on the free plan, linked to processor customer cus_a."""
    account = Account(
        name="Acme Studio",
        slug="acme",
        plan=free_plan,
        subscription_status=SubscriptionStatus.TRIALING.value,
        processor_customer_id="cus_a",
    )
    db.add(account)
    await db.commit()
    return account


@pytest_asyncio.fixture
async def other_account(db, free_plan):
    """Account B, used for isolation checks."""
    account = Account(
        name="Beta Works",
        slug="beta",
        plan=free_plan,
        subscription_status=SubscriptionStatus.ACTIVE.value,
        processor_customer_id="cus_b",
    )
    db.add(account)
    await db.commit()
    return account

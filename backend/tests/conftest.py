"""Shared fixtures: an in-memory ledger store and a small seeded portfolio."""

from datetime import date
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from loanbook.database import Base
from loanbook.models import FacilityType
from loanbook.services.ledger import entities, lifecycle
from loanbook.services.ledger.memory_store import MemoryLedgerStore
from loanbook.services.ledger.records import DrawCommand
from loanbook.services.ledger.sql_store import SqlLedgerStore

ORG = "org-alpha"
OTHER_ORG = "org-beta"
USER = "user-1"

START = date(2025, 1, 1)
DUE = date(2025, 4, 1)


@pytest.fixture
def store():
    return MemoryLedgerStore()


@pytest_asyncio.fixture
async def sql_store():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    store = SqlLedgerStore(
        async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False), engine=engine
    )
    yield store
    await store.close()


async def make_bank(store, org=ORG, code="RJHI", name="Al Rajhi Bank"):
    return await entities.create_bank(store, org, code, name, user_id=USER)


async def make_facility(
    store,
    bank,
    org=ORG,
    limit="1000000",
    facility_type=FacilityType.REVOLVING,
    max_revolving_period=None,
):
    return await entities.create_facility(
        store,
        org,
        bank_id=bank.id,
        facility_type=facility_type,
        credit_limit=limit,
        cost_of_funding="5.5",
        start_date=date(2024, 1, 1),
        expiry_date=date(2026, 12, 31),
        max_revolving_period=max_revolving_period,
        user_id=USER,
    )


async def draw(store, facility, amount="100000", org=ORG, **overrides):
    fields = dict(
        facility_id=facility.id,
        amount=Decimal(amount),
        sibor_rate=Decimal("5.0"),
        margin=Decimal("1.5"),
        start_date=START,
        due_date=DUE,
    )
    fields.update(overrides)
    return await lifecycle.create_loan(store, org, DrawCommand(**fields), user_id=USER)


@pytest_asyncio.fixture
async def bank(store):
    return await make_bank(store)


@pytest_asyncio.fixture
async def facility(store, bank):
    return await make_facility(store, bank)


@pytest_asyncio.fixture
async def loan(store, facility):
    return await draw(store, facility)

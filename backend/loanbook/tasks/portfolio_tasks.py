"""Celery tasks for daily ledger maintenance.

Tasks: overdue sweep, interest accrual, portfolio snapshot.  Each runs once
per organization; a failure in one organization is logged and the rest
still run.
"""

import asyncio
import logging
from datetime import date, datetime
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from loanbook.tasks import celery_app
from loanbook.config import settings
from loanbook.services.ledger.errors import LedgerError
from loanbook.services.ledger.interest import accrue_organization_interest
from loanbook.services.ledger.lifecycle import mark_overdue_loans
from loanbook.services.ledger.memory_store import MemoryLedgerStore
from loanbook.services.ledger.snapshots import capture_portfolio_snapshot
from loanbook.services.ledger.sql_store import SqlLedgerStore
from loanbook.services.ledger.store import LedgerStore

__all__ = ["sweep_overdue_loans", "accrue_daily_interest", "capture_daily_snapshots"]

logger = logging.getLogger(__name__)


def _get_store() -> LedgerStore:
    if settings.storage_backend == "memory":
        return MemoryLedgerStore()
    engine = create_async_engine(settings.database_url)
    return SqlLedgerStore(
        async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False), engine=engine
    )


def _business_date() -> date:
    return datetime.now(ZoneInfo(settings.timezone)).date()


async def _organization_ids(store: LedgerStore) -> list[str]:
    async with store.unit_of_work() as session:
        return await session.list_organization_ids()


async def run_overdue_sweep(store: LedgerStore, as_of: date) -> dict:
    marked = 0
    failed: list[str] = []
    for org_id in await _organization_ids(store):
        try:
            marked += len(await mark_overdue_loans(store, org_id, as_of))
        except LedgerError as e:
            logger.error("Overdue sweep failed for org %s: %s", org_id, e)
            failed.append(org_id)
    return {"as_of": as_of.isoformat(), "marked": marked, "failed": failed}


async def run_interest_accrual(store: LedgerStore, as_of: date) -> dict:
    posted = 0
    failed: list[str] = []
    for org_id in await _organization_ids(store):
        try:
            posted += await accrue_organization_interest(store, org_id, as_of)
        except LedgerError as e:
            logger.error("Interest accrual failed for org %s: %s", org_id, e)
            failed.append(org_id)
    return {"as_of": as_of.isoformat(), "posted": posted, "failed": failed}


async def run_daily_snapshots(store: LedgerStore, as_of: date) -> dict:
    captured = 0
    failed: list[str] = []
    for org_id in await _organization_ids(store):
        try:
            await capture_portfolio_snapshot(store, org_id, as_of)
            captured += 1
        except LedgerError as e:
            logger.error("Snapshot failed for org %s: %s", org_id, e)
            failed.append(org_id)
    return {"as_of": as_of.isoformat(), "captured": captured, "failed": failed}


def _run_with_store(job) -> dict:
    async def _run():
        store = _get_store()
        try:
            return await job(store, _business_date())
        finally:
            await store.close()

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(_run())
    finally:
        loop.close()


@celery_app.task(name="loanbook.tasks.portfolio_tasks.sweep_overdue_loans")
def sweep_overdue_loans() -> dict:
    """Move active loans past their due date to overdue."""
    result = _run_with_store(run_overdue_sweep)
    logger.info("Overdue sweep: %s", result)
    return result


@celery_app.task(name="loanbook.tasks.portfolio_tasks.accrue_daily_interest")
def accrue_daily_interest() -> dict:
    """Post interest accrued up to today on every open loan."""
    result = _run_with_store(run_interest_accrual)
    logger.info("Interest accrual: %s", result)
    return result


@celery_app.task(name="loanbook.tasks.portfolio_tasks.capture_daily_snapshots")
def capture_daily_snapshots() -> dict:
    """Record the end-of-day portfolio snapshot for every organization."""
    result = _run_with_store(run_daily_snapshots)
    logger.info("Portfolio snapshots: %s", result)
    return result

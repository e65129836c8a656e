"""Daily portfolio snapshots.

One snapshot per organization per date.  Capturing again for a date that
already has one returns the stored snapshot unchanged.
"""

import logging
from datetime import date

from loanbook.services.ledger.money import money_str
from loanbook.services.ledger.portfolio import read_portfolio, summarize
from loanbook.services.ledger.records import SnapshotRecord
from loanbook.services.ledger.store import LedgerStore

logger = logging.getLogger(__name__)


MONEY_KEYS = ("outstanding", "credit_limit", "collateral_value")
RATIO_KEYS = ("utilization", "facility_ltv", "outstanding_ltv")


def _exposure_json(entry: dict) -> dict:
    data = dict(entry)
    for key in MONEY_KEYS:
        data[key] = money_str(entry[key])
    for key in RATIO_KEYS:
        data[key] = str(entry[key])
    return data


async def capture_portfolio_snapshot(
    store: LedgerStore, organization_id: str, snapshot_date: date
) -> SnapshotRecord:
    async with store.unit_of_work() as session:
        existing = await session.get_snapshot(organization_id, snapshot_date)
        if existing is not None:
            logger.info("Snapshot replay for org %s on %s", organization_id, snapshot_date)
            return existing

        summary = summarize(await read_portfolio(session, organization_id))
        snapshot = await session.add_snapshot(
            SnapshotRecord(
                organization_id=organization_id,
                snapshot_date=snapshot_date,
                total_outstanding=summary["total_outstanding"],
                total_credit_limit=summary["total_credit_limit"],
                total_collateral_value=summary["total_collateral_value"],
                portfolio_ltv=summary["portfolio_ltv"],
                active_loans_count=summary["active_loans_count"],
                bank_exposures=[_exposure_json(e) for e in summary["bank_exposures"]],
                metrics={
                    "available_credit": money_str(summary["available_credit"]),
                    "utilization": str(summary["utilization"]),
                    "facility_ltv": str(summary["facility_ltv"]),
                    "outstanding_ltv": str(summary["outstanding_ltv"]),
                },
            )
        )

    logger.info(
        "Captured snapshot for org %s on %s: outstanding %s across %d loans",
        organization_id, snapshot_date, snapshot.total_outstanding, snapshot.active_loans_count,
    )
    return snapshot


async def list_portfolio_snapshots(
    store: LedgerStore,
    organization_id: str,
    *,
    date_from: date | None = None,
    date_to: date | None = None,
) -> list[SnapshotRecord]:
    async with store.unit_of_work() as session:
        return await session.list_snapshots(organization_id, date_from=date_from, date_to=date_to)

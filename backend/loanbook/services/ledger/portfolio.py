"""Portfolio aggregation: exposure, utilization and LTV across banks.

Summaries are computed on demand from one consistent read (a single unit of
work), never pushed or cached.  Outstanding is the sum of open loan amounts.
All ratios are percentages quantized to 2 dp; a zero denominator gives 0.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from loanbook.models import FacilityType
from loanbook.services.ledger.errors import LedgerValidationError
from loanbook.services.ledger.money import ZERO, percentage, to_money
from loanbook.services.ledger.records import OPEN_LOAN_STATUSES, BankRecord
from loanbook.services.ledger.store import LedgerStore, StoreSession

logger = logging.getLogger(__name__)

TOTAL_METRICS = ("total_debt", "utilization", "available_credit")


# ── Helpers ──────────────────────────────────────────────────

def _match_bank(banks: list[BankRecord], query: str | None) -> BankRecord | None:
    """Bank whose name contains *query* or whose code equals it (case-insensitive)."""
    if not query:
        return None
    needle = query.strip().lower()
    for bank in banks:
        if needle in bank.name.lower() or bank.code.lower() == needle:
            return bank
    return None


async def read_portfolio(session: StoreSession, organization_id: str) -> dict[str, Any]:
    """Everything the aggregations need, read inside one unit."""
    banks = await session.list_banks(organization_id, include_inactive=True)
    facilities = await session.list_facilities(organization_id)
    loans = await session.list_loans(organization_id, statuses=OPEN_LOAN_STATUSES)
    collateral = await session.list_collateral(organization_id)
    assignments = await session.list_collateral_assignments(organization_id)
    credit_lines = await session.list_credit_lines(organization_id, include_inactive=True)
    all_facilities = await session.list_facilities(organization_id, include_inactive=True)
    return {
        "banks": {b.id: b for b in banks},
        "facilities": facilities,
        "facility_bank": {f.id: f.bank_id for f in all_facilities},
        "credit_line_facility": {c.id: c.facility_id for c in credit_lines},
        "loans": loans,
        "collateral": {c.id: c for c in collateral},
        "assignments": assignments,
    }


def _assignment_bank(assignment, data: dict[str, Any]) -> str | None:
    if assignment.bank_id:
        return assignment.bank_id
    facility_id = assignment.facility_id
    if not facility_id and assignment.credit_line_id:
        facility_id = data["credit_line_facility"].get(assignment.credit_line_id)
    if facility_id:
        return data["facility_bank"].get(facility_id)
    return None


def _bank_exposures(data: dict[str, Any]) -> list[dict[str, Any]]:
    buckets: dict[str, dict[str, Any]] = {}

    def bucket(bank_id: str) -> dict[str, Any]:
        if bank_id not in buckets:
            bank = data["banks"].get(bank_id)
            buckets[bank_id] = {
                "bank_id": bank_id,
                "bank_name": bank.name if bank else "Unknown",
                "bank_code": bank.code if bank else None,
                "outstanding": ZERO,
                "credit_limit": ZERO,
                "collateral_value": ZERO,
            }
        return buckets[bank_id]

    # 1. Seed from active facilities so banks with no loans still appear.
    for facility in data["facilities"]:
        bucket(facility.bank_id)["credit_limit"] += facility.credit_limit

    # 2. Outstanding per bank.
    for loan in data["loans"]:
        bank_id = data["facility_bank"].get(loan.facility_id)
        if bank_id:
            bucket(bank_id)["outstanding"] += loan.amount

    # 3. Collateral per bank, each active item counted once per bank.
    counted: set[tuple[str, str]] = set()
    for assignment in data["assignments"]:
        item = data["collateral"].get(assignment.collateral_id)
        bank_id = _assignment_bank(assignment, data)
        if item is None or bank_id is None or (bank_id, item.id) in counted:
            continue
        counted.add((bank_id, item.id))
        bucket(bank_id)["collateral_value"] += item.current_value

    # 4. Ratios.
    exposures = []
    for entry in buckets.values():
        entry["utilization"] = percentage(entry["outstanding"], entry["credit_limit"])
        entry["facility_ltv"] = percentage(entry["collateral_value"], entry["credit_limit"])
        entry["outstanding_ltv"] = percentage(entry["collateral_value"], entry["outstanding"])
        exposures.append(entry)

    exposures.sort(key=lambda e: (-e["outstanding"], e["bank_name"]))
    return exposures


def summarize(data: dict[str, Any]) -> dict[str, Any]:
    total_outstanding = sum((loan.amount for loan in data["loans"]), ZERO)
    total_credit_limit = sum((f.credit_limit for f in data["facilities"]), ZERO)

    pledged = {a.collateral_id for a in data["assignments"]}
    total_collateral_value = sum(
        (c.current_value for c in data["collateral"].values() if c.id in pledged), ZERO
    )

    return {
        "total_outstanding": total_outstanding,
        "total_credit_limit": total_credit_limit,
        "available_credit": max(ZERO, total_credit_limit - total_outstanding),
        "total_collateral_value": total_collateral_value,
        "portfolio_ltv": percentage(total_outstanding, total_collateral_value),
        "facility_ltv": percentage(total_collateral_value, total_credit_limit),
        "outstanding_ltv": percentage(total_collateral_value, total_outstanding),
        "utilization": percentage(total_outstanding, total_credit_limit),
        "active_loans_count": len(data["loans"]),
        "bank_exposures": _bank_exposures(data),
    }


# ── Public API ───────────────────────────────────────────────

async def get_user_portfolio_summary(store: LedgerStore, organization_id: str) -> dict[str, Any]:
    """Organization-wide totals, portfolio LTV and per-bank exposures."""
    async with store.unit_of_work() as session:
        data = await read_portfolio(session, organization_id)
    return summarize(data)


async def check_facility_availability(
    store: LedgerStore,
    organization_id: str,
    *,
    bank_query: str | None = None,
    facility_type: FacilityType | str | None = None,
) -> list[dict[str, Any]]:
    """Limit, utilized and available amount for each active facility."""
    async with store.unit_of_work() as session:
        data = await read_portfolio(session, organization_id)

    facilities = data["facilities"]
    if bank_query:
        bank = _match_bank(list(data["banks"].values()), bank_query)
        if bank is not None:
            facilities = [f for f in facilities if f.bank_id == bank.id]
    if facility_type:
        try:
            wanted = FacilityType(facility_type)
        except ValueError:
            raise LedgerValidationError(f"Unknown facility type {facility_type!r}", field="facility_type")
        facilities = [f for f in facilities if f.facility_type == wanted]

    results = []
    for facility in facilities:
        utilized = sum(
            (loan.amount for loan in data["loans"] if loan.facility_id == facility.id), ZERO
        )
        bank = data["banks"].get(facility.bank_id)
        results.append({
            "facility_id": facility.id,
            "facility_type": facility.facility_type.value,
            "bank_id": facility.bank_id,
            "bank_name": bank.name if bank else None,
            "limit": facility.credit_limit,
            "utilized": utilized,
            "available": max(ZERO, facility.credit_limit - utilized),
            "utilization_pct": percentage(utilized, facility.credit_limit),
            "expiry_date": facility.expiry_date,
        })
    return results


async def calculate_totals(
    store: LedgerStore,
    organization_id: str,
    metric: str,
    *,
    bank_query: str | None = None,
) -> dict[str, Any]:
    """One headline figure: total_debt, utilization (%) or available_credit."""
    if metric not in TOTAL_METRICS:
        raise LedgerValidationError(
            f"Unknown metric {metric!r}; expected one of {', '.join(TOTAL_METRICS)}", field="metric"
        )

    async with store.unit_of_work() as session:
        data = await read_portfolio(session, organization_id)

    loans = data["loans"]
    facilities = data["facilities"]
    bank = _match_bank(list(data["banks"].values()), bank_query)
    if bank is not None:
        facilities = [f for f in facilities if f.bank_id == bank.id]
        facility_ids = {f.id for f in facilities}
        loans = [loan for loan in loans if loan.facility_id in facility_ids]

    outstanding = sum((loan.amount for loan in loans), ZERO)
    limit = sum((f.credit_limit for f in facilities), ZERO)

    result: dict[str, Any] = {"metric": metric, "bank_id": bank.id if bank else None}
    if metric == "total_debt":
        result.update(value=outstanding, unit="currency")
    elif metric == "utilization":
        result.update(value=percentage(outstanding, limit), unit="percentage")
    else:
        result.update(value=max(ZERO, limit - outstanding), unit="currency")
    return result


async def analyze_bank_concentration(
    store: LedgerStore,
    organization_id: str,
    *,
    threshold: Decimal | float | str = 30,
) -> dict[str, Any]:
    """Share of total exposure held by each bank, flagging banks above *threshold* %."""
    limit_pct = to_money(str(threshold), "threshold")

    async with store.unit_of_work() as session:
        data = await read_portfolio(session, organization_id)

    exposures = [e for e in _bank_exposures(data) if e["outstanding"] > 0]
    total_exposure = sum((e["outstanding"] for e in exposures), ZERO)

    concentration = []
    for entry in exposures:
        share = percentage(entry["outstanding"], total_exposure)
        concentration.append({
            "bank_id": entry["bank_id"],
            "bank_name": entry["bank_name"],
            "exposure": entry["outstanding"],
            "concentration": share,
            "at_risk": share > limit_pct,
        })

    at_risk = [c["bank_name"] for c in concentration if c["at_risk"]]
    if at_risk:
        logger.info("Concentration above %s%% for org %s: %s", limit_pct, organization_id, ", ".join(at_risk))

    return {
        "threshold": limit_pct,
        "total_exposure": total_exposure,
        "concentration": concentration,
    }

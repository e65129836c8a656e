"""Interest accrual and revolving-period usage.

Simple interest on the outstanding principal at ``bank_rate`` (an annual
percentage), counted in actual days over a 360- or 365-day year.
"""

import logging
from dataclasses import replace
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from loanbook.models import FacilityType, InterestBasis, LoanStatus, TransactionType
from loanbook.services.ledger.balance import balance_in_session
from loanbook.services.ledger.errors import InvalidStateTransitionError, NotFoundError
from loanbook.services.ledger.money import HUNDRED, MONEY_PLACES, ZERO, money_str, percentage
from loanbook.services.ledger.records import (
    OPEN_LOAN_STATUSES,
    LoanRecord,
    NewTransaction,
    TransactionFilter,
    TransactionRecord,
)
from loanbook.services.ledger.store import LedgerStore
from loanbook.services.ledger.transactions import post_transaction

logger = logging.getLogger(__name__)

DAYS_IN_YEAR = {
    InterestBasis.ACTUAL_360: Decimal("360"),
    InterestBasis.ACTUAL_365: Decimal("365"),
}

DEFAULT_REVOLVING_PERIOD = 360

# Usage thresholds in percent of the revolving period.
WARNING_PCT = Decimal("70")
CRITICAL_PCT = Decimal("90")
EXPIRED_PCT = Decimal("100")


def interest_for_period(principal: Decimal, annual_rate: Decimal, days: int, basis: InterestBasis) -> Decimal:
    if days <= 0 or principal <= 0:
        return ZERO
    amount = principal * (annual_rate / HUNDRED) * Decimal(days) / DAYS_IN_YEAR[basis]
    return amount.quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)


def accrual_start(loan: LoanRecord) -> date:
    return loan.last_accrual_date or loan.start_date


def accrued_interest(loan: LoanRecord, as_of: date, principal: Decimal | None = None) -> Decimal:
    """Interest since the last accrual (or the start date) up to *as_of*."""
    days = (as_of - accrual_start(loan)).days
    return interest_for_period(
        loan.amount if principal is None else principal, loan.bank_rate, days, loan.interest_basis
    )


def projected_interest(loan: LoanRecord) -> Decimal:
    """Interest over the full term, start date to due date."""
    days = (loan.due_date - loan.start_date).days
    return interest_for_period(loan.amount, loan.bank_rate, days, loan.interest_basis)


def accrual_key(loan_id: str, as_of: date) -> str:
    return f"ACCRUE:{loan_id}:{as_of.isoformat()}"


async def get_loan_interest(
    store: LedgerStore, organization_id: str, loan_id: str, as_of: date
) -> dict[str, Any]:
    async with store.unit_of_work() as session:
        loan = await session.get_loan(organization_id, loan_id)
        if loan is None:
            raise NotFoundError("loan", loan_id)
        balance = await balance_in_session(session, loan)

    return {
        "loan_id": loan.id,
        "interest_basis": loan.interest_basis.value,
        "bank_rate": str(loan.bank_rate),
        "accrual_start": accrual_start(loan),
        "as_of": as_of,
        "days_accrued": max(0, (as_of - accrual_start(loan)).days),
        "accrued": accrued_interest(loan, as_of, balance.principal),
        "posted_interest": balance.interest,
        "projected_total": projected_interest(loan),
    }


async def post_interest_accrual(
    store: LedgerStore,
    organization_id: str,
    loan_id: str,
    as_of: date,
    *,
    user_id: str | None = None,
) -> TransactionRecord | None:
    """Post interest accrued up to *as_of* and advance ``last_accrual_date``.

    Returns None when nothing has accrued.  Posting twice for the same date
    returns the first posting.
    """
    async with store.unit_of_work() as session:
        loan = await session.get_loan(organization_id, loan_id, for_update=True)
        if loan is None:
            raise NotFoundError("loan", loan_id)

        key = accrual_key(loan.id, as_of)
        prior = await session.find_transaction_by_key(organization_id, key)
        if prior is not None:
            logger.info("Accrual replay for loan %s as of %s", loan.id, as_of)
            return prior

        if not loan.is_open:
            raise InvalidStateTransitionError("loan", loan.id, loan.status.value, "accrue interest on")

        start = accrual_start(loan)
        balance = await balance_in_session(session, loan)
        amount = accrued_interest(loan, as_of, balance.principal)
        if amount <= 0:
            return None

        facility = await session.get_facility(organization_id, loan.facility_id)
        tx, _ = await post_transaction(
            session,
            organization_id,
            NewTransaction(
                type=TransactionType.INTEREST,
                amount=amount,
                date=as_of,
                loan_id=loan.id,
                facility_id=loan.facility_id,
                bank_id=facility.bank_id if facility else None,
                reference=f"ACCRUE-{loan.id[:8]}",
                allocation={
                    "from": start.isoformat(),
                    "to": as_of.isoformat(),
                    "days": (as_of - start).days,
                    "rate": str(loan.bank_rate),
                    "basis": loan.interest_basis.value,
                    "principal": money_str(balance.principal),
                },
                idempotency_key=key,
            ),
            user_id=user_id,
        )
        await session.save_loan(replace(loan, last_accrual_date=as_of))

    logger.info("Accrued %s interest on loan %s (%s to %s)", amount, loan_id, start, as_of)
    return tx


async def accrue_organization_interest(store: LedgerStore, organization_id: str, as_of: date) -> int:
    """Accrue every open loan of the organization; returns the number of postings."""
    async with store.unit_of_work() as session:
        loans = await session.list_loans(organization_id, statuses=OPEN_LOAN_STATUSES)

    posted = 0
    for loan in loans:
        if await post_interest_accrual(store, organization_id, loan.id, as_of) is not None:
            posted += 1
    return posted


# ── Revolving usage ──────────────────────────────────────────

def usage_status(usage_pct: Decimal) -> str:
    if usage_pct >= EXPIRED_PCT:
        return "expired"
    if usage_pct >= CRITICAL_PCT:
        return "critical"
    if usage_pct >= WARNING_PCT:
        return "warning"
    return "available"


async def get_revolving_usage(store: LedgerStore, organization_id: str, loan_id: str) -> dict[str, Any]:
    """Revolving-period days consumed on the loan's facility.

    Days used is the sum of (due date - start date) across the facility's open
    loans, measured against ``max_revolving_period`` (default 360 days).
    """
    async with store.unit_of_work() as session:
        loan = await session.get_loan(organization_id, loan_id)
        if loan is None:
            raise NotFoundError("loan", loan_id)
        facility = await session.get_facility(organization_id, loan.facility_id)
        if facility is None:
            raise NotFoundError("facility", loan.facility_id)
        loans = await session.list_loans(organization_id, statuses=OPEN_LOAN_STATUSES)

    max_period = facility.max_revolving_period or DEFAULT_REVOLVING_PERIOD
    days_used = sum(
        (l.due_date - l.start_date).days for l in loans if l.facility_id == facility.id
    )
    usage_pct = percentage(Decimal(days_used), Decimal(max_period))
    status = usage_status(usage_pct)

    return {
        "loan_id": loan.id,
        "facility_id": facility.id,
        "is_revolving": facility.facility_type == FacilityType.REVOLVING,
        "max_revolving_period": max_period,
        "days_used": days_used,
        "days_remaining": max(0, max_period - days_used),
        "usage_pct": usage_pct,
        "status": status,
        "can_revolve": (
            facility.facility_type == FacilityType.REVOLVING
            and loan.status in (LoanStatus.ACTIVE, LoanStatus.OVERDUE)
            and status != "expired"
        ),
    }

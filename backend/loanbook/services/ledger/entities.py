"""Entity commands for banks, facilities, credit lines and collateral.

All reads and writes are scoped by organization.  An entity owned by another
organization is reported exactly like a missing one.  Nothing here removes a
row: facilities, credit lines and collateral are deactivated, banks and
collateral assignments can be toggled.
"""

import logging
from dataclasses import replace
from datetime import date
from typing import Iterable

from loanbook.models import CollateralType, FacilityType, LoanStatus, RecordStatus
from loanbook.services.ledger.audit import write_audit
from loanbook.services.ledger.errors import (
    InvalidStateTransitionError,
    LedgerValidationError,
    NotFoundError,
)
from loanbook.services.ledger.money import non_negative_money, to_rate
from loanbook.services.ledger.records import (
    DEACTIVATE_ONLY_TRANSITIONS,
    OPEN_LOAN_STATUSES,
    TOGGLE_TRANSITIONS,
    BankRecord,
    CollateralAssignmentRecord,
    CollateralRecord,
    CreditLineRecord,
    FacilityRecord,
    FacilityUpdate,
    LoanRecord,
    check_transition,
    record_snapshot,
)
from loanbook.services.ledger.store import LedgerStore
from loanbook.services.ledger.transactions import resolve_bank

logger = logging.getLogger(__name__)


def _target_status(active: bool) -> RecordStatus:
    return RecordStatus.ACTIVE if active else RecordStatus.INACTIVE


# ── Banks ────────────────────────────────────────────────────

async def list_banks(store: LedgerStore, organization_id: str, *, include_inactive: bool = False) -> list[BankRecord]:
    """Global banks plus the organization's own banks."""
    async with store.unit_of_work() as session:
        return await session.list_banks(organization_id, include_inactive=include_inactive)


def _clean_bank_fields(code: str, name: str) -> tuple[str, str]:
    code = (code or "").strip().upper()
    name = (name or "").strip()
    if not code:
        raise LedgerValidationError("Bank code is required", field="code")
    if not name:
        raise LedgerValidationError("Bank name is required", field="name")
    return code, name


async def create_bank(
    store: LedgerStore,
    organization_id: str,
    code: str,
    name: str,
    *,
    user_id: str | None = None,
) -> BankRecord:
    """Create a bank owned by *organization_id*."""
    code, name = _clean_bank_fields(code, name)

    async with store.unit_of_work() as session:
        visible = await session.list_banks(organization_id, include_inactive=True)
        if any(b.code == code for b in visible):
            raise LedgerValidationError(f"Bank code {code} already exists", field="code")
        bank = await session.add_bank(BankRecord(code=code, name=name, organization_id=organization_id))
        await write_audit(
            session, organization_id, "bank", bank.id, "bank_created",
            user_id=user_id, new_values=record_snapshot(bank, ("code", "name", "organization_id")),
        )

    logger.info("Created bank %s (%s)", bank.code, bank.id)
    return bank


async def seed_global_banks(store: LedgerStore, banks: Iterable[tuple[str, str]]) -> list[BankRecord]:
    """Create the shared banks every organization sees.

    Operator path, driven by ``settings.global_banks`` at startup; there is no
    API for it.  Codes already seeded are left alone, so reseeding is a no-op.
    """
    created = []
    async with store.unit_of_work() as session:
        existing = {b.code for b in await session.list_banks(None, include_inactive=True)}
        for code, name in banks:
            code, name = _clean_bank_fields(code, name)
            if code in existing:
                continue
            created.append(await session.add_bank(BankRecord(code=code, name=name, organization_id=None)))
            existing.add(code)

    for bank in created:
        logger.info("Seeded global bank %s (%s)", bank.code, bank.id)
    return created


def parse_global_banks(raw: str) -> list[tuple[str, str]]:
    """``"SNB:Saudi National Bank,RJHI:Al Rajhi Bank"`` -> ``[(code, name), ...]``."""
    entries = []
    for item in raw.split(","):
        if not item.strip():
            continue
        code, sep, name = item.partition(":")
        if not sep:
            raise LedgerValidationError(f"Global bank entry {item.strip()!r} is not CODE:Name", field="global_banks")
        entries.append((code.strip(), name.strip()))
    return entries


async def set_bank_active(
    store: LedgerStore,
    organization_id: str,
    bank_id: str,
    active: bool,
    *,
    user_id: str | None = None,
) -> BankRecord:
    async with store.unit_of_work() as session:
        bank = await resolve_bank(session, organization_id, bank_id)
        if bank.is_global:
            raise LedgerValidationError(
                f"Global bank {bank.code} cannot be changed by an organization", field="bank_id"
            )
        target = _target_status(active)
        check_transition(TOGGLE_TRANSITIONS, "bank", bank.id, bank.status, target,
                         "activate" if active else "deactivate")
        bank = await session.save_bank(replace(bank, status=target))
        await write_audit(
            session, organization_id, "bank", bank.id, f"bank_{target.value}",
            user_id=user_id, new_values={"status": target.value},
        )

    logger.info("Bank %s is now %s", bank.id, bank.status.value)
    return bank


# ── Facilities ───────────────────────────────────────────────

async def list_facilities(
    store: LedgerStore, organization_id: str, *, include_inactive: bool = False
) -> list[FacilityRecord]:
    async with store.unit_of_work() as session:
        return await session.list_facilities(organization_id, include_inactive=include_inactive)


async def get_facility(store: LedgerStore, organization_id: str, facility_id: str) -> FacilityRecord:
    async with store.unit_of_work() as session:
        facility = await session.get_facility(organization_id, facility_id)
    if facility is None:
        raise NotFoundError("facility", facility_id)
    return facility


def _check_facility_terms(start_date: date, expiry_date: date, max_revolving_period: int | None) -> None:
    if expiry_date < start_date:
        raise LedgerValidationError(
            f"expiry_date {expiry_date} is before start_date {start_date}", field="expiry_date"
        )
    if max_revolving_period is not None and max_revolving_period <= 0:
        raise LedgerValidationError("max_revolving_period must be positive", field="max_revolving_period")


async def create_facility(
    store: LedgerStore,
    organization_id: str,
    *,
    bank_id: str,
    facility_type: FacilityType,
    credit_limit,
    cost_of_funding,
    start_date: date,
    expiry_date: date,
    max_revolving_period: int | None = None,
    terms: str | None = None,
    user_id: str | None = None,
) -> FacilityRecord:
    limit = non_negative_money(credit_limit, "credit_limit")
    cost = to_rate(cost_of_funding, "cost_of_funding")
    _check_facility_terms(start_date, expiry_date, max_revolving_period)

    async with store.unit_of_work() as session:
        bank = await resolve_bank(session, organization_id, bank_id)
        if not bank.is_active:
            raise InvalidStateTransitionError("bank", bank.id, bank.status.value, "open a facility with")
        facility = await session.add_facility(
            FacilityRecord(
                organization_id=organization_id,
                bank_id=bank.id,
                facility_type=FacilityType(facility_type),
                credit_limit=limit,
                cost_of_funding=cost,
                start_date=start_date,
                expiry_date=expiry_date,
                max_revolving_period=max_revolving_period,
                terms=terms,
                created_by=user_id,
            )
        )
        await write_audit(
            session, organization_id, "facility", facility.id, "facility_created",
            user_id=user_id,
            new_values=record_snapshot(facility, ("bank_id", "facility_type", "credit_limit", "expiry_date")),
        )

    logger.info(
        "Created %s facility %s at bank %s, limit %s",
        facility.facility_type.value, facility.id, bank.code, facility.credit_limit,
    )
    return facility


async def update_facility(
    store: LedgerStore,
    organization_id: str,
    facility_id: str,
    update: FacilityUpdate,
    *,
    user_id: str | None = None,
) -> FacilityRecord:
    async with store.unit_of_work() as session:
        facility = await session.get_facility(organization_id, facility_id)
        if facility is None:
            raise NotFoundError("facility", facility_id)
        if not facility.is_active:
            raise InvalidStateTransitionError("facility", facility.id, facility.status.value, "update")

        changes = {}
        if update.credit_limit is not None:
            changes["credit_limit"] = non_negative_money(update.credit_limit, "credit_limit")
        if update.cost_of_funding is not None:
            changes["cost_of_funding"] = to_rate(update.cost_of_funding, "cost_of_funding")
        if update.expiry_date is not None:
            changes["expiry_date"] = update.expiry_date
        if update.max_revolving_period is not None:
            changes["max_revolving_period"] = update.max_revolving_period
        if update.terms is not None:
            changes["terms"] = update.terms
        if not changes:
            raise LedgerValidationError("No changes supplied")

        updated = replace(facility, **changes)
        _check_facility_terms(updated.start_date, updated.expiry_date, updated.max_revolving_period)

        if "credit_limit" in changes:
            loans = await session.list_loans(organization_id, statuses=OPEN_LOAN_STATUSES)
            utilized = sum(l.amount for l in loans if l.facility_id == facility.id)
            if utilized > updated.credit_limit:
                logger.warning(
                    "Facility %s limit lowered to %s below outstanding %s",
                    facility.id, updated.credit_limit, utilized,
                )

        names = tuple(sorted(changes))
        before = record_snapshot(facility, names)
        facility = await session.save_facility(updated)
        await write_audit(
            session, organization_id, "facility", facility.id, "facility_updated",
            user_id=user_id, old_values=before, new_values=record_snapshot(facility, names),
        )

    logger.info("Updated facility %s: %s", facility.id, ", ".join(names))
    return facility


async def delete_facility(
    store: LedgerStore,
    organization_id: str,
    facility_id: str,
    *,
    user_id: str | None = None,
) -> FacilityRecord:
    """Deactivate a facility.  Refused while it still has open loans."""
    async with store.unit_of_work() as session:
        facility = await session.get_facility(organization_id, facility_id)
        if facility is None:
            raise NotFoundError("facility", facility_id)
        check_transition(DEACTIVATE_ONLY_TRANSITIONS, "facility", facility.id, facility.status,
                          RecordStatus.INACTIVE, "deactivate")
        loans = await session.list_loans(organization_id, statuses=OPEN_LOAN_STATUSES)
        open_count = sum(1 for l in loans if l.facility_id == facility.id)
        if open_count:
            raise LedgerValidationError(
                f"Facility {facility.id} still has {open_count} open loans", field="facility_id"
            )
        facility = await session.save_facility(replace(facility, status=RecordStatus.INACTIVE))
        await write_audit(
            session, organization_id, "facility", facility.id, "facility_deactivated",
            user_id=user_id, new_values={"status": facility.status.value},
        )

    logger.info("Deactivated facility %s", facility.id)
    return facility


# ── Credit lines (legacy sub-allocations) ────────────────────

async def list_credit_lines(
    store: LedgerStore, organization_id: str, *, include_inactive: bool = False
) -> list[CreditLineRecord]:
    async with store.unit_of_work() as session:
        return await session.list_credit_lines(organization_id, include_inactive=include_inactive)


async def create_credit_line(
    store: LedgerStore,
    organization_id: str,
    *,
    facility_id: str,
    name: str,
    credit_line_type: str,
    credit_limit,
    interest_rate=None,
    description: str | None = None,
    user_id: str | None = None,
) -> CreditLineRecord:
    limit = non_negative_money(credit_limit, "credit_limit")
    rate = to_rate(interest_rate, "interest_rate") if interest_rate is not None else None
    if not name:
        raise LedgerValidationError("Credit line name is required", field="name")

    async with store.unit_of_work() as session:
        facility = await session.get_facility(organization_id, facility_id)
        if facility is None:
            raise NotFoundError("facility", facility_id)
        if not facility.is_active:
            raise InvalidStateTransitionError("facility", facility.id, facility.status.value, "add a credit line to")
        credit_line = await session.add_credit_line(
            CreditLineRecord(
                organization_id=organization_id,
                facility_id=facility.id,
                name=name,
                credit_line_type=credit_line_type,
                credit_limit=limit,
                interest_rate=rate,
                description=description,
            )
        )
        await write_audit(
            session, organization_id, "credit_line", credit_line.id, "credit_line_created",
            user_id=user_id, new_values=record_snapshot(credit_line, ("facility_id", "credit_limit")),
        )

    logger.info("Created credit line %s on facility %s", credit_line.id, facility_id)
    return credit_line


async def delete_credit_line(
    store: LedgerStore,
    organization_id: str,
    credit_line_id: str,
    *,
    user_id: str | None = None,
) -> CreditLineRecord:
    async with store.unit_of_work() as session:
        credit_line = await session.get_credit_line(organization_id, credit_line_id)
        if credit_line is None:
            raise NotFoundError("credit line", credit_line_id)
        check_transition(DEACTIVATE_ONLY_TRANSITIONS, "credit line", credit_line.id, credit_line.status,
                          RecordStatus.INACTIVE, "deactivate")
        credit_line = await session.save_credit_line(replace(credit_line, status=RecordStatus.INACTIVE))
        await write_audit(
            session, organization_id, "credit_line", credit_line.id, "credit_line_deactivated",
            user_id=user_id,
        )
    return credit_line


# ── Collateral ───────────────────────────────────────────────

async def list_collateral(
    store: LedgerStore, organization_id: str, *, include_inactive: bool = False
) -> list[CollateralRecord]:
    async with store.unit_of_work() as session:
        return await session.list_collateral(organization_id, include_inactive=include_inactive)


async def create_collateral(
    store: LedgerStore,
    organization_id: str,
    *,
    collateral_type: CollateralType,
    name: str,
    current_value,
    valuation_date: date,
    description: str | None = None,
    valuation_source: str | None = None,
    notes: str | None = None,
    user_id: str | None = None,
) -> CollateralRecord:
    value = non_negative_money(current_value, "current_value")
    if not name:
        raise LedgerValidationError("Collateral name is required", field="name")

    async with store.unit_of_work() as session:
        collateral = await session.add_collateral(
            CollateralRecord(
                organization_id=organization_id,
                collateral_type=CollateralType(collateral_type),
                name=name,
                current_value=value,
                valuation_date=valuation_date,
                description=description,
                valuation_source=valuation_source,
                notes=notes,
            )
        )
        await write_audit(
            session, organization_id, "collateral", collateral.id, "collateral_created",
            user_id=user_id, new_values=record_snapshot(collateral, ("name", "current_value", "valuation_date")),
        )

    logger.info("Created collateral %s valued at %s", collateral.id, collateral.current_value)
    return collateral


async def revalue_collateral(
    store: LedgerStore,
    organization_id: str,
    collateral_id: str,
    new_value,
    valuation_date: date,
    *,
    valuation_source: str | None = None,
    user_id: str | None = None,
) -> CollateralRecord:
    value = non_negative_money(new_value, "current_value")

    async with store.unit_of_work() as session:
        collateral = await session.get_collateral(organization_id, collateral_id)
        if collateral is None:
            raise NotFoundError("collateral", collateral_id)
        if not collateral.is_active:
            raise InvalidStateTransitionError("collateral", collateral.id, collateral.status.value, "revalue")
        names = ("current_value", "valuation_date", "valuation_source")
        before = record_snapshot(collateral, names)
        collateral = await session.save_collateral(
            replace(
                collateral,
                current_value=value,
                valuation_date=valuation_date,
                valuation_source=valuation_source or collateral.valuation_source,
            )
        )
        await write_audit(
            session, organization_id, "collateral", collateral.id, "collateral_revalued",
            user_id=user_id, old_values=before, new_values=record_snapshot(collateral, names),
        )

    logger.info("Revalued collateral %s to %s as of %s", collateral.id, value, valuation_date)
    return collateral


async def delete_collateral(
    store: LedgerStore,
    organization_id: str,
    collateral_id: str,
    *,
    user_id: str | None = None,
) -> CollateralRecord:
    async with store.unit_of_work() as session:
        collateral = await session.get_collateral(organization_id, collateral_id)
        if collateral is None:
            raise NotFoundError("collateral", collateral_id)
        check_transition(DEACTIVATE_ONLY_TRANSITIONS, "collateral", collateral.id, collateral.status,
                         RecordStatus.INACTIVE, "deactivate")
        collateral = await session.save_collateral(replace(collateral, status=RecordStatus.INACTIVE))
        await write_audit(
            session, organization_id, "collateral", collateral.id, "collateral_deactivated",
            user_id=user_id,
        )

    logger.info("Deactivated collateral %s", collateral.id)
    return collateral


async def list_collateral_assignments(
    store: LedgerStore, organization_id: str, *, include_inactive: bool = False
) -> list[CollateralAssignmentRecord]:
    async with store.unit_of_work() as session:
        return await session.list_collateral_assignments(organization_id, include_inactive=include_inactive)


async def assign_collateral(
    store: LedgerStore,
    organization_id: str,
    collateral_id: str,
    *,
    bank_id: str | None = None,
    facility_id: str | None = None,
    credit_line_id: str | None = None,
    user_id: str | None = None,
) -> CollateralAssignmentRecord:
    """Pledge collateral to exactly one bank, facility or credit line."""
    targets = [t for t in (bank_id, facility_id, credit_line_id) if t]
    if len(targets) != 1:
        raise LedgerValidationError(
            "Exactly one of bank_id, facility_id or credit_line_id is required", field="target"
        )

    async with store.unit_of_work() as session:
        collateral = await session.get_collateral(organization_id, collateral_id)
        if collateral is None:
            raise NotFoundError("collateral", collateral_id)
        if not collateral.is_active:
            raise InvalidStateTransitionError("collateral", collateral.id, collateral.status.value, "assign")
        if bank_id:
            await resolve_bank(session, organization_id, bank_id)
        if facility_id and await session.get_facility(organization_id, facility_id) is None:
            raise NotFoundError("facility", facility_id)
        if credit_line_id and await session.get_credit_line(organization_id, credit_line_id) is None:
            raise NotFoundError("credit line", credit_line_id)

        assignment = await session.add_collateral_assignment(
            CollateralAssignmentRecord(
                organization_id=organization_id,
                collateral_id=collateral.id,
                bank_id=bank_id,
                facility_id=facility_id,
                credit_line_id=credit_line_id,
            )
        )
        await write_audit(
            session, organization_id, "collateral_assignment", assignment.id, "collateral_assigned",
            user_id=user_id,
            new_values=record_snapshot(assignment, ("collateral_id", "bank_id", "facility_id", "credit_line_id")),
        )

    logger.info("Assigned collateral %s (assignment %s)", collateral_id, assignment.id)
    return assignment


async def set_assignment_active(
    store: LedgerStore,
    organization_id: str,
    assignment_id: str,
    active: bool,
    *,
    user_id: str | None = None,
) -> CollateralAssignmentRecord:
    async with store.unit_of_work() as session:
        assignment = await session.get_collateral_assignment(organization_id, assignment_id)
        if assignment is None:
            raise NotFoundError("collateral assignment", assignment_id)
        target = _target_status(active)
        check_transition(TOGGLE_TRANSITIONS, "collateral assignment", assignment.id, assignment.status,
                         target, "activate" if active else "deactivate")
        assignment = await session.save_collateral_assignment(replace(assignment, status=target))
        await write_audit(
            session, organization_id, "collateral_assignment", assignment.id, f"assignment_{target.value}",
            user_id=user_id, new_values={"status": target.value},
        )
    return assignment


# ── Loans (reads) ────────────────────────────────────────────

async def list_loans(
    store: LedgerStore, organization_id: str, *, status: LoanStatus | None = None
) -> list[LoanRecord]:
    """Loans ordered by due date.  The ``active`` view includes overdue loans."""
    if status is None:
        statuses = None
    elif status == LoanStatus.ACTIVE:
        statuses = OPEN_LOAN_STATUSES
    else:
        statuses = [status]
    async with store.unit_of_work() as session:
        return await session.list_loans(organization_id, statuses=statuses)


async def get_loan(store: LedgerStore, organization_id: str, loan_id: str) -> LoanRecord:
    async with store.unit_of_work() as session:
        loan = await session.get_loan(organization_id, loan_id)
    if loan is None:
        raise NotFoundError("loan", loan_id)
    return loan

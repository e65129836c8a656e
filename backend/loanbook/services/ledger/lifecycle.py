"""Loan lifecycle and settlement engine.

Every operation here runs as one unit of work: the loan row change, any
ledger postings and the audit entry commit together or not at all.  The loan
row is read ``for_update`` first so concurrent writers on the same loan are
serialised by the store.

State machine (see ``records.LOAN_TRANSITIONS``)::

    active  -> overdue | settled | cancelled
    overdue -> active  | settled | cancelled
    settled -> active          (explicit reversal only)
    cancelled                  (terminal; permanent delete removes the row)
"""

import logging
import re
from dataclasses import replace
from datetime import date
from decimal import Decimal

from loanbook.models import FacilityType, InterestBasis, LoanStatus, TransactionType
from loanbook.models.common import new_id, utcnow
from loanbook.services.ledger.audit import write_audit
from loanbook.services.ledger.balance import balance_in_session
from loanbook.services.ledger.errors import (
    DuplicateIdempotencyKeyError,
    FacilityLimitExceededError,
    InvalidStateTransitionError,
    LedgerValidationError,
    NotFoundError,
)
from loanbook.services.ledger.money import (
    ZERO,
    money_str,
    non_negative_money,
    positive_money,
    to_rate,
)
from loanbook.services.ledger.records import (
    LOAN_TRANSITIONS,
    OPEN_LOAN_STATUSES,
    DrawCommand,
    FacilityRecord,
    LoanAmendment,
    LoanRecord,
    NewTransaction,
    PaymentCommand,
    RevolveCommand,
    SettleCommand,
    TransactionRecord,
    check_transition,
    record_snapshot,
)
from loanbook.services.ledger.store import LedgerStore, StoreSession
from loanbook.services.ledger.transactions import fetch_by_key, post_transaction

logger = logging.getLogger(__name__)

SETTLEMENT_FIELDS = ("status", "settled_date", "settled_amount")
TERM_FIELDS = ("due_date", "charges_due_date", "sibor_rate", "margin", "bank_rate", "notes", "status")


# ---------------------------------------------------------------------------
# Keys and references
# ---------------------------------------------------------------------------

def reference_prefix(loan_id: str) -> str:
    return loan_id[:8]


def settlement_key(loan: LoanRecord, settle_date: date) -> str:
    """``SETTLE:<loan>:<date>``, suffixed ``:R<n>`` once the loan has been reversed."""
    key = f"SETTLE:{loan.id}:{settle_date.isoformat()}"
    if loan.reversal_count:
        key = f"{key}:R{loan.reversal_count}"
    return key


def revolve_key(loan: LoanRecord, revolve_date: date) -> str:
    """``REVOLVE:<loan>:<date>``, suffixed like :func:`settlement_key`."""
    key = f"REVOLVE:{loan.id}:{revolve_date.isoformat()}"
    if loan.reversal_count:
        key = f"{key}:R{loan.reversal_count}"
    return key


def _generate_reference(start_date: date) -> str:
    return f"LN-{start_date:%Y%m%d}-{new_id()[:6].upper()}"


def _successor_reference(reference_number: str, cycle_number: int) -> str:
    base = re.sub(r"-C\d+$", "", reference_number)
    return f"{base}-C{cycle_number}"


# ---------------------------------------------------------------------------
# Shared checks
# ---------------------------------------------------------------------------

async def _locked_loan(session: StoreSession, organization_id: str, loan_id: str) -> LoanRecord:
    loan = await session.get_loan(organization_id, loan_id, for_update=True)
    if loan is None:
        raise NotFoundError("loan", loan_id)
    return loan


async def _loan_facility(session: StoreSession, loan: LoanRecord) -> FacilityRecord:
    facility = await session.get_facility(loan.organization_id, loan.facility_id)
    if facility is None:
        raise LedgerValidationError(
            f"Loan {loan.id} has no resolvable facility ({loan.facility_id})",
            field="facility_id",
        )
    return facility


async def _closing_posting(session: StoreSession, loan: LoanRecord) -> TransactionRecord | None:
    """The repayment that settled *loan*, whether by settlement or by revolve."""
    if loan.settled_date is None:
        return None
    for key in (settlement_key(loan, loan.settled_date), revolve_key(loan, loan.settled_date)):
        posting = await session.find_transaction_by_key(loan.organization_id, key)
        if posting is not None:
            return posting
    return None


async def _closed_by_revolve(session: StoreSession, loan: LoanRecord) -> bool:
    if await session.find_successor_loan(loan.organization_id, loan.id) is not None:
        return True
    posting = await _closing_posting(session, loan)
    return posting is not None and posting.idempotency_key == revolve_key(loan, loan.settled_date)


def _check_dates(start_date: date, due_date: date) -> None:
    if due_date < start_date:
        raise LedgerValidationError(
            f"due_date {due_date} is before start_date {start_date}", field="due_date"
        )


async def facility_utilized(session: StoreSession, organization_id: str, facility_id: str) -> Decimal:
    """Sum of open loan amounts drawn on *facility_id*."""
    loans = await session.list_loans(organization_id, statuses=OPEN_LOAN_STATUSES)
    return sum((loan.amount for loan in loans if loan.facility_id == facility_id), ZERO)


async def _check_facility_limit(
    session: StoreSession,
    facility: FacilityRecord,
    amount: Decimal,
    *,
    acknowledge_overdraw: bool,
) -> None:
    utilized = await facility_utilized(session, facility.organization_id, facility.id)
    available = max(ZERO, facility.credit_limit - utilized)
    if amount <= available:
        return
    if not acknowledge_overdraw:
        raise FacilityLimitExceededError(facility.id, amount, available)
    logger.warning(
        "Overdraw acknowledged on facility %s: draw %s, available %s, limit %s",
        facility.id, amount, available, facility.credit_limit,
    )


# ---------------------------------------------------------------------------
# Draw
# ---------------------------------------------------------------------------

async def create_loan(
    store: LedgerStore,
    organization_id: str,
    command: DrawCommand,
    *,
    user_id: str | None = None,
) -> LoanRecord:
    """Draw a new loan against a facility.

    ``bank_rate`` is always ``sibor_rate + margin``.  A draw beyond the
    facility's available limit raises ``FacilityLimitExceededError`` unless
    the caller sets ``acknowledge_overdraw``.
    """
    amount = positive_money(command.amount)
    sibor_rate = to_rate(command.sibor_rate, "sibor_rate")
    margin = to_rate(command.margin, "margin")
    if sibor_rate < 0 or margin < 0:
        raise LedgerValidationError("Rates must not be negative", field="sibor_rate")
    _check_dates(command.start_date, command.due_date)

    async with store.unit_of_work() as session:
        facility = await session.get_facility(organization_id, command.facility_id)
        if facility is None:
            raise NotFoundError("facility", command.facility_id)
        if not facility.is_active:
            raise InvalidStateTransitionError(
                "facility", facility.id, facility.status.value, "draw on"
            )

        if command.credit_line_id:
            credit_line = await session.get_credit_line(organization_id, command.credit_line_id)
            if credit_line is None:
                raise NotFoundError("credit line", command.credit_line_id)
            if credit_line.facility_id != facility.id:
                raise LedgerValidationError(
                    f"Credit line {credit_line.id} does not belong to facility {facility.id}",
                    field="credit_line_id",
                )

        await _check_facility_limit(
            session, facility, amount, acknowledge_overdraw=command.acknowledge_overdraw
        )

        loan = await session.add_loan(
            LoanRecord(
                organization_id=organization_id,
                user_id=user_id,
                facility_id=facility.id,
                credit_line_id=command.credit_line_id,
                reference_number=command.reference_number or _generate_reference(command.start_date),
                amount=amount,
                sibor_rate=sibor_rate,
                margin=margin,
                bank_rate=sibor_rate + margin,
                interest_basis=command.interest_basis or InterestBasis.ACTUAL_365,
                start_date=command.start_date,
                due_date=command.due_date,
                charges_due_date=command.charges_due_date,
                notes=command.notes,
                last_accrual_date=command.start_date,
            )
        )
        await write_audit(
            session, organization_id, "loan", loan.id, "loan_created",
            user_id=user_id, new_values=record_snapshot(loan, ("amount", "facility_id", "due_date", "status")),
        )

    logger.info(
        "Drew loan %s (%s) for %s on facility %s",
        loan.id, loan.reference_number, loan.amount, loan.facility_id,
    )
    return loan


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

async def process_payment(
    store: LedgerStore,
    organization_id: str,
    loan_id: str,
    payment: PaymentCommand,
    *,
    user_id: str | None = None,
) -> TransactionRecord:
    """Record a repayment.  A partial payment leaves the loan status alone."""
    try:
        async with store.unit_of_work() as session:
            loan = await _locked_loan(session, organization_id, loan_id)
            if payment.idempotency_key:
                # A retry is answered from the ledger even once the loan has closed.
                prior = await session.find_transaction_by_key(organization_id, payment.idempotency_key)
                if prior is not None:
                    if prior.loan_id != loan.id:
                        raise LedgerValidationError(
                            f"Idempotency key {payment.idempotency_key} already belongs to another posting",
                            field="idempotency_key",
                        )
                    logger.info("Payment replay of %s on loan %s", payment.idempotency_key, loan.id)
                    return prior
            if not loan.is_open:
                raise InvalidStateTransitionError("loan", loan.id, loan.status.value, "record payment on")
            facility = await _loan_facility(session, loan)

            tx, created = await post_transaction(
                session,
                organization_id,
                NewTransaction(
                    type=TransactionType.REPAYMENT,
                    amount=payment.amount,
                    date=payment.date,
                    loan_id=loan.id,
                    facility_id=facility.id,
                    bank_id=facility.bank_id,
                    memo=payment.memo,
                    reference=payment.reference,
                    allocation={"principal": money_str(positive_money(payment.amount))},
                    idempotency_key=payment.idempotency_key,
                ),
                user_id=user_id,
            )
    except DuplicateIdempotencyKeyError as exc:
        return await fetch_by_key(store, organization_id, exc.idempotency_key)

    if created:
        logger.info("Payment of %s recorded on loan %s", tx.amount, loan_id)
    return tx


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------

async def settle_loan(
    store: LedgerStore,
    organization_id: str,
    loan_id: str,
    command: SettleCommand,
    *,
    user_id: str | None = None,
) -> tuple[LoanRecord, TransactionRecord | None]:
    """Settle an active or overdue loan.

    Posts a ``repayment`` with reference ``SETTLE-<prefix>`` for the given
    amount (default: the derived balance total) and marks the loan settled.
    Re-settling the same loan for the same date returns the first result.
    A zero balance settles without a posting.
    """
    try:
        async with store.unit_of_work() as session:
            loan = await _locked_loan(session, organization_id, loan_id)

            if loan.status == LoanStatus.SETTLED and loan.settled_date == command.date:
                prior = await session.find_transaction_by_key(
                    organization_id, settlement_key(loan, command.date)
                )
                if prior is None and await _closed_by_revolve(session, loan):
                    raise InvalidStateTransitionError("loan", loan.id, "revolved", "settle")
                logger.info("Settlement replay for loan %s on %s", loan.id, command.date)
                return loan, prior

            check_transition(LOAN_TRANSITIONS, "loan", loan.id, loan.status, LoanStatus.SETTLED, "settle")
            facility = await _loan_facility(session, loan)
            balance = await balance_in_session(session, loan)

            if command.amount is None:
                amount = balance.total
            else:
                amount = non_negative_money(command.amount)

            tx = None
            if amount > 0:
                tx, _ = await post_transaction(
                    session,
                    organization_id,
                    NewTransaction(
                        type=TransactionType.REPAYMENT,
                        amount=amount,
                        date=command.date,
                        loan_id=loan.id,
                        facility_id=facility.id,
                        bank_id=facility.bank_id,
                        memo=command.memo,
                        reference=f"SETTLE-{reference_prefix(loan.id)}",
                        allocation={
                            "settlement": money_str(amount),
                            "principal": money_str(balance.principal),
                            "interest": money_str(balance.interest),
                            "fees": money_str(balance.fees),
                        },
                        idempotency_key=settlement_key(loan, command.date),
                    ),
                    user_id=user_id,
                )

            before = record_snapshot(loan, SETTLEMENT_FIELDS)
            loan = await session.save_loan(
                replace(
                    loan,
                    status=LoanStatus.SETTLED,
                    settled_date=command.date,
                    settled_amount=amount,
                )
            )
            await write_audit(
                session, organization_id, "loan", loan.id, "loan_settled",
                user_id=user_id,
                old_values=before,
                new_values=record_snapshot(loan, SETTLEMENT_FIELDS),
            )
    except DuplicateIdempotencyKeyError:
        async with store.unit_of_work() as session:
            loan = await _locked_loan(session, organization_id, loan_id)
            prior = await session.find_transaction_by_key(
                organization_id, settlement_key(loan, command.date)
            )
        logger.info("Settlement replay for loan %s after concurrent commit", loan_id)
        return loan, prior

    logger.info("Settled loan %s on %s for %s", loan.id, command.date, amount)
    return loan, tx


async def reverse_loan_settlement(
    store: LedgerStore,
    organization_id: str,
    loan_id: str,
    reason: str,
    *,
    user_id: str | None = None,
) -> LoanRecord:
    """Return a settled loan to ``active``.

    The settlement posting stays in the ledger; an offsetting ``reversal``
    row restores the principal.  The prior settlement fields are captured in
    the audit log.  A revolved loan cannot be reversed while its successor
    cycle exists.
    """
    if not reason or not reason.strip():
        raise LedgerValidationError("A reversal reason is required", field="reason")

    async with store.unit_of_work() as session:
        loan = await _locked_loan(session, organization_id, loan_id)
        if loan.status != LoanStatus.SETTLED:
            raise InvalidStateTransitionError("loan", loan.id, loan.status.value, "reverse settlement of")
        successor = await session.find_successor_loan(organization_id, loan.id)
        if successor is not None:
            raise InvalidStateTransitionError("loan", loan.id, "revolved", "reverse settlement of")

        offset = None
        settlement = await _closing_posting(session, loan)
        if settlement is not None:
            offset, _ = await post_transaction(
                session,
                organization_id,
                NewTransaction(
                    type=TransactionType.REVERSAL,
                    amount=settlement.amount,
                    date=settlement.date,
                    loan_id=loan.id,
                    facility_id=settlement.facility_id,
                    bank_id=settlement.bank_id,
                    memo=reason,
                    reference=f"REVERSE-{reference_prefix(loan.id)}",
                    allocation={"reverses": settlement.id},
                    idempotency_key=f"REVERSE:{settlement.id}",
                ),
                user_id=user_id,
            )

        before = record_snapshot(loan, SETTLEMENT_FIELDS)
        loan = await session.save_loan(
            replace(
                loan,
                status=LoanStatus.ACTIVE,
                settled_date=None,
                settled_amount=None,
                reversed_at=utcnow(),
                reversal_reason=reason,
                reversed_by=user_id,
                reversal_count=loan.reversal_count + 1,
            )
        )
        await write_audit(
            session, organization_id, "loan", loan.id, "settlement_reversed",
            user_id=user_id,
            old_values=before,
            new_values={
                **record_snapshot(loan, SETTLEMENT_FIELDS),
                "reversal_transaction_id": offset.id if offset else None,
            },
            details=reason,
        )

    logger.info("Reversed settlement of loan %s (reason: %s)", loan.id, reason)
    return loan


# ---------------------------------------------------------------------------
# Revolve
# ---------------------------------------------------------------------------

async def revolve_loan(
    store: LedgerStore,
    organization_id: str,
    loan_id: str,
    command: RevolveCommand,
    *,
    user_id: str | None = None,
) -> tuple[LoanRecord, LoanRecord]:
    """Close the current cycle and open its successor on the same facility.

    Returns ``(closed_loan, new_loan)``.  Revolving an already-revolved loan
    returns the existing successor.
    """
    start_date = command.start_date or command.date
    _check_dates(start_date, command.due_date)

    async with store.unit_of_work() as session:
        loan = await _locked_loan(session, organization_id, loan_id)

        if loan.status == LoanStatus.SETTLED:
            successor = await session.find_successor_loan(organization_id, loan.id)
            if successor is not None:
                logger.info("Revolve replay for loan %s: successor %s", loan.id, successor.id)
                return loan, successor

        check_transition(LOAN_TRANSITIONS, "loan", loan.id, loan.status, LoanStatus.SETTLED, "revolve")
        facility = await _loan_facility(session, loan)
        if facility.facility_type != FacilityType.REVOLVING:
            raise LedgerValidationError(
                f"Facility {facility.id} is {facility.facility_type.value}, not revolving",
                field="facility_id",
            )

        amount = positive_money(command.amount) if command.amount is not None else loan.amount
        sibor_rate = to_rate(command.sibor_rate, "sibor_rate") if command.sibor_rate is not None else loan.sibor_rate
        margin = to_rate(command.margin, "margin") if command.margin is not None else loan.margin

        # Close the current cycle.
        balance = await balance_in_session(session, loan)
        if balance.total > 0:
            await post_transaction(
                session,
                organization_id,
                NewTransaction(
                    type=TransactionType.REPAYMENT,
                    amount=balance.total,
                    date=command.date,
                    loan_id=loan.id,
                    facility_id=facility.id,
                    bank_id=facility.bank_id,
                    memo=command.memo,
                    reference=f"REVOLVE-{reference_prefix(loan.id)}",
                    allocation={"revolve": money_str(balance.total)},
                    idempotency_key=revolve_key(loan, command.date),
                ),
                user_id=user_id,
            )
        before = record_snapshot(loan, SETTLEMENT_FIELDS)
        closed = await session.save_loan(
            replace(
                loan,
                status=LoanStatus.SETTLED,
                settled_date=command.date,
                settled_amount=balance.total,
            )
        )

        # The closed cycle no longer counts against the limit.
        await _check_facility_limit(
            session, facility, amount, acknowledge_overdraw=command.acknowledge_overdraw
        )

        cycle_number = loan.cycle_number + 1
        successor = await session.add_loan(
            LoanRecord(
                organization_id=organization_id,
                user_id=user_id,
                facility_id=loan.facility_id,
                credit_line_id=loan.credit_line_id,
                reference_number=command.reference_number
                or _successor_reference(loan.reference_number, cycle_number),
                amount=amount,
                sibor_rate=sibor_rate,
                margin=margin,
                bank_rate=sibor_rate + margin,
                interest_basis=loan.interest_basis,
                start_date=start_date,
                due_date=command.due_date,
                notes=command.memo,
                parent_loan_id=loan.id,
                cycle_number=cycle_number,
                last_accrual_date=start_date,
            )
        )
        await write_audit(
            session, organization_id, "loan", closed.id, "loan_revolved",
            user_id=user_id,
            old_values=before,
            new_values={
                **record_snapshot(closed, SETTLEMENT_FIELDS),
                "successor_loan_id": successor.id,
                "cycle_number": cycle_number,
            },
        )

    logger.info(
        "Revolved loan %s into %s (cycle %d, due %s)",
        closed.id, successor.id, cycle_number, successor.due_date,
    )
    return closed, successor


# ---------------------------------------------------------------------------
# Cancel / delete
# ---------------------------------------------------------------------------

async def delete_loan(
    store: LedgerStore,
    organization_id: str,
    loan_id: str,
    *,
    reason: str | None = None,
    user_id: str | None = None,
) -> LoanRecord:
    """Soft-cancel a loan.  The row stays until ``permanently_delete_loan``."""
    async with store.unit_of_work() as session:
        loan = await _locked_loan(session, organization_id, loan_id)
        check_transition(LOAN_TRANSITIONS, "loan", loan.id, loan.status, LoanStatus.CANCELLED, "cancel")
        before = record_snapshot(loan, ("status",))
        loan = await session.save_loan(
            replace(
                loan,
                status=LoanStatus.CANCELLED,
                cancelled_at=utcnow(),
                cancellation_reason=reason,
            )
        )
        await write_audit(
            session, organization_id, "loan", loan.id, "loan_cancelled",
            user_id=user_id, old_values=before, new_values=record_snapshot(loan, ("status",)),
            details=reason,
        )

    logger.info("Cancelled loan %s", loan.id)
    return loan


async def permanently_delete_loan(
    store: LedgerStore,
    organization_id: str,
    loan_id: str,
    *,
    user_id: str | None = None,
) -> None:
    """Remove a cancelled loan row.

    Ledger transactions already posted against it are kept and still carry
    its id; the loan itself disappears from every loan query.
    """
    async with store.unit_of_work() as session:
        loan = await _locked_loan(session, organization_id, loan_id)
        if loan.status != LoanStatus.CANCELLED:
            raise InvalidStateTransitionError("loan", loan.id, loan.status.value, "permanently delete")
        await session.remove_loan(organization_id, loan.id)
        await write_audit(
            session, organization_id, "loan", loan.id, "loan_deleted",
            user_id=user_id, old_values=record_snapshot(loan),
        )

    logger.info("Permanently deleted loan %s", loan_id)


# ---------------------------------------------------------------------------
# Amendments and overdue sweep
# ---------------------------------------------------------------------------

async def amend_loan(
    store: LedgerStore,
    organization_id: str,
    loan_id: str,
    amendment: LoanAmendment,
    *,
    user_id: str | None = None,
    today: date | None = None,
) -> LoanRecord:
    today = today or date.today()

    async with store.unit_of_work() as session:
        loan = await _locked_loan(session, organization_id, loan_id)
        if not loan.is_open:
            raise InvalidStateTransitionError("loan", loan.id, loan.status.value, "amend")

        changes = {}
        if amendment.due_date is not None:
            _check_dates(loan.start_date, amendment.due_date)
            changes["due_date"] = amendment.due_date
        if amendment.charges_due_date is not None:
            changes["charges_due_date"] = amendment.charges_due_date
        if amendment.sibor_rate is not None:
            changes["sibor_rate"] = to_rate(amendment.sibor_rate, "sibor_rate")
        if amendment.margin is not None:
            changes["margin"] = to_rate(amendment.margin, "margin")
        if amendment.notes is not None:
            changes["notes"] = amendment.notes
        if not changes:
            raise LedgerValidationError("No changes supplied")

        if "sibor_rate" in changes or "margin" in changes:
            changes["bank_rate"] = (
                changes.get("sibor_rate", loan.sibor_rate) + changes.get("margin", loan.margin)
            )
        if loan.status == LoanStatus.OVERDUE and changes.get("due_date", loan.due_date) >= today:
            check_transition(LOAN_TRANSITIONS, "loan", loan.id, loan.status, LoanStatus.ACTIVE, "reactivate")
            changes["status"] = LoanStatus.ACTIVE

        before = record_snapshot(loan, TERM_FIELDS)
        loan = await session.save_loan(replace(loan, **changes))
        await write_audit(
            session, organization_id, "loan", loan.id, "loan_amended",
            user_id=user_id, old_values=before, new_values=record_snapshot(loan, TERM_FIELDS),
            details=amendment.reason,
        )

    logger.info("Amended loan %s: %s", loan.id, ", ".join(sorted(changes)))
    return loan


async def mark_overdue_loans(
    store: LedgerStore,
    organization_id: str,
    as_of: date,
) -> list[LoanRecord]:
    """Move active loans whose due date has passed to ``overdue``."""
    marked: list[LoanRecord] = []
    async with store.unit_of_work() as session:
        loans = await session.list_loans(organization_id, statuses=[LoanStatus.ACTIVE])
        for loan in loans:
            if loan.due_date >= as_of:
                continue
            check_transition(LOAN_TRANSITIONS, "loan", loan.id, loan.status, LoanStatus.OVERDUE, "mark overdue")
            updated = await session.save_loan(replace(loan, status=LoanStatus.OVERDUE))
            await write_audit(
                session, organization_id, "loan", loan.id, "loan_overdue",
                old_values={"status": loan.status.value},
                new_values={"status": updated.status.value},
            )
            marked.append(updated)

    if marked:
        logger.info("Marked %d loans overdue for org %s as of %s", len(marked), organization_id, as_of)
    return marked

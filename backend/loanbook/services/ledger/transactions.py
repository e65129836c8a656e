"""Append-only transaction ledger.

Every balance is derived from these rows.  Transactions are never updated or
deleted; corrections are new rows (see ``reverse_loan_settlement``).

An ``idempotency_key`` makes a posting safe to retry: a second posting with a
key already on record returns the first row instead of writing a new one.
"""

import logging

from loanbook.services.ledger.errors import (
    DuplicateIdempotencyKeyError,
    LedgerValidationError,
    NotFoundError,
)
from loanbook.services.ledger.money import positive_money
from loanbook.services.ledger.records import (
    NewTransaction,
    TransactionFilter,
    TransactionRecord,
)
from loanbook.services.ledger.store import LedgerStore, StoreSession

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Linkage resolution
# ---------------------------------------------------------------------------

async def resolve_bank(session: StoreSession, organization_id: str, bank_id: str):
    """Return the bank if it is global or owned by the organization."""
    bank = await session.get_bank(bank_id)
    if bank is None or not (bank.is_global or bank.organization_id == organization_id):
        raise NotFoundError("bank", bank_id)
    return bank


async def _resolve_linkage(
    session: StoreSession, organization_id: str, new: NewTransaction
) -> tuple[str | None, str | None, str]:
    """Fill in facility and bank from the loan; returns (loan_id, facility_id, bank_id)."""
    facility_id = new.facility_id
    bank_id = new.bank_id

    if new.loan_id:
        loan = await session.get_loan(organization_id, new.loan_id)
        if loan is None:
            raise NotFoundError("loan", new.loan_id)
        if facility_id and facility_id != loan.facility_id:
            raise LedgerValidationError(
                f"Facility {facility_id} does not match loan {loan.id} "
                f"(facility {loan.facility_id})",
                field="facility_id",
            )
        facility_id = loan.facility_id

    if facility_id:
        facility = await session.get_facility(organization_id, facility_id)
        if facility is None:
            raise NotFoundError("facility", facility_id)
        if bank_id and bank_id != facility.bank_id:
            raise LedgerValidationError(
                f"Bank {bank_id} does not match facility {facility.id} (bank {facility.bank_id})",
                field="bank_id",
            )
        bank_id = facility.bank_id

    if not bank_id:
        raise LedgerValidationError(
            "Transaction needs a loan, facility or bank to post against", field="bank_id"
        )
    await resolve_bank(session, organization_id, bank_id)
    return new.loan_id, facility_id, bank_id


# ---------------------------------------------------------------------------
# Posting
# ---------------------------------------------------------------------------

async def post_transaction(
    session: StoreSession,
    organization_id: str,
    new: NewTransaction,
    *,
    user_id: str | None = None,
) -> tuple[TransactionRecord, bool]:
    """Append *new* inside an open unit of work.

    Returns ``(transaction, created)``; ``created`` is False when the
    idempotency key was already on record and the earlier row is returned.
    """
    amount = positive_money(new.amount)

    if new.idempotency_key:
        existing = await session.find_transaction_by_key(organization_id, new.idempotency_key)
        if existing is not None:
            if existing.loan_id != new.loan_id:
                raise LedgerValidationError(
                    f"Idempotency key {new.idempotency_key} already belongs to "
                    f"another posting",
                    field="idempotency_key",
                )
            logger.info(
                "Idempotent replay of %s: returning transaction %s",
                new.idempotency_key, existing.id,
            )
            return existing, False

    loan_id, facility_id, bank_id = await _resolve_linkage(session, organization_id, new)

    record = await session.add_transaction(
        TransactionRecord(
            organization_id=organization_id,
            user_id=user_id,
            loan_id=loan_id,
            facility_id=facility_id,
            bank_id=bank_id,
            type=new.type,
            amount=amount,
            date=new.date,
            memo=new.memo,
            reference=new.reference,
            allocation=new.allocation,
            idempotency_key=new.idempotency_key,
        )
    )
    logger.info(
        "Posted %s %s on %s (loan=%s, key=%s)",
        record.type.value, record.amount, record.date, loan_id, new.idempotency_key,
    )
    return record, True


async def fetch_by_key(store: LedgerStore, organization_id: str, idempotency_key: str) -> TransactionRecord:
    """Load the row a concurrent unit committed under *idempotency_key*."""
    async with store.unit_of_work() as session:
        existing = await session.find_transaction_by_key(organization_id, idempotency_key)
    if existing is None:
        raise DuplicateIdempotencyKeyError(idempotency_key)
    logger.info("Idempotent replay of %s after concurrent commit", idempotency_key)
    return existing


async def add_transaction(
    store: LedgerStore,
    organization_id: str,
    new: NewTransaction,
    *,
    user_id: str | None = None,
) -> TransactionRecord:
    """Append a ledger row in its own unit of work and return it."""
    try:
        async with store.unit_of_work() as session:
            if new.loan_id:
                # Serialise postings against the same loan.
                await session.get_loan(organization_id, new.loan_id, for_update=True)
            record, _ = await post_transaction(session, organization_id, new, user_id=user_id)
            return record
    except DuplicateIdempotencyKeyError as exc:
        return await fetch_by_key(store, organization_id, exc.idempotency_key)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def _check_page(limit: int | None, offset: int) -> None:
    if limit is not None and limit < 0:
        raise LedgerValidationError("limit must not be negative", field="limit")
    if offset < 0:
        raise LedgerValidationError("offset must not be negative", field="offset")


async def get_loan_ledger(store: LedgerStore, organization_id: str, loan_id: str) -> list[TransactionRecord]:
    """All transactions for one loan, newest first."""
    async with store.unit_of_work() as session:
        loan = await session.get_loan(organization_id, loan_id)
        if loan is None:
            raise NotFoundError("loan", loan_id)
        return await session.list_transactions(organization_id, TransactionFilter(loan_id=loan_id))


async def list_transactions(
    store: LedgerStore,
    organization_id: str,
    filters: TransactionFilter | None = None,
    *,
    limit: int | None = None,
    offset: int = 0,
) -> list[TransactionRecord]:
    """Filtered, paginated ledger rows, newest first.

    ``limit=None`` returns every matching row.  The same ``filters`` passed to
    ``get_transaction_count`` count exactly the rows this returns unpaginated.
    """
    _check_page(limit, offset)
    async with store.unit_of_work() as session:
        return await session.list_transactions(
            organization_id, filters or TransactionFilter(), limit=limit, offset=offset
        )


async def get_transaction_count(
    store: LedgerStore, organization_id: str, filters: TransactionFilter | None = None
) -> int:
    async with store.unit_of_work() as session:
        return await session.count_transactions(organization_id, filters or TransactionFilter())

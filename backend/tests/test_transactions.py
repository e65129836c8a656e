"""Tests for the append-only transaction ledger.

Covers:
- Linkage resolution (loan -> facility -> bank)
- Idempotent postings
- Filtering, pagination and count consistency
- Organization isolation
"""

from datetime import date
from decimal import Decimal

import pytest

from loanbook.models import TransactionType
from loanbook.services.ledger import transactions
from loanbook.services.ledger.errors import LedgerValidationError, NotFoundError
from loanbook.services.ledger.records import NewTransaction, TransactionFilter

from tests.conftest import ORG, OTHER_ORG, USER, draw, make_bank, make_facility


def _fee(loan_id=None, amount="100", day=1, key=None, **kwargs):
    return NewTransaction(
        type=TransactionType.FEE,
        amount=amount,
        date=date(2025, 2, day),
        loan_id=loan_id,
        idempotency_key=key,
        **kwargs,
    )


class TestPosting:

    @pytest.mark.asyncio
    async def test_linkage_is_filled_from_loan(self, store, facility, loan):
        tx = await transactions.add_transaction(store, ORG, _fee(loan.id), user_id=USER)
        assert tx.facility_id == facility.id
        assert tx.bank_id == facility.bank_id
        assert tx.amount == Decimal("100.00")
        assert tx.user_id == USER
        assert tx.id

    @pytest.mark.asyncio
    async def test_bank_only_posting(self, store, bank):
        tx = await transactions.add_transaction(store, ORG, _fee(bank_id=bank.id))
        assert tx.loan_id is None
        assert tx.bank_id == bank.id

    @pytest.mark.asyncio
    async def test_posting_without_linkage_is_rejected(self, store):
        with pytest.raises(LedgerValidationError) as exc:
            await transactions.add_transaction(store, ORG, _fee())
        assert exc.value.field == "bank_id"

    @pytest.mark.asyncio
    async def test_mismatched_facility_is_rejected(self, store, bank, loan):
        other = await make_facility(store, bank)
        with pytest.raises(LedgerValidationError):
            await transactions.add_transaction(store, ORG, _fee(loan.id, facility_id=other.id))

    @pytest.mark.asyncio
    async def test_non_positive_amount_is_rejected(self, store, loan):
        with pytest.raises(LedgerValidationError):
            await transactions.add_transaction(store, ORG, _fee(loan.id, amount="0"))

    @pytest.mark.asyncio
    async def test_other_organizations_loan_is_not_found(self, store, loan):
        with pytest.raises(NotFoundError):
            await transactions.add_transaction(store, OTHER_ORG, _fee(loan.id))

    @pytest.mark.asyncio
    async def test_other_organizations_bank_is_not_found(self, store, bank):
        with pytest.raises(NotFoundError):
            await transactions.add_transaction(store, OTHER_ORG, _fee(bank_id=bank.id))


class TestIdempotency:

    @pytest.mark.asyncio
    async def test_same_key_returns_first_posting(self, store, loan):
        first = await transactions.add_transaction(store, ORG, _fee(loan.id, key="fee-1"))
        second = await transactions.add_transaction(store, ORG, _fee(loan.id, key="fee-1", amount="999"))
        assert second.id == first.id
        assert second.amount == Decimal("100.00")
        assert await transactions.get_transaction_count(store, ORG) == 1

    @pytest.mark.asyncio
    async def test_key_reused_on_another_loan_is_rejected(self, store, facility, loan):
        other_loan = await draw(store, facility, amount="5000")
        await transactions.add_transaction(store, ORG, _fee(loan.id, key="fee-1"))
        with pytest.raises(LedgerValidationError) as exc:
            await transactions.add_transaction(store, ORG, _fee(other_loan.id, key="fee-1"))
        assert exc.value.field == "idempotency_key"

    @pytest.mark.asyncio
    async def test_keys_are_scoped_per_organization(self, store, loan):
        other_bank = await make_bank(store, org=OTHER_ORG, code="SNB", name="Saudi National Bank")
        other_facility = await make_facility(store, other_bank, org=OTHER_ORG)
        other_loan = await draw(store, other_facility, org=OTHER_ORG)

        a = await transactions.add_transaction(store, ORG, _fee(loan.id, key="shared"))
        b = await transactions.add_transaction(store, OTHER_ORG, _fee(other_loan.id, key="shared"))
        assert a.id != b.id


class TestQueries:

    @pytest.mark.asyncio
    async def test_newest_first(self, store, loan):
        for day in (3, 1, 2):
            await transactions.add_transaction(store, ORG, _fee(loan.id, day=day))
        rows = await transactions.list_transactions(store, ORG)
        assert [tx.date.day for tx in rows] == [3, 2, 1]

    @pytest.mark.asyncio
    async def test_count_matches_unpaginated_list_for_every_filter(self, store, facility, loan):
        other_loan = await draw(store, facility, amount="5000")
        await transactions.add_transaction(store, ORG, _fee(loan.id, day=1))
        await transactions.add_transaction(store, ORG, _fee(loan.id, day=5))
        await transactions.add_transaction(
            store, ORG,
            NewTransaction(type=TransactionType.INTEREST, amount="10", date=date(2025, 2, 10), loan_id=other_loan.id),
        )

        filters = [
            TransactionFilter(),
            TransactionFilter(loan_id=loan.id),
            TransactionFilter(type=TransactionType.INTEREST),
            TransactionFilter(date_from=date(2025, 2, 2)),
            TransactionFilter(date_to=date(2025, 2, 5)),
            TransactionFilter(facility_id=facility.id, date_from=date(2025, 2, 5)),
            TransactionFilter(bank_id=facility.bank_id),
        ]
        for f in filters:
            rows = await transactions.list_transactions(store, ORG, f)
            assert await transactions.get_transaction_count(store, ORG, f) == len(rows)

    @pytest.mark.asyncio
    async def test_pagination(self, store, loan):
        for day in range(1, 6):
            await transactions.add_transaction(store, ORG, _fee(loan.id, day=day))
        page = await transactions.list_transactions(store, ORG, limit=2, offset=1)
        assert [tx.date.day for tx in page] == [4, 3]

    @pytest.mark.asyncio
    async def test_negative_offset_is_rejected(self, store):
        with pytest.raises(LedgerValidationError):
            await transactions.list_transactions(store, ORG, offset=-1)

    @pytest.mark.asyncio
    async def test_loan_ledger_of_unknown_loan(self, store):
        with pytest.raises(NotFoundError):
            await transactions.get_loan_ledger(store, ORG, "missing")

    @pytest.mark.asyncio
    async def test_other_organization_sees_nothing(self, store, loan):
        await transactions.add_transaction(store, ORG, _fee(loan.id))
        assert await transactions.list_transactions(store, OTHER_ORG) == []
        assert await transactions.get_transaction_count(store, OTHER_ORG) == 0

"""Tests for the loan lifecycle and settlement engine.

Covers:
- Draw (bank rate, facility limit, overdraw acknowledgement)
- Payments (including key replay after the loan closes)
- Settlement (single posting, idempotent replay, zero balance)
- Settlement reversal (offsetting posting, double reversal)
- Revolve (close and reopen, replay, non-revolving facility, no reversal
  while the next cycle is open)
- Cancel, permanent delete, amendment and the overdue sweep
"""

from datetime import date
from types import SimpleNamespace
from decimal import Decimal

import pytest

from loanbook.models import FacilityType, LoanStatus, TransactionType
from loanbook.services.ledger import entities, lifecycle, transactions
from loanbook.services.ledger.audit import list_audit_entries
from loanbook.services.ledger.balance import calculate_loan_balance
from loanbook.services.ledger.errors import (
    FacilityLimitExceededError,
    InvalidStateTransitionError,
    LedgerValidationError,
    NotFoundError,
)
from loanbook.services.ledger.records import (
    LoanAmendment,
    NewTransaction,
    PaymentCommand,
    RevolveCommand,
    SettleCommand,
    TransactionFilter,
)

from tests.conftest import DUE, ORG, OTHER_ORG, USER, draw, make_facility

SETTLE_DAY = date(2025, 3, 15)


async def _ledger(store, loan_id):
    return await transactions.list_transactions(store, ORG, TransactionFilter(loan_id=loan_id))


class TestDraw:

    @pytest.mark.asyncio
    async def test_bank_rate_is_sibor_plus_margin(self, loan):
        assert loan.bank_rate == Decimal("6.5000")
        assert loan.status == LoanStatus.ACTIVE
        assert loan.reference_number.startswith("LN-20250101-")
        assert loan.last_accrual_date == loan.start_date

    @pytest.mark.asyncio
    async def test_draw_posts_no_transaction(self, store, loan):
        assert await _ledger(store, loan.id) == []

    @pytest.mark.asyncio
    async def test_due_before_start_is_rejected(self, store, facility):
        with pytest.raises(LedgerValidationError):
            await draw(store, facility, due_date=date(2024, 12, 1))

    @pytest.mark.asyncio
    async def test_draw_beyond_limit_is_rejected(self, store, facility):
        await draw(store, facility, amount="900000")
        with pytest.raises(FacilityLimitExceededError) as exc:
            await draw(store, facility, amount="200000")
        assert exc.value.available == Decimal("100000.00")

    @pytest.mark.asyncio
    async def test_acknowledged_overdraw_goes_through(self, store, facility):
        await draw(store, facility, amount="900000")
        loan = await draw(store, facility, amount="200000", acknowledge_overdraw=True)
        assert loan.amount == Decimal("200000.00")

    @pytest.mark.asyncio
    async def test_unknown_facility(self, store):
        with pytest.raises(NotFoundError):
            await draw(store, SimpleNamespace(id="missing"))

    @pytest.mark.asyncio
    async def test_other_organizations_facility_is_not_found(self, store, facility):
        with pytest.raises(NotFoundError):
            await draw(store, facility, org=OTHER_ORG)

    @pytest.mark.asyncio
    async def test_draw_is_audited(self, store, loan):
        entries = await list_audit_entries(store, ORG, entity_type="loan", entity_id=loan.id)
        assert [e.action for e in entries] == ["loan_created"]
        assert entries[0].user_id == USER


class TestPayment:

    @pytest.mark.asyncio
    async def test_partial_payment_keeps_loan_active(self, store, loan):
        tx = await lifecycle.process_payment(
            store, ORG, loan.id, PaymentCommand(amount="40000", date=date(2025, 2, 1))
        )
        assert tx.type == TransactionType.REPAYMENT
        assert tx.allocation == {"principal": "40000.00"}
        balance = await calculate_loan_balance(store, ORG, loan.id)
        assert balance.principal == Decimal("60000.00")

    @pytest.mark.asyncio
    async def test_payment_with_key_is_idempotent(self, store, loan):
        cmd = PaymentCommand(amount="1000", date=date(2025, 2, 1), idempotency_key="pay-1")
        first = await lifecycle.process_payment(store, ORG, loan.id, cmd)
        second = await lifecycle.process_payment(store, ORG, loan.id, cmd)
        assert first.id == second.id
        assert len(await _ledger(store, loan.id)) == 1

    @pytest.mark.asyncio
    async def test_payment_retry_after_settlement_returns_original(self, store, loan):
        cmd = PaymentCommand(amount="1000", date=date(2025, 2, 1), idempotency_key="pay-1")
        first = await lifecycle.process_payment(store, ORG, loan.id, cmd)
        await lifecycle.settle_loan(store, ORG, loan.id, SettleCommand(date=SETTLE_DAY))

        retry = await lifecycle.process_payment(store, ORG, loan.id, cmd)
        assert retry.id == first.id
        assert len(await _ledger(store, loan.id)) == 2

    @pytest.mark.asyncio
    async def test_payment_key_of_another_loan_is_rejected(self, store, facility, loan):
        other = await draw(store, facility, amount="5000")
        cmd = PaymentCommand(amount="1000", date=date(2025, 2, 1), idempotency_key="pay-1")
        await lifecycle.process_payment(store, ORG, loan.id, cmd)
        with pytest.raises(LedgerValidationError) as exc:
            await lifecycle.process_payment(store, ORG, other.id, cmd)
        assert exc.value.field == "idempotency_key"

    @pytest.mark.asyncio
    async def test_payment_on_settled_loan_is_rejected(self, store, loan):
        await lifecycle.settle_loan(store, ORG, loan.id, SettleCommand(date=SETTLE_DAY))
        with pytest.raises(InvalidStateTransitionError) as exc:
            await lifecycle.process_payment(
                store, ORG, loan.id, PaymentCommand(amount="1", date=SETTLE_DAY)
            )
        assert exc.value.current_state == "settled"


class TestSettle:

    @pytest.mark.asyncio
    async def test_settle_posts_exactly_one_repayment(self, store, loan):
        settled, tx = await lifecycle.settle_loan(store, ORG, loan.id, SettleCommand(date=SETTLE_DAY))

        assert settled.status == LoanStatus.SETTLED
        assert settled.settled_date == SETTLE_DAY
        assert settled.settled_amount == Decimal("100000.00")
        assert tx.type == TransactionType.REPAYMENT
        assert tx.reference == f"SETTLE-{loan.id[:8]}"
        assert tx.allocation["settlement"] == "100000.00"

        ledger = await _ledger(store, loan.id)
        assert [t.id for t in ledger] == [tx.id]
        balance = await calculate_loan_balance(store, ORG, loan.id)
        assert balance.total == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_settle_twice_same_date_returns_first_result(self, store, loan):
        _, first = await lifecycle.settle_loan(store, ORG, loan.id, SettleCommand(date=SETTLE_DAY))
        again, second = await lifecycle.settle_loan(store, ORG, loan.id, SettleCommand(date=SETTLE_DAY))
        assert again.status == LoanStatus.SETTLED
        assert second.id == first.id
        assert len(await _ledger(store, loan.id)) == 1

    @pytest.mark.asyncio
    async def test_settle_again_on_another_date_is_rejected(self, store, loan):
        await lifecycle.settle_loan(store, ORG, loan.id, SettleCommand(date=SETTLE_DAY))
        with pytest.raises(InvalidStateTransitionError):
            await lifecycle.settle_loan(store, ORG, loan.id, SettleCommand(date=date(2025, 3, 20)))

    @pytest.mark.asyncio
    async def test_settle_includes_posted_interest(self, store, loan):
        await lifecycle.process_payment(store, ORG, loan.id, PaymentCommand(amount="30000", date=date(2025, 2, 1)))
        await transactions.add_transaction(
            store, ORG,
            NewTransaction(
                type=TransactionType.INTEREST, amount="500", date=date(2025, 2, 28), loan_id=loan.id
            ),
        )
        settled, tx = await lifecycle.settle_loan(store, ORG, loan.id, SettleCommand(date=SETTLE_DAY))
        assert tx.amount == Decimal("70500.00")
        assert tx.allocation["interest"] == "500.00"
        assert settled.settled_amount == Decimal("70500.00")

    @pytest.mark.asyncio
    async def test_fully_repaid_loan_settles_without_posting(self, store, loan):
        await lifecycle.process_payment(store, ORG, loan.id, PaymentCommand(amount="100000", date=date(2025, 2, 1)))
        settled, tx = await lifecycle.settle_loan(store, ORG, loan.id, SettleCommand(date=SETTLE_DAY))
        assert tx is None
        assert settled.settled_amount == Decimal("0.00")
        assert len(await _ledger(store, loan.id)) == 1

    @pytest.mark.asyncio
    async def test_explicit_amount(self, store, loan):
        _, tx = await lifecycle.settle_loan(
            store, ORG, loan.id, SettleCommand(date=SETTLE_DAY, amount="95000")
        )
        assert tx.amount == Decimal("95000.00")

    @pytest.mark.asyncio
    async def test_cancelled_loan_cannot_be_settled(self, store, loan):
        await lifecycle.delete_loan(store, ORG, loan.id, reason="entered twice")
        with pytest.raises(InvalidStateTransitionError):
            await lifecycle.settle_loan(store, ORG, loan.id, SettleCommand(date=SETTLE_DAY))


class TestReverseSettlement:

    @pytest.mark.asyncio
    async def test_reversal_restores_active_loan_and_balance(self, store, loan):
        _, settlement = await lifecycle.settle_loan(store, ORG, loan.id, SettleCommand(date=SETTLE_DAY))
        reversed_loan = await lifecycle.reverse_loan_settlement(
            store, ORG, loan.id, "posted in error", user_id=USER
        )

        assert reversed_loan.status == LoanStatus.ACTIVE
        assert reversed_loan.settled_date is None
        assert reversed_loan.settled_amount is None
        assert reversed_loan.reversal_reason == "posted in error"
        assert reversed_loan.reversed_by == USER
        assert reversed_loan.reversal_count == 1

        ledger = await _ledger(store, loan.id)
        assert len(ledger) == 2
        offset = next(t for t in ledger if t.type == TransactionType.REVERSAL)
        assert offset.amount == settlement.amount
        assert offset.allocation == {"reverses": settlement.id}

        balance = await calculate_loan_balance(store, ORG, loan.id)
        assert balance.principal == Decimal("100000.00")

    @pytest.mark.asyncio
    async def test_second_reversal_is_rejected(self, store, loan):
        await lifecycle.settle_loan(store, ORG, loan.id, SettleCommand(date=SETTLE_DAY))
        await lifecycle.reverse_loan_settlement(store, ORG, loan.id, "posted in error")
        with pytest.raises(InvalidStateTransitionError):
            await lifecycle.reverse_loan_settlement(store, ORG, loan.id, "again")

    @pytest.mark.asyncio
    async def test_reason_is_required(self, store, loan):
        await lifecycle.settle_loan(store, ORG, loan.id, SettleCommand(date=SETTLE_DAY))
        with pytest.raises(LedgerValidationError):
            await lifecycle.reverse_loan_settlement(store, ORG, loan.id, "  ")

    @pytest.mark.asyncio
    async def test_resettle_same_date_after_reversal_posts_again(self, store, loan):
        _, first = await lifecycle.settle_loan(store, ORG, loan.id, SettleCommand(date=SETTLE_DAY))
        await lifecycle.reverse_loan_settlement(store, ORG, loan.id, "wrong amount")
        _, second = await lifecycle.settle_loan(store, ORG, loan.id, SettleCommand(date=SETTLE_DAY))
        assert second.id != first.id
        assert second.idempotency_key.endswith(":R1")
        balance = await calculate_loan_balance(store, ORG, loan.id)
        assert balance.total == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_reversal_is_audited_with_prior_settlement(self, store, loan):
        await lifecycle.settle_loan(store, ORG, loan.id, SettleCommand(date=SETTLE_DAY))
        await lifecycle.reverse_loan_settlement(store, ORG, loan.id, "posted in error")
        entries = await list_audit_entries(store, ORG, entity_type="loan", entity_id=loan.id)
        reversal = entries[0]
        assert reversal.action == "settlement_reversed"
        assert reversal.old_values["settled_date"] == SETTLE_DAY.isoformat()
        assert reversal.details == "posted in error"


class TestRevolve:

    @pytest.mark.asyncio
    async def test_revolve_closes_and_reopens(self, store, loan):
        closed, successor = await lifecycle.revolve_loan(
            store, ORG, loan.id, RevolveCommand(date=DUE, due_date=date(2025, 7, 1))
        )
        assert closed.status == LoanStatus.SETTLED
        assert closed.settled_date == DUE
        assert successor.status == LoanStatus.ACTIVE
        assert successor.parent_loan_id == loan.id
        assert successor.cycle_number == 2
        assert successor.amount == loan.amount
        assert successor.start_date == DUE
        assert successor.reference_number == f"{loan.reference_number}-C2"

        ledger = await _ledger(store, loan.id)
        assert len(ledger) == 1
        assert ledger[0].reference == f"REVOLVE-{loan.id[:8]}"

    @pytest.mark.asyncio
    async def test_revolve_replay_returns_existing_successor(self, store, loan):
        cmd = RevolveCommand(date=DUE, due_date=date(2025, 7, 1))
        _, first = await lifecycle.revolve_loan(store, ORG, loan.id, cmd)
        _, second = await lifecycle.revolve_loan(store, ORG, loan.id, cmd)
        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_revolve_with_new_terms(self, store, loan):
        _, successor = await lifecycle.revolve_loan(
            store, ORG, loan.id,
            RevolveCommand(date=DUE, due_date=date(2025, 7, 1), amount="80000", sibor_rate="4.5"),
        )
        assert successor.amount == Decimal("80000.00")
        assert successor.bank_rate == Decimal("6.0000")

    @pytest.mark.asyncio
    async def test_successor_reference_does_not_stack_cycle_suffix(self, store, loan):
        _, second = await lifecycle.revolve_loan(
            store, ORG, loan.id, RevolveCommand(date=DUE, due_date=date(2025, 7, 1))
        )
        _, third = await lifecycle.revolve_loan(
            store, ORG, second.id, RevolveCommand(date=date(2025, 7, 1), due_date=date(2025, 10, 1))
        )
        assert third.reference_number == f"{loan.reference_number}-C3"

    @pytest.mark.asyncio
    async def test_revolved_loan_cannot_be_reversed(self, store, loan):
        cmd = RevolveCommand(date=DUE, due_date=date(2025, 7, 1))
        _, successor = await lifecycle.revolve_loan(store, ORG, loan.id, cmd)

        with pytest.raises(InvalidStateTransitionError) as exc:
            await lifecycle.reverse_loan_settlement(store, ORG, loan.id, "wrong cycle")
        assert exc.value.current_state == "revolved"

        ledger = await _ledger(store, loan.id)
        assert [t.type for t in ledger] == [TransactionType.REPAYMENT]
        _, replayed = await lifecycle.revolve_loan(store, ORG, loan.id, cmd)
        assert replayed.id == successor.id
        assert len(await entities.list_loans(store, ORG)) == 2

    @pytest.mark.asyncio
    async def test_reversal_offsets_revolve_once_successor_is_gone(self, store, loan):
        cmd = RevolveCommand(date=DUE, due_date=date(2025, 7, 1))
        _, successor = await lifecycle.revolve_loan(store, ORG, loan.id, cmd)
        await lifecycle.delete_loan(store, ORG, successor.id)
        await lifecycle.permanently_delete_loan(store, ORG, successor.id)

        reopened = await lifecycle.reverse_loan_settlement(store, ORG, loan.id, "booked on wrong facility")
        assert reopened.status == LoanStatus.ACTIVE
        balance = await calculate_loan_balance(store, ORG, loan.id)
        assert balance.principal == Decimal("100000.00")

        _, again = await lifecycle.revolve_loan(store, ORG, loan.id, cmd)
        assert again.cycle_number == 2
        closing = [t for t in await _ledger(store, loan.id) if t.type == TransactionType.REPAYMENT]
        assert sorted(t.idempotency_key for t in closing) == [
            f"REVOLVE:{loan.id}:{DUE.isoformat()}",
            f"REVOLVE:{loan.id}:{DUE.isoformat()}:R1",
        ]

    @pytest.mark.asyncio
    async def test_settle_on_revolve_date_is_rejected(self, store, loan):
        await lifecycle.revolve_loan(store, ORG, loan.id, RevolveCommand(date=DUE, due_date=date(2025, 7, 1)))
        with pytest.raises(InvalidStateTransitionError):
            await lifecycle.settle_loan(store, ORG, loan.id, SettleCommand(date=DUE))

    @pytest.mark.asyncio
    async def test_term_facility_cannot_revolve(self, store, bank):
        term = await make_facility(store, bank, facility_type=FacilityType.TERM)
        loan = await draw(store, term)
        with pytest.raises(LedgerValidationError):
            await lifecycle.revolve_loan(store, ORG, loan.id, RevolveCommand(date=DUE, due_date=date(2025, 7, 1)))
        assert (await calculate_loan_balance(store, ORG, loan.id)).principal == Decimal("100000.00")


class TestCancelAndDelete:

    @pytest.mark.asyncio
    async def test_cancel(self, store, loan):
        cancelled = await lifecycle.delete_loan(store, ORG, loan.id, reason="duplicate")
        assert cancelled.status == LoanStatus.CANCELLED
        assert cancelled.cancellation_reason == "duplicate"
        assert cancelled.cancelled_at is not None

    @pytest.mark.asyncio
    async def test_cancelled_is_terminal(self, store, loan):
        await lifecycle.delete_loan(store, ORG, loan.id)
        with pytest.raises(InvalidStateTransitionError):
            await lifecycle.delete_loan(store, ORG, loan.id)

    @pytest.mark.asyncio
    async def test_permanent_delete_of_cancelled_loan(self, store, loan):
        await lifecycle.delete_loan(store, ORG, loan.id)
        await lifecycle.permanently_delete_loan(store, ORG, loan.id)
        with pytest.raises(NotFoundError):
            await lifecycle.permanently_delete_loan(store, ORG, loan.id)

    @pytest.mark.asyncio
    async def test_permanent_delete_of_active_loan_is_rejected(self, store, loan):
        with pytest.raises(InvalidStateTransitionError):
            await lifecycle.permanently_delete_loan(store, ORG, loan.id)

    @pytest.mark.asyncio
    async def test_permanent_delete_keeps_ledger_history(self, store, loan):
        paid = await lifecycle.process_payment(
            store, ORG, loan.id, PaymentCommand(amount="10", date=date(2025, 2, 1))
        )
        await lifecycle.delete_loan(store, ORG, loan.id)
        await lifecycle.permanently_delete_loan(store, ORG, loan.id)

        assert await entities.list_loans(store, ORG) == []
        with pytest.raises(NotFoundError):
            await transactions.get_loan_ledger(store, ORG, loan.id)
        assert [t.id for t in await _ledger(store, loan.id)] == [paid.id]


class TestAmendAndOverdue:

    @pytest.mark.asyncio
    async def test_rate_change_recomputes_bank_rate(self, store, loan):
        amended = await lifecycle.amend_loan(
            store, ORG, loan.id, LoanAmendment(margin="2.0", reason="repriced"), today=date(2025, 2, 1)
        )
        assert amended.bank_rate == Decimal("7.0000")

    @pytest.mark.asyncio
    async def test_empty_amendment_is_rejected(self, store, loan):
        with pytest.raises(LedgerValidationError):
            await lifecycle.amend_loan(store, ORG, loan.id, LoanAmendment())

    @pytest.mark.asyncio
    async def test_overdue_sweep_and_extension(self, store, loan):
        marked = await lifecycle.mark_overdue_loans(store, ORG, date(2025, 4, 2))
        assert [l.id for l in marked] == [loan.id]
        assert marked[0].status == LoanStatus.OVERDUE

        extended = await lifecycle.amend_loan(
            store, ORG, loan.id, LoanAmendment(due_date=date(2025, 6, 1)), today=date(2025, 4, 2)
        )
        assert extended.status == LoanStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_sweep_leaves_loans_due_today(self, store, loan):
        assert await lifecycle.mark_overdue_loans(store, ORG, DUE) == []

    @pytest.mark.asyncio
    async def test_overdue_loan_can_be_settled(self, store, loan):
        await lifecycle.mark_overdue_loans(store, ORG, date(2025, 4, 2))
        settled, _ = await lifecycle.settle_loan(store, ORG, loan.id, SettleCommand(date=date(2025, 4, 5)))
        assert settled.status == LoanStatus.SETTLED

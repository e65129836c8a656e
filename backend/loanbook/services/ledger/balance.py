"""Loan balance derived from the ledger.

The balance is never stored.  It is recomputed from ``loan.amount`` and the
loan's transactions every time, so it cannot drift from the ledger.

    principal = max(0, amount - repayments + reversals)
    interest  = sum(interest postings)
    fees      = sum(fee postings)
    total     = principal + interest + fees
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from loanbook.models import TransactionType
from loanbook.services.ledger.errors import NotFoundError
from loanbook.services.ledger.money import ZERO, money_str
from loanbook.services.ledger.records import LoanRecord, TransactionFilter, TransactionRecord
from loanbook.services.ledger.store import LedgerStore, StoreSession


@dataclass(frozen=True)
class LoanBalance:
    principal: Decimal
    interest: Decimal
    fees: Decimal
    total: Decimal

    def to_dict(self) -> dict:
        return {
            "principal": money_str(self.principal),
            "interest": money_str(self.interest),
            "fees": money_str(self.fees),
            "total": money_str(self.total),
        }


def compute_balance(loan: LoanRecord, transactions: Iterable[TransactionRecord]) -> LoanBalance:
    repaid = ZERO
    interest = ZERO
    fees = ZERO
    for tx in transactions:
        if tx.loan_id != loan.id:
            continue
        if tx.type == TransactionType.REPAYMENT:
            repaid += tx.amount
        elif tx.type == TransactionType.REVERSAL:
            repaid -= tx.amount
        elif tx.type == TransactionType.INTEREST:
            interest += tx.amount
        elif tx.type == TransactionType.FEE:
            fees += tx.amount

    principal = max(ZERO, loan.amount - repaid)
    return LoanBalance(
        principal=principal,
        interest=interest,
        fees=fees,
        total=principal + interest + fees,
    )


async def balance_in_session(session: StoreSession, loan: LoanRecord) -> LoanBalance:
    """Balance of an already-loaded loan, read inside the caller's unit."""
    transactions = await session.list_transactions(
        loan.organization_id, TransactionFilter(loan_id=loan.id)
    )
    return compute_balance(loan, transactions)


async def calculate_loan_balance(store: LedgerStore, organization_id: str, loan_id: str) -> LoanBalance:
    async with store.unit_of_work() as session:
        loan = await session.get_loan(organization_id, loan_id)
        if loan is None:
            raise NotFoundError("loan", loan_id)
        return await balance_in_session(session, loan)

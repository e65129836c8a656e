"""Append-only ledger of money movements against a loan/facility/bank."""

import enum
from datetime import datetime, date
from decimal import Decimal
from sqlalchemy import (
    String, Numeric, Enum, DateTime, Date, ForeignKey, Text, JSON,
    Index, CheckConstraint, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from loanbook.database import Base, enum_values
from loanbook.models.common import new_id, utcnow


class TransactionType(str, enum.Enum):
    REPAYMENT = "repayment"
    INTEREST = "interest"
    FEE = "fee"
    REVERSAL = "reversal"


class Transaction(Base):
    """Immutable once written; corrections are new rows."""

    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        UniqueConstraint(
            "organization_id", "idempotency_key", name="uq_transactions_idempotency"
        ),
        Index("ix_transactions_org_date", "organization_id", "date"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    # Plain column: postings outlive a permanently deleted loan.
    loan_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    facility_id: Mapped[str | None] = mapped_column(ForeignKey("facilities.id"), nullable=True)
    bank_id: Mapped[str] = mapped_column(ForeignKey("banks.id"), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType, values_callable=enum_values), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    memo: Mapped[str | None] = mapped_column(Text, nullable=True)
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    allocation: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

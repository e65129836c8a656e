"""Loan (drawdown) model."""

import enum
from datetime import datetime, date
from decimal import Decimal
from sqlalchemy import (
    String, Numeric, Integer, Enum, DateTime, Date, ForeignKey, Text, CheckConstraint
)
from sqlalchemy.orm import Mapped, mapped_column

from loanbook.database import Base, enum_values
from loanbook.models.common import new_id, utcnow


class LoanStatus(str, enum.Enum):
    ACTIVE = "active"
    OVERDUE = "overdue"
    SETTLED = "settled"
    CANCELLED = "cancelled"


class InterestBasis(str, enum.Enum):
    ACTUAL_365 = "actual_365"
    ACTUAL_360 = "actual_360"


class Loan(Base):
    __tablename__ = "loans"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_loans_amount_positive"),
        CheckConstraint("cycle_number >= 1", name="ck_loans_cycle_number"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    facility_id: Mapped[str] = mapped_column(ForeignKey("facilities.id"), nullable=False, index=True)
    credit_line_id: Mapped[str | None] = mapped_column(
        ForeignKey("credit_lines.id"), nullable=True
    )
    reference_number: Mapped[str] = mapped_column(String(50), nullable=False)

    # Terms
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    sibor_rate: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)
    margin: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)
    bank_rate: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)
    interest_basis: Mapped[InterestBasis] = mapped_column(
        Enum(InterestBasis, values_callable=enum_values),
        default=InterestBasis.ACTUAL_365,
        nullable=False,
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    charges_due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Lifecycle
    status: Mapped[LoanStatus] = mapped_column(
        Enum(LoanStatus, values_callable=enum_values),
        default=LoanStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    settled_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    settled_amount: Mapped[Decimal | None] = mapped_column(Numeric(15, 2), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Reversal audit
    reversed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reversal_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reversed_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    reversal_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Revolve lineage
    parent_loan_id: Mapped[str | None] = mapped_column(
        ForeignKey("loans.id", ondelete="SET NULL"), nullable=True, index=True
    )
    cycle_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    last_accrual_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

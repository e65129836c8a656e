"""Facility and CreditLine models."""

import enum
from datetime import datetime, date
from decimal import Decimal
from sqlalchemy import (
    String, Numeric, Integer, Enum, DateTime, Date, ForeignKey, Text, CheckConstraint
)
from sqlalchemy.orm import Mapped, mapped_column

from loanbook.database import Base, enum_values
from loanbook.models.common import RecordStatus, new_id, utcnow


class FacilityType(str, enum.Enum):
    REVOLVING = "revolving"
    TERM = "term"
    BULLET = "bullet"
    BRIDGE = "bridge"
    WORKING_CAPITAL = "working_capital"
    NON_CASH_GUARANTEE = "non_cash_guarantee"


class Facility(Base):
    __tablename__ = "facilities"
    __table_args__ = (
        CheckConstraint("credit_limit >= 0", name="ck_facilities_credit_limit"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    bank_id: Mapped[str] = mapped_column(ForeignKey("banks.id"), nullable=False, index=True)
    facility_type: Mapped[FacilityType] = mapped_column(
        Enum(FacilityType, values_callable=enum_values), nullable=False
    )
    credit_limit: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    cost_of_funding: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    expiry_date: Mapped[date] = mapped_column(Date, nullable=False)
    max_revolving_period: Mapped[int | None] = mapped_column(Integer, nullable=True)
    terms: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[RecordStatus] = mapped_column(
        Enum(RecordStatus, values_callable=enum_values),
        default=RecordStatus.ACTIVE,
        nullable=False,
    )
    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class CreditLine(Base):
    """Legacy sub-allocation of a facility."""

    __tablename__ = "credit_lines"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    facility_id: Mapped[str] = mapped_column(ForeignKey("facilities.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    credit_line_type: Mapped[str] = mapped_column(String(50), nullable=False)
    credit_limit: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    interest_rate: Mapped[Decimal | None] = mapped_column(Numeric(7, 4), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[RecordStatus] = mapped_column(
        Enum(RecordStatus, values_callable=enum_values),
        default=RecordStatus.ACTIVE,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

"""Collateral assets and their pledges to banks, facilities or credit lines."""

import enum
from datetime import datetime, date
from decimal import Decimal
from sqlalchemy import String, Numeric, Enum, DateTime, Date, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column

from loanbook.database import Base, enum_values
from loanbook.models.common import RecordStatus, new_id, utcnow


class CollateralType(str, enum.Enum):
    REAL_ESTATE = "real_estate"
    LIQUID_STOCKS = "liquid_stocks"
    CASH_DEPOSIT = "cash_deposit"
    OTHER = "other"


class Collateral(Base):
    __tablename__ = "collateral"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    collateral_type: Mapped[CollateralType] = mapped_column(
        Enum(CollateralType, values_callable=enum_values), nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    current_value: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    valuation_date: Mapped[date] = mapped_column(Date, nullable=False)
    valuation_source: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[RecordStatus] = mapped_column(
        Enum(RecordStatus, values_callable=enum_values),
        default=RecordStatus.ACTIVE,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class CollateralAssignment(Base):
    """Pledge of one collateral item to exactly one bank, facility or credit line."""

    __tablename__ = "collateral_assignments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    collateral_id: Mapped[str] = mapped_column(ForeignKey("collateral.id"), nullable=False, index=True)
    bank_id: Mapped[str | None] = mapped_column(ForeignKey("banks.id"), nullable=True)
    facility_id: Mapped[str | None] = mapped_column(ForeignKey("facilities.id"), nullable=True)
    credit_line_id: Mapped[str | None] = mapped_column(ForeignKey("credit_lines.id"), nullable=True)
    status: Mapped[RecordStatus] = mapped_column(
        Enum(RecordStatus, values_callable=enum_values),
        default=RecordStatus.ACTIVE,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

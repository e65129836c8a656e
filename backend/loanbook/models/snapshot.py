"""Daily portfolio exposure snapshots."""

from datetime import datetime, date
from decimal import Decimal
from sqlalchemy import String, Numeric, Integer, DateTime, Date, JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from loanbook.database import Base
from loanbook.models.common import new_id, utcnow


class PortfolioSnapshot(Base):
    __tablename__ = "portfolio_snapshots"
    __table_args__ = (
        UniqueConstraint("organization_id", "snapshot_date", name="uq_snapshots_org_date"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_outstanding: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    total_credit_limit: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    total_collateral_value: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    portfolio_ltv: Mapped[Decimal] = mapped_column(Numeric(9, 2), nullable=False)
    active_loans_count: Mapped[int] = mapped_column(Integer, nullable=False)
    bank_exposures: Mapped[list | None] = mapped_column(JSON, nullable=True)
    metrics: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

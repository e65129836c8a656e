"""Bank model: global (no owning organization) or organization-owned."""

from datetime import datetime
from sqlalchemy import String, Enum, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from loanbook.database import Base, enum_values
from loanbook.models.common import RecordStatus, new_id, utcnow


class Bank(Base):
    __tablename__ = "banks"
    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="uq_banks_org_code"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    code: Mapped[str] = mapped_column(String(10), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[RecordStatus] = mapped_column(
        Enum(RecordStatus, values_callable=enum_values),
        default=RecordStatus.ACTIVE,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

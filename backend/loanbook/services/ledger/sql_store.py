"""SQLAlchemy-backed ledger store.

One ``AsyncSession`` per unit of work, opened inside ``session.begin()`` so the
whole unit commits or rolls back together.  Mutating units read the loan with
``SELECT ... FOR UPDATE``; that row lock serialises concurrent writers on the
same loan (a no-op on SQLite, which serialises writers anyway).
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import fields
from typing import AsyncIterator

from sqlalchemy import select, update, delete, func as sa_func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from loanbook.database import Base
from loanbook.models import (
    AuditLog,
    Bank,
    Collateral,
    CollateralAssignment,
    CreditLine,
    Facility,
    Loan,
    PortfolioSnapshot,
    RecordStatus,
    Transaction,
)
from loanbook.models.common import utcnow
from loanbook.services.ledger.errors import DuplicateIdempotencyKeyError
from loanbook.services.ledger.records import (
    AuditRecord,
    BankRecord,
    CollateralAssignmentRecord,
    CollateralRecord,
    CreditLineRecord,
    FacilityRecord,
    LoanRecord,
    SnapshotRecord,
    TransactionFilter,
    TransactionRecord,
)
from loanbook.services.ledger.store import LedgerStore, StoreSession

logger = logging.getLogger(__name__)

# Columns filled by the ORM's Python-side defaults when the record leaves them unset.
_STORE_ASSIGNED = ("id", "created_at", "updated_at")


def _to_row(model, record):
    values = {}
    for f in fields(record):
        value = getattr(record, f.name)
        if value is None and f.name in _STORE_ASSIGNED:
            continue
        values[f.name] = value
    return model(**values)


def _to_record(record_cls, row):
    if row is None:
        return None
    return record_cls(**{f.name: getattr(row, f.name) for f in fields(record_cls)})


def _copy_onto(row, record) -> None:
    for f in fields(record):
        if f.name in ("id", "created_at"):
            continue
        setattr(row, f.name, getattr(record, f.name))
    if hasattr(row, "updated_at"):
        row.updated_at = utcnow()


def _transaction_clauses(organization_id: str, filters: TransactionFilter) -> list:
    clauses = [Transaction.organization_id == organization_id]
    if filters.date_from:
        clauses.append(Transaction.date >= filters.date_from)
    if filters.date_to:
        clauses.append(Transaction.date <= filters.date_to)
    if filters.bank_id:
        clauses.append(Transaction.bank_id == filters.bank_id)
    if filters.facility_id:
        clauses.append(Transaction.facility_id == filters.facility_id)
    if filters.loan_id:
        clauses.append(Transaction.loan_id == filters.loan_id)
    if filters.type:
        clauses.append(Transaction.type == filters.type)
    return clauses


class SqlSession(StoreSession):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _insert(self, model, record_cls, record):
        row = _to_row(model, record)
        self.db.add(row)
        await self.db.flush()
        return _to_record(record_cls, row)

    async def _update(self, model, record_cls, record):
        row = await self.db.get(model, record.id)
        _copy_onto(row, record)
        await self.db.flush()
        return _to_record(record_cls, row)

    async def _scoped(self, model, record_cls, organization_id, entity_id, *, for_update=False):
        stmt = select(model).where(model.id == entity_id, model.organization_id == organization_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return _to_record(record_cls, result.scalar_one_or_none())

    async def _listed(self, model, record_cls, organization_id, include_inactive, *order_by):
        stmt = select(model).where(model.organization_id == organization_id)
        if not include_inactive:
            stmt = stmt.where(model.status == RecordStatus.ACTIVE)
        result = await self.db.execute(stmt.order_by(*order_by))
        return [_to_record(record_cls, row) for row in result.scalars().all()]

    # ── Banks ────────────────────────────────────────────────
    async def list_banks(self, organization_id, *, include_inactive=False):
        stmt = select(Bank).where(
            or_(Bank.organization_id.is_(None), Bank.organization_id == organization_id)
        )
        if not include_inactive:
            stmt = stmt.where(Bank.status == RecordStatus.ACTIVE)
        result = await self.db.execute(stmt.order_by(Bank.name))
        return [_to_record(BankRecord, row) for row in result.scalars().all()]

    async def get_bank(self, bank_id):
        return _to_record(BankRecord, await self.db.get(Bank, bank_id))

    async def add_bank(self, bank):
        return await self._insert(Bank, BankRecord, bank)

    async def save_bank(self, bank):
        return await self._update(Bank, BankRecord, bank)

    # ── Facilities ───────────────────────────────────────────
    async def list_facilities(self, organization_id, *, include_inactive=False):
        return await self._listed(
            Facility, FacilityRecord, organization_id, include_inactive,
            Facility.expiry_date, Facility.created_at,
        )

    async def get_facility(self, organization_id, facility_id):
        return await self._scoped(Facility, FacilityRecord, organization_id, facility_id)

    async def add_facility(self, facility):
        return await self._insert(Facility, FacilityRecord, facility)

    async def save_facility(self, facility):
        return await self._update(Facility, FacilityRecord, facility)

    # ── Credit lines ─────────────────────────────────────────
    async def list_credit_lines(self, organization_id, *, include_inactive=False):
        return await self._listed(
            CreditLine, CreditLineRecord, organization_id, include_inactive, CreditLine.name
        )

    async def get_credit_line(self, organization_id, credit_line_id):
        return await self._scoped(CreditLine, CreditLineRecord, organization_id, credit_line_id)

    async def add_credit_line(self, credit_line):
        return await self._insert(CreditLine, CreditLineRecord, credit_line)

    async def save_credit_line(self, credit_line):
        return await self._update(CreditLine, CreditLineRecord, credit_line)

    # ── Collateral ───────────────────────────────────────────
    async def list_collateral(self, organization_id, *, include_inactive=False):
        return await self._listed(
            Collateral, CollateralRecord, organization_id, include_inactive, Collateral.name
        )

    async def get_collateral(self, organization_id, collateral_id):
        return await self._scoped(Collateral, CollateralRecord, organization_id, collateral_id)

    async def add_collateral(self, collateral):
        return await self._insert(Collateral, CollateralRecord, collateral)

    async def save_collateral(self, collateral):
        return await self._update(Collateral, CollateralRecord, collateral)

    async def list_collateral_assignments(self, organization_id, *, include_inactive=False):
        return await self._listed(
            CollateralAssignment, CollateralAssignmentRecord, organization_id, include_inactive,
            CollateralAssignment.created_at,
        )

    async def get_collateral_assignment(self, organization_id, assignment_id):
        return await self._scoped(
            CollateralAssignment, CollateralAssignmentRecord, organization_id, assignment_id
        )

    async def add_collateral_assignment(self, assignment):
        return await self._insert(CollateralAssignment, CollateralAssignmentRecord, assignment)

    async def save_collateral_assignment(self, assignment):
        return await self._update(CollateralAssignment, CollateralAssignmentRecord, assignment)

    # ── Loans ────────────────────────────────────────────────
    async def list_loans(self, organization_id, *, statuses=None):
        stmt = select(Loan).where(Loan.organization_id == organization_id)
        if statuses is not None:
            stmt = stmt.where(Loan.status.in_(list(statuses)))
        result = await self.db.execute(stmt.order_by(Loan.due_date, Loan.created_at))
        return [_to_record(LoanRecord, row) for row in result.scalars().all()]

    async def get_loan(self, organization_id, loan_id, *, for_update=False):
        return await self._scoped(Loan, LoanRecord, organization_id, loan_id, for_update=for_update)

    async def find_successor_loan(self, organization_id, parent_loan_id):
        result = await self.db.execute(
            select(Loan)
            .where(Loan.organization_id == organization_id, Loan.parent_loan_id == parent_loan_id)
            .order_by(Loan.created_at)
            .limit(1)
        )
        return _to_record(LoanRecord, result.scalar_one_or_none())

    async def add_loan(self, loan):
        return await self._insert(Loan, LoanRecord, loan)

    async def save_loan(self, loan):
        return await self._update(Loan, LoanRecord, loan)

    async def remove_loan(self, organization_id, loan_id):
        await self.db.execute(
            update(Loan)
            .where(Loan.organization_id == organization_id, Loan.parent_loan_id == loan_id)
            .values(parent_loan_id=None)
        )
        await self.db.execute(
            delete(Loan).where(Loan.organization_id == organization_id, Loan.id == loan_id)
        )
        await self.db.flush()

    # ── Transactions ─────────────────────────────────────────
    async def add_transaction(self, transaction):
        try:
            return await self._insert(Transaction, TransactionRecord, transaction)
        except IntegrityError:
            if transaction.idempotency_key is None:
                raise
            logger.warning(
                "Idempotency key %s collided on insert for org %s",
                transaction.idempotency_key, transaction.organization_id,
            )
            raise DuplicateIdempotencyKeyError(transaction.idempotency_key)

    async def find_transaction_by_key(self, organization_id, idempotency_key):
        result = await self.db.execute(
            select(Transaction).where(
                Transaction.organization_id == organization_id,
                Transaction.idempotency_key == idempotency_key,
            )
        )
        return _to_record(TransactionRecord, result.scalar_one_or_none())

    async def list_transactions(self, organization_id, filters, *, limit=None, offset=0):
        stmt = (
            select(Transaction)
            .where(*_transaction_clauses(organization_id, filters))
            .order_by(Transaction.date.desc(), Transaction.created_at.desc(), Transaction.id.desc())
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return [_to_record(TransactionRecord, row) for row in result.scalars().all()]

    async def count_transactions(self, organization_id, filters):
        result = await self.db.execute(
            select(sa_func.count(Transaction.id)).where(
                *_transaction_clauses(organization_id, filters)
            )
        )
        return result.scalar_one()

    # ── Audit ────────────────────────────────────────────────
    async def add_audit_entry(self, entry):
        return await self._insert(AuditLog, AuditRecord, entry)

    async def list_audit_entries(self, organization_id, *, entity_type=None, entity_id=None):
        stmt = select(AuditLog).where(AuditLog.organization_id == organization_id)
        if entity_type:
            stmt = stmt.where(AuditLog.entity_type == entity_type)
        if entity_id:
            stmt = stmt.where(AuditLog.entity_id == entity_id)
        result = await self.db.execute(stmt.order_by(AuditLog.id.desc()))
        return [_to_record(AuditRecord, row) for row in result.scalars().all()]

    # ── Snapshots ────────────────────────────────────────────
    async def get_snapshot(self, organization_id, snapshot_date):
        result = await self.db.execute(
            select(PortfolioSnapshot).where(
                PortfolioSnapshot.organization_id == organization_id,
                PortfolioSnapshot.snapshot_date == snapshot_date,
            )
        )
        return _to_record(SnapshotRecord, result.scalar_one_or_none())

    async def add_snapshot(self, snapshot):
        return await self._insert(PortfolioSnapshot, SnapshotRecord, snapshot)

    async def list_snapshots(self, organization_id, *, date_from=None, date_to=None):
        stmt = select(PortfolioSnapshot).where(PortfolioSnapshot.organization_id == organization_id)
        if date_from:
            stmt = stmt.where(PortfolioSnapshot.snapshot_date >= date_from)
        if date_to:
            stmt = stmt.where(PortfolioSnapshot.snapshot_date <= date_to)
        result = await self.db.execute(stmt.order_by(PortfolioSnapshot.snapshot_date))
        return [_to_record(SnapshotRecord, row) for row in result.scalars().all()]

    async def list_organization_ids(self):
        result = await self.db.execute(
            select(Facility.organization_id).distinct().order_by(Facility.organization_id)
        )
        return list(result.scalars().all())


class SqlLedgerStore(LedgerStore):
    """Ledger store backed by an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker, engine: AsyncEngine | None = None):
        self._session_factory = session_factory
        self._engine = engine

    @property
    def backend_name(self) -> str:
        return "database"

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[StoreSession]:
        async with self._session_factory() as session:
            async with session.begin():
                yield SqlSession(session)

    async def initialize(self) -> None:
        """Create missing tables.  Production schemas are managed out of band."""
        async with self._session_factory() as session:
            conn = await session.connection()
            await conn.run_sync(Base.metadata.create_all)
            await session.commit()
        logger.info("Ledger tables ensured")

    async def close(self) -> None:
        """Dispose the engine when this store was handed ownership of it."""
        if self._engine is not None:
            await self._engine.dispose()

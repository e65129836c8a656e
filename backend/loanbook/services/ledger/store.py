"""Abstract ledger store and factory.

A ``LedgerStore`` hands out units of work.  Everything done through the
``StoreSession`` yielded by ``unit_of_work()`` commits together or not at all.
Reads return ``None`` when an id is unknown *or* owned by another
organization; the services turn that into ``NotFoundError``.

No invariant logic lives here.  The state machine and calculators sit in the
service modules and are shared by both implementations.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import date
from typing import Iterable

from loanbook.models import LoanStatus
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


class StoreSession(ABC):
    """Organization-scoped repository operations inside one unit of work."""

    # ── Banks ────────────────────────────────────────────────
    @abstractmethod
    async def list_banks(
        self, organization_id: str | None, *, include_inactive: bool = False
    ) -> list[BankRecord]:
        """Global banks plus banks owned by *organization_id*, ordered by name.

        ``None`` lists the global banks alone.
        """
        ...

    @abstractmethod
    async def get_bank(self, bank_id: str) -> BankRecord | None:
        ...

    @abstractmethod
    async def add_bank(self, bank: BankRecord) -> BankRecord:
        ...

    @abstractmethod
    async def save_bank(self, bank: BankRecord) -> BankRecord:
        ...

    # ── Facilities ───────────────────────────────────────────
    @abstractmethod
    async def list_facilities(self, organization_id: str, *, include_inactive: bool = False) -> list[FacilityRecord]:
        ...

    @abstractmethod
    async def get_facility(self, organization_id: str, facility_id: str) -> FacilityRecord | None:
        ...

    @abstractmethod
    async def add_facility(self, facility: FacilityRecord) -> FacilityRecord:
        ...

    @abstractmethod
    async def save_facility(self, facility: FacilityRecord) -> FacilityRecord:
        ...

    # ── Credit lines ─────────────────────────────────────────
    @abstractmethod
    async def list_credit_lines(self, organization_id: str, *, include_inactive: bool = False) -> list[CreditLineRecord]:
        ...

    @abstractmethod
    async def get_credit_line(self, organization_id: str, credit_line_id: str) -> CreditLineRecord | None:
        ...

    @abstractmethod
    async def add_credit_line(self, credit_line: CreditLineRecord) -> CreditLineRecord:
        ...

    @abstractmethod
    async def save_credit_line(self, credit_line: CreditLineRecord) -> CreditLineRecord:
        ...

    # ── Collateral ───────────────────────────────────────────
    @abstractmethod
    async def list_collateral(self, organization_id: str, *, include_inactive: bool = False) -> list[CollateralRecord]:
        ...

    @abstractmethod
    async def get_collateral(self, organization_id: str, collateral_id: str) -> CollateralRecord | None:
        ...

    @abstractmethod
    async def add_collateral(self, collateral: CollateralRecord) -> CollateralRecord:
        ...

    @abstractmethod
    async def save_collateral(self, collateral: CollateralRecord) -> CollateralRecord:
        ...

    @abstractmethod
    async def list_collateral_assignments(
        self, organization_id: str, *, include_inactive: bool = False
    ) -> list[CollateralAssignmentRecord]:
        ...

    @abstractmethod
    async def get_collateral_assignment(
        self, organization_id: str, assignment_id: str
    ) -> CollateralAssignmentRecord | None:
        ...

    @abstractmethod
    async def add_collateral_assignment(
        self, assignment: CollateralAssignmentRecord
    ) -> CollateralAssignmentRecord:
        ...

    @abstractmethod
    async def save_collateral_assignment(
        self, assignment: CollateralAssignmentRecord
    ) -> CollateralAssignmentRecord:
        ...

    # ── Loans ────────────────────────────────────────────────
    @abstractmethod
    async def list_loans(
        self, organization_id: str, *, statuses: Iterable[LoanStatus] | None = None
    ) -> list[LoanRecord]:
        """Loans ordered by due date, oldest first."""
        ...

    @abstractmethod
    async def get_loan(
        self, organization_id: str, loan_id: str, *, for_update: bool = False
    ) -> LoanRecord | None:
        """Fetch one loan; ``for_update`` locks the row until the unit ends."""
        ...

    @abstractmethod
    async def find_successor_loan(self, organization_id: str, parent_loan_id: str) -> LoanRecord | None:
        ...

    @abstractmethod
    async def add_loan(self, loan: LoanRecord) -> LoanRecord:
        ...

    @abstractmethod
    async def save_loan(self, loan: LoanRecord) -> LoanRecord:
        ...

    @abstractmethod
    async def remove_loan(self, organization_id: str, loan_id: str) -> None:
        ...

    # ── Transactions (append-only) ───────────────────────────
    @abstractmethod
    async def add_transaction(self, transaction: TransactionRecord) -> TransactionRecord:
        ...

    @abstractmethod
    async def find_transaction_by_key(
        self, organization_id: str, idempotency_key: str
    ) -> TransactionRecord | None:
        ...

    @abstractmethod
    async def list_transactions(
        self,
        organization_id: str,
        filters: TransactionFilter,
        *,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[TransactionRecord]:
        """Newest first: date descending, then creation order descending."""
        ...

    @abstractmethod
    async def count_transactions(self, organization_id: str, filters: TransactionFilter) -> int:
        ...

    # ── Audit ────────────────────────────────────────────────
    @abstractmethod
    async def add_audit_entry(self, entry: AuditRecord) -> AuditRecord:
        ...

    @abstractmethod
    async def list_audit_entries(
        self, organization_id: str, *, entity_type: str | None = None, entity_id: str | None = None
    ) -> list[AuditRecord]:
        ...

    # ── Snapshots ────────────────────────────────────────────
    @abstractmethod
    async def get_snapshot(self, organization_id: str, snapshot_date: date) -> SnapshotRecord | None:
        ...

    @abstractmethod
    async def add_snapshot(self, snapshot: SnapshotRecord) -> SnapshotRecord:
        ...

    @abstractmethod
    async def list_snapshots(
        self, organization_id: str, *, date_from: date | None = None, date_to: date | None = None
    ) -> list[SnapshotRecord]:
        ...

    # ── Tenancy ──────────────────────────────────────────────
    @abstractmethod
    async def list_organization_ids(self) -> list[str]:
        """Organizations that own at least one facility."""
        ...


class LedgerStore(ABC):
    """Abstract interface for ledger persistence."""

    @property
    @abstractmethod
    def backend_name(self) -> str:
        ...

    @abstractmethod
    def unit_of_work(self) -> AbstractAsyncContextManager[StoreSession]:
        """Open an atomic unit; commit on clean exit, roll back on exception."""
        ...

    async def initialize(self) -> None:
        """Prepare backing storage.  No-op by default."""

    async def close(self) -> None:
        """Release resources.  No-op by default."""


def get_ledger_store() -> LedgerStore:
    """Factory function that returns the configured ledger store."""
    from loanbook.config import settings

    backend = settings.storage_backend.lower()

    if backend == "memory":
        from loanbook.services.ledger.memory_store import MemoryLedgerStore
        return MemoryLedgerStore()
    else:
        from loanbook.database import async_session, engine
        from loanbook.services.ledger.sql_store import SqlLedgerStore
        return SqlLedgerStore(async_session, engine=engine)

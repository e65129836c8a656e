"""In-process ledger store.

Used for tests and single-process deployments (``STORAGE_BACKEND=memory``).
Units of work are serialised by one ``asyncio.Lock``; each unit works on a
shallow copy of the tables and the copy replaces the live state only when the
unit exits cleanly.  Records are frozen, so copying the dicts is enough.
"""

import asyncio
import itertools
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import date
from typing import AsyncIterator, Iterable

from loanbook.models import LoanStatus
from loanbook.models.common import new_id, utcnow
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


@dataclass
class _Tables:
    banks: dict[str, BankRecord] = field(default_factory=dict)
    facilities: dict[str, FacilityRecord] = field(default_factory=dict)
    credit_lines: dict[str, CreditLineRecord] = field(default_factory=dict)
    collateral: dict[str, CollateralRecord] = field(default_factory=dict)
    assignments: dict[str, CollateralAssignmentRecord] = field(default_factory=dict)
    loans: dict[str, LoanRecord] = field(default_factory=dict)
    transactions: dict[str, TransactionRecord] = field(default_factory=dict)
    tx_sequence: dict[str, int] = field(default_factory=dict)
    audit: list[AuditRecord] = field(default_factory=list)
    snapshots: dict[str, SnapshotRecord] = field(default_factory=dict)

    def copy(self) -> "_Tables":
        return _Tables(
            banks=dict(self.banks),
            facilities=dict(self.facilities),
            credit_lines=dict(self.credit_lines),
            collateral=dict(self.collateral),
            assignments=dict(self.assignments),
            loans=dict(self.loans),
            transactions=dict(self.transactions),
            tx_sequence=dict(self.tx_sequence),
            audit=list(self.audit),
            snapshots=dict(self.snapshots),
        )


def _owned(record, organization_id: str):
    if record is None or record.organization_id != organization_id:
        return None
    return record


def _visible(records: Iterable, organization_id: str, include_inactive: bool) -> list:
    return [
        r for r in records
        if r.organization_id == organization_id and (include_inactive or r.is_active)
    ]


class MemorySession(StoreSession):
    def __init__(self, tables: _Tables, sequence: itertools.count, audit_ids: itertools.count):
        self._t = tables
        self._sequence = sequence
        self._audit_ids = audit_ids

    def _stamp(self, record, *, updated: bool = True):
        now = utcnow()
        changes = {}
        if getattr(record, "id", None) is None:
            changes["id"] = new_id()
        if getattr(record, "created_at", None) is None:
            changes["created_at"] = now
        if updated and hasattr(record, "updated_at"):
            changes["updated_at"] = now
        return replace(record, **changes) if changes else record

    # ── Banks ────────────────────────────────────────────────
    async def list_banks(self, organization_id, *, include_inactive=False):
        banks = [
            b for b in self._t.banks.values()
            if (b.organization_id is None or b.organization_id == organization_id)
            and (include_inactive or b.is_active)
        ]
        return sorted(banks, key=lambda b: b.name)

    async def get_bank(self, bank_id):
        return self._t.banks.get(bank_id)

    async def add_bank(self, bank):
        bank = self._stamp(bank)
        self._t.banks[bank.id] = bank
        return bank

    async def save_bank(self, bank):
        self._t.banks[bank.id] = bank
        return bank

    # ── Facilities ───────────────────────────────────────────
    async def list_facilities(self, organization_id, *, include_inactive=False):
        facilities = _visible(self._t.facilities.values(), organization_id, include_inactive)
        return sorted(facilities, key=lambda f: (f.expiry_date, f.created_at))

    async def get_facility(self, organization_id, facility_id):
        return _owned(self._t.facilities.get(facility_id), organization_id)

    async def add_facility(self, facility):
        facility = self._stamp(facility)
        self._t.facilities[facility.id] = facility
        return facility

    async def save_facility(self, facility):
        facility = replace(facility, updated_at=utcnow())
        self._t.facilities[facility.id] = facility
        return facility

    # ── Credit lines ─────────────────────────────────────────
    async def list_credit_lines(self, organization_id, *, include_inactive=False):
        lines = _visible(self._t.credit_lines.values(), organization_id, include_inactive)
        return sorted(lines, key=lambda c: c.name)

    async def get_credit_line(self, organization_id, credit_line_id):
        return _owned(self._t.credit_lines.get(credit_line_id), organization_id)

    async def add_credit_line(self, credit_line):
        credit_line = self._stamp(credit_line)
        self._t.credit_lines[credit_line.id] = credit_line
        return credit_line

    async def save_credit_line(self, credit_line):
        credit_line = replace(credit_line, updated_at=utcnow())
        self._t.credit_lines[credit_line.id] = credit_line
        return credit_line

    # ── Collateral ───────────────────────────────────────────
    async def list_collateral(self, organization_id, *, include_inactive=False):
        items = _visible(self._t.collateral.values(), organization_id, include_inactive)
        return sorted(items, key=lambda c: c.name)

    async def get_collateral(self, organization_id, collateral_id):
        return _owned(self._t.collateral.get(collateral_id), organization_id)

    async def add_collateral(self, collateral):
        collateral = self._stamp(collateral)
        self._t.collateral[collateral.id] = collateral
        return collateral

    async def save_collateral(self, collateral):
        collateral = replace(collateral, updated_at=utcnow())
        self._t.collateral[collateral.id] = collateral
        return collateral

    async def list_collateral_assignments(self, organization_id, *, include_inactive=False):
        items = _visible(self._t.assignments.values(), organization_id, include_inactive)
        return sorted(items, key=lambda a: a.created_at)

    async def get_collateral_assignment(self, organization_id, assignment_id):
        return _owned(self._t.assignments.get(assignment_id), organization_id)

    async def add_collateral_assignment(self, assignment):
        assignment = self._stamp(assignment)
        self._t.assignments[assignment.id] = assignment
        return assignment

    async def save_collateral_assignment(self, assignment):
        assignment = replace(assignment, updated_at=utcnow())
        self._t.assignments[assignment.id] = assignment
        return assignment

    # ── Loans ────────────────────────────────────────────────
    async def list_loans(self, organization_id, *, statuses: Iterable[LoanStatus] | None = None):
        wanted = set(statuses) if statuses is not None else None
        loans = [
            loan for loan in self._t.loans.values()
            if loan.organization_id == organization_id
            and (wanted is None or loan.status in wanted)
        ]
        return sorted(loans, key=lambda loan: (loan.due_date, loan.created_at))

    async def get_loan(self, organization_id, loan_id, *, for_update=False):
        # The unit-of-work lock already serialises writers.
        return _owned(self._t.loans.get(loan_id), organization_id)

    async def find_successor_loan(self, organization_id, parent_loan_id):
        for loan in self._t.loans.values():
            if loan.organization_id == organization_id and loan.parent_loan_id == parent_loan_id:
                return loan
        return None

    async def add_loan(self, loan):
        loan = self._stamp(loan)
        self._t.loans[loan.id] = loan
        return loan

    async def save_loan(self, loan):
        loan = replace(loan, updated_at=utcnow())
        self._t.loans[loan.id] = loan
        return loan

    async def remove_loan(self, organization_id, loan_id):
        loan = _owned(self._t.loans.get(loan_id), organization_id)
        if loan is not None:
            del self._t.loans[loan_id]
            for other_id, other in list(self._t.loans.items()):
                if other.parent_loan_id == loan_id:
                    self._t.loans[other_id] = replace(other, parent_loan_id=None)

    # ── Transactions ─────────────────────────────────────────
    async def add_transaction(self, transaction):
        transaction = self._stamp(transaction, updated=False)
        self._t.transactions[transaction.id] = transaction
        self._t.tx_sequence[transaction.id] = next(self._sequence)
        return transaction

    async def find_transaction_by_key(self, organization_id, idempotency_key):
        for tx in self._t.transactions.values():
            if tx.organization_id == organization_id and tx.idempotency_key == idempotency_key:
                return tx
        return None

    def _filtered(self, organization_id: str, filters: TransactionFilter) -> list[TransactionRecord]:
        return [
            tx for tx in self._t.transactions.values()
            if tx.organization_id == organization_id and filters.matches(tx)
        ]

    async def list_transactions(self, organization_id, filters, *, limit=None, offset=0):
        rows = sorted(
            self._filtered(organization_id, filters),
            key=lambda tx: (tx.date, tx.created_at, self._t.tx_sequence[tx.id]),
            reverse=True,
        )
        end = None if limit is None else offset + limit
        return rows[offset:end]

    async def count_transactions(self, organization_id, filters):
        return len(self._filtered(organization_id, filters))

    # ── Audit ────────────────────────────────────────────────
    async def add_audit_entry(self, entry):
        entry = replace(entry, id=next(self._audit_ids), created_at=utcnow())
        self._t.audit.append(entry)
        return entry

    async def list_audit_entries(self, organization_id, *, entity_type=None, entity_id=None):
        entries = [
            e for e in self._t.audit
            if e.organization_id == organization_id
            and (entity_type is None or e.entity_type == entity_type)
            and (entity_id is None or e.entity_id == entity_id)
        ]
        return sorted(entries, key=lambda e: e.id, reverse=True)

    # ── Snapshots ────────────────────────────────────────────
    async def get_snapshot(self, organization_id, snapshot_date):
        for snap in self._t.snapshots.values():
            if snap.organization_id == organization_id and snap.snapshot_date == snapshot_date:
                return snap
        return None

    async def add_snapshot(self, snapshot):
        snapshot = self._stamp(snapshot, updated=False)
        self._t.snapshots[snapshot.id] = snapshot
        return snapshot

    async def list_snapshots(self, organization_id, *, date_from: date | None = None, date_to: date | None = None):
        snaps = [
            s for s in self._t.snapshots.values()
            if s.organization_id == organization_id
            and (date_from is None or s.snapshot_date >= date_from)
            and (date_to is None or s.snapshot_date <= date_to)
        ]
        return sorted(snaps, key=lambda s: s.snapshot_date)

    async def list_organization_ids(self):
        return sorted({f.organization_id for f in self._t.facilities.values()})


class MemoryLedgerStore(LedgerStore):
    """Ledger store backed by process memory."""

    def __init__(self):
        self._tables = _Tables()
        self._lock = asyncio.Lock()
        self._sequence = itertools.count(1)
        self._audit_ids = itertools.count(1)

    @property
    def backend_name(self) -> str:
        return "memory"

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[StoreSession]:
        async with self._lock:
            working = self._tables.copy()
            yield MemorySession(working, self._sequence, self._audit_ids)
            # Only reached when the body did not raise.
            self._tables = working

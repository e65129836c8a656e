"""Storage-neutral ledger records, command structs and lifecycle tables.

Both store implementations speak in these frozen dataclasses, so the state
machine and the calculators never touch ORM rows.  Updates are expressed as
narrow command structs and applied with ``dataclasses.replace``.
"""

import enum
from dataclasses import dataclass, field, fields
from datetime import date, datetime
from decimal import Decimal

from loanbook.models import (
    RecordStatus,
    FacilityType,
    CollateralType,
    LoanStatus,
    InterestBasis,
    TransactionType,
)
from loanbook.services.ledger.errors import InvalidStateTransitionError


# ===================================================================
# Lifecycle transition tables
# ===================================================================

LOAN_TRANSITIONS: dict[LoanStatus, frozenset[LoanStatus]] = {
    LoanStatus.ACTIVE: frozenset({LoanStatus.OVERDUE, LoanStatus.SETTLED, LoanStatus.CANCELLED}),
    LoanStatus.OVERDUE: frozenset({LoanStatus.ACTIVE, LoanStatus.SETTLED, LoanStatus.CANCELLED}),
    LoanStatus.SETTLED: frozenset({LoanStatus.ACTIVE}),
    LoanStatus.CANCELLED: frozenset(),
}

OPEN_LOAN_STATUSES = frozenset({LoanStatus.ACTIVE, LoanStatus.OVERDUE})

# Banks and collateral assignments can be switched back on.
TOGGLE_TRANSITIONS: dict[RecordStatus, frozenset[RecordStatus]] = {
    RecordStatus.ACTIVE: frozenset({RecordStatus.INACTIVE}),
    RecordStatus.INACTIVE: frozenset({RecordStatus.ACTIVE}),
}

# Facilities, credit lines and collateral are only ever soft-deleted.
DEACTIVATE_ONLY_TRANSITIONS: dict[RecordStatus, frozenset[RecordStatus]] = {
    RecordStatus.ACTIVE: frozenset({RecordStatus.INACTIVE}),
    RecordStatus.INACTIVE: frozenset(),
}


def check_transition(table, entity: str, entity_id: str, current, target, action: str) -> None:
    """Raise InvalidStateTransitionError unless current → target is in *table*."""
    if target not in table.get(current, frozenset()):
        raise InvalidStateTransitionError(entity, entity_id, current.value, action)


# ===================================================================
# Entity records
# ===================================================================


@dataclass(frozen=True)
class BankRecord:
    code: str
    name: str
    organization_id: str | None = None
    status: RecordStatus = RecordStatus.ACTIVE
    id: str | None = None
    created_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == RecordStatus.ACTIVE

    @property
    def is_global(self) -> bool:
        return self.organization_id is None


@dataclass(frozen=True)
class FacilityRecord:
    organization_id: str
    bank_id: str
    facility_type: FacilityType
    credit_limit: Decimal
    cost_of_funding: Decimal
    start_date: date
    expiry_date: date
    max_revolving_period: int | None = None
    terms: str | None = None
    status: RecordStatus = RecordStatus.ACTIVE
    created_by: str | None = None
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == RecordStatus.ACTIVE


@dataclass(frozen=True)
class CreditLineRecord:
    organization_id: str
    facility_id: str
    name: str
    credit_line_type: str
    credit_limit: Decimal
    interest_rate: Decimal | None = None
    description: str | None = None
    status: RecordStatus = RecordStatus.ACTIVE
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == RecordStatus.ACTIVE


@dataclass(frozen=True)
class CollateralRecord:
    organization_id: str
    collateral_type: CollateralType
    name: str
    current_value: Decimal
    valuation_date: date
    description: str | None = None
    valuation_source: str | None = None
    notes: str | None = None
    status: RecordStatus = RecordStatus.ACTIVE
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == RecordStatus.ACTIVE


@dataclass(frozen=True)
class CollateralAssignmentRecord:
    organization_id: str
    collateral_id: str
    bank_id: str | None = None
    facility_id: str | None = None
    credit_line_id: str | None = None
    status: RecordStatus = RecordStatus.ACTIVE
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == RecordStatus.ACTIVE


@dataclass(frozen=True)
class LoanRecord:
    organization_id: str
    facility_id: str
    reference_number: str
    amount: Decimal
    sibor_rate: Decimal
    margin: Decimal
    bank_rate: Decimal
    start_date: date
    due_date: date
    user_id: str | None = None
    credit_line_id: str | None = None
    interest_basis: InterestBasis = InterestBasis.ACTUAL_365
    charges_due_date: date | None = None
    notes: str | None = None
    status: LoanStatus = LoanStatus.ACTIVE
    settled_date: date | None = None
    settled_amount: Decimal | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    reversed_at: datetime | None = None
    reversal_reason: str | None = None
    reversed_by: str | None = None
    reversal_count: int = 0
    parent_loan_id: str | None = None
    cycle_number: int = 1
    last_accrual_date: date | None = None
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_LOAN_STATUSES


@dataclass(frozen=True)
class TransactionRecord:
    organization_id: str
    bank_id: str
    type: TransactionType
    amount: Decimal
    date: date
    user_id: str | None = None
    loan_id: str | None = None
    facility_id: str | None = None
    memo: str | None = None
    reference: str | None = None
    allocation: dict | None = None
    idempotency_key: str | None = None
    id: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class AuditRecord:
    organization_id: str
    entity_type: str
    entity_id: str
    action: str
    user_id: str | None = None
    old_values: dict | None = None
    new_values: dict | None = None
    details: str | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class SnapshotRecord:
    organization_id: str
    snapshot_date: date
    total_outstanding: Decimal
    total_credit_limit: Decimal
    total_collateral_value: Decimal
    portfolio_ltv: Decimal
    active_loans_count: int
    bank_exposures: list = field(default_factory=list)
    metrics: dict = field(default_factory=dict)
    id: str | None = None
    created_at: datetime | None = None


# ===================================================================
# Commands
# ===================================================================


@dataclass(frozen=True)
class DrawCommand:
    facility_id: str
    amount: Decimal
    sibor_rate: Decimal
    margin: Decimal
    start_date: date
    due_date: date
    reference_number: str | None = None
    credit_line_id: str | None = None
    charges_due_date: date | None = None
    interest_basis: InterestBasis | None = None
    notes: str | None = None
    acknowledge_overdraw: bool = False


@dataclass(frozen=True)
class PaymentCommand:
    amount: Decimal
    date: date
    memo: str | None = None
    reference: str | None = None
    idempotency_key: str | None = None


@dataclass(frozen=True)
class NewTransaction:
    """Raw ledger posting; facility and bank are resolved from the loan when omitted."""

    type: TransactionType
    amount: Decimal
    date: date
    loan_id: str | None = None
    facility_id: str | None = None
    bank_id: str | None = None
    memo: str | None = None
    reference: str | None = None
    allocation: dict | None = None
    idempotency_key: str | None = None


@dataclass(frozen=True)
class SettleCommand:
    date: date
    amount: Decimal | None = None
    memo: str | None = None


@dataclass(frozen=True)
class RevolveCommand:
    date: date
    due_date: date
    start_date: date | None = None
    amount: Decimal | None = None
    sibor_rate: Decimal | None = None
    margin: Decimal | None = None
    reference_number: str | None = None
    memo: str | None = None
    acknowledge_overdraw: bool = False


@dataclass(frozen=True)
class LoanAmendment:
    due_date: date | None = None
    charges_due_date: date | None = None
    sibor_rate: Decimal | None = None
    margin: Decimal | None = None
    notes: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class FacilityUpdate:
    credit_limit: Decimal | None = None
    cost_of_funding: Decimal | None = None
    expiry_date: date | None = None
    max_revolving_period: int | None = None
    terms: str | None = None


@dataclass(frozen=True)
class TransactionFilter:
    date_from: date | None = None
    date_to: date | None = None
    bank_id: str | None = None
    facility_id: str | None = None
    loan_id: str | None = None
    type: TransactionType | None = None

    def matches(self, tx: TransactionRecord) -> bool:
        if self.date_from and tx.date < self.date_from:
            return False
        if self.date_to and tx.date > self.date_to:
            return False
        if self.bank_id and tx.bank_id != self.bank_id:
            return False
        if self.facility_id and tx.facility_id != self.facility_id:
            return False
        if self.loan_id and tx.loan_id != self.loan_id:
            return False
        if self.type and tx.type != self.type:
            return False
        return True


# ===================================================================
# Helpers
# ===================================================================


def _json_value(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    return value


def record_snapshot(record, names: tuple[str, ...] | None = None) -> dict:
    """JSON-safe dict of *record* (optionally only *names*) for audit rows."""
    wanted = names or tuple(f.name for f in fields(record))
    return {name: _json_value(getattr(record, name)) for name in wanted}

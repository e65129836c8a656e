"""Pydantic schemas for request/response validation.

Money and rates travel as decimal strings.  Request fields are plain ``str``
so a JSON float is rejected before it reaches the ledger; response fields are
``Decimal`` and serialise back to strings.
"""

from datetime import datetime, date
from decimal import Decimal
from typing import Any, Optional
from pydantic import BaseModel, Field

from loanbook.models import (
    CollateralType,
    FacilityType,
    InterestBasis,
    LoanStatus,
    RecordStatus,
    TransactionType,
)


# ── Banks ─────────────────────────────────────────────

class BankCreate(BaseModel):
    code: str = Field(min_length=1, max_length=10)
    name: str = Field(min_length=1, max_length=100)


class ActiveToggle(BaseModel):
    active: bool


class BankResponse(BaseModel):
    id: str
    code: str
    name: str
    organization_id: Optional[str] = None
    status: RecordStatus
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ── Facilities & credit lines ─────────────────────────

class FacilityCreate(BaseModel):
    bank_id: str
    facility_type: FacilityType
    credit_limit: str
    cost_of_funding: str
    start_date: date
    expiry_date: date
    max_revolving_period: Optional[int] = None
    terms: Optional[str] = None


class FacilityUpdateRequest(BaseModel):
    credit_limit: Optional[str] = None
    cost_of_funding: Optional[str] = None
    expiry_date: Optional[date] = None
    max_revolving_period: Optional[int] = None
    terms: Optional[str] = None


class FacilityResponse(BaseModel):
    id: str
    bank_id: str
    facility_type: FacilityType
    credit_limit: Decimal
    cost_of_funding: Decimal
    start_date: date
    expiry_date: date
    max_revolving_period: Optional[int] = None
    terms: Optional[str] = None
    status: RecordStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class CreditLineCreate(BaseModel):
    facility_id: str
    name: str = Field(min_length=1, max_length=200)
    credit_line_type: str = "working_capital"
    credit_limit: str
    interest_rate: Optional[str] = None
    description: Optional[str] = None


class CreditLineResponse(BaseModel):
    id: str
    facility_id: str
    name: str
    credit_line_type: str
    credit_limit: Decimal
    interest_rate: Optional[Decimal] = None
    description: Optional[str] = None
    status: RecordStatus

    model_config = {"from_attributes": True}


# ── Collateral ────────────────────────────────────────

class CollateralCreate(BaseModel):
    collateral_type: CollateralType
    name: str = Field(min_length=1, max_length=200)
    current_value: str
    valuation_date: date
    description: Optional[str] = None
    valuation_source: Optional[str] = None
    notes: Optional[str] = None


class CollateralRevalue(BaseModel):
    current_value: str
    valuation_date: date
    valuation_source: Optional[str] = None


class CollateralResponse(BaseModel):
    id: str
    collateral_type: CollateralType
    name: str
    description: Optional[str] = None
    current_value: Decimal
    valuation_date: date
    valuation_source: Optional[str] = None
    notes: Optional[str] = None
    status: RecordStatus

    model_config = {"from_attributes": True}


class AssignmentCreate(BaseModel):
    collateral_id: str
    bank_id: Optional[str] = None
    facility_id: Optional[str] = None
    credit_line_id: Optional[str] = None


class AssignmentResponse(BaseModel):
    id: str
    collateral_id: str
    bank_id: Optional[str] = None
    facility_id: Optional[str] = None
    credit_line_id: Optional[str] = None
    status: RecordStatus

    model_config = {"from_attributes": True}


# ── Loans ─────────────────────────────────────────────

class LoanCreate(BaseModel):
    facility_id: str
    amount: str
    sibor_rate: str
    margin: str
    start_date: date
    due_date: date
    reference_number: Optional[str] = Field(None, max_length=50)
    credit_line_id: Optional[str] = None
    charges_due_date: Optional[date] = None
    interest_basis: Optional[InterestBasis] = None
    notes: Optional[str] = None
    acknowledge_overdraw: bool = False


class LoanAmendRequest(BaseModel):
    due_date: Optional[date] = None
    charges_due_date: Optional[date] = None
    sibor_rate: Optional[str] = None
    margin: Optional[str] = None
    notes: Optional[str] = None
    reason: Optional[str] = None


class LoanResponse(BaseModel):
    id: str
    facility_id: str
    credit_line_id: Optional[str] = None
    reference_number: str
    amount: Decimal
    sibor_rate: Decimal
    margin: Decimal
    bank_rate: Decimal
    interest_basis: InterestBasis
    start_date: date
    due_date: date
    charges_due_date: Optional[date] = None
    notes: Optional[str] = None
    status: LoanStatus
    settled_date: Optional[date] = None
    settled_amount: Optional[Decimal] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    reversed_at: Optional[datetime] = None
    reversal_reason: Optional[str] = None
    reversed_by: Optional[str] = None
    reversal_count: int = 0
    parent_loan_id: Optional[str] = None
    cycle_number: int = 1
    last_accrual_date: Optional[date] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class PaymentRequest(BaseModel):
    amount: str
    date: date
    memo: Optional[str] = None
    reference: Optional[str] = Field(None, max_length=100)
    idempotency_key: Optional[str] = Field(None, max_length=200)


class SettleRequest(BaseModel):
    date: date
    amount: Optional[str] = None
    memo: Optional[str] = None


class ReverseSettlementRequest(BaseModel):
    reason: str = Field(min_length=1)


class RevolveRequest(BaseModel):
    date: date
    due_date: date
    start_date: Optional[date] = None
    amount: Optional[str] = None
    sibor_rate: Optional[str] = None
    margin: Optional[str] = None
    reference_number: Optional[str] = Field(None, max_length=50)
    memo: Optional[str] = None
    acknowledge_overdraw: bool = False


class CancelRequest(BaseModel):
    reason: Optional[str] = None


# ── Transactions ──────────────────────────────────────

class TransactionCreate(BaseModel):
    type: TransactionType
    amount: str
    date: date
    loan_id: Optional[str] = None
    facility_id: Optional[str] = None
    bank_id: Optional[str] = None
    memo: Optional[str] = None
    reference: Optional[str] = Field(None, max_length=100)
    allocation: Optional[dict[str, Any]] = None
    idempotency_key: Optional[str] = Field(None, max_length=200)


class TransactionResponse(BaseModel):
    id: str
    loan_id: Optional[str] = None
    facility_id: Optional[str] = None
    bank_id: str
    user_id: Optional[str] = None
    type: TransactionType
    amount: Decimal
    date: date
    memo: Optional[str] = None
    reference: Optional[str] = None
    allocation: Optional[dict[str, Any]] = None
    idempotency_key: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class TransactionListResponse(BaseModel):
    items: list[TransactionResponse]
    total: int
    limit: Optional[int] = None
    offset: int = 0


class SettleResponse(BaseModel):
    loan: LoanResponse
    transaction: Optional[TransactionResponse] = None


class RevolveResponse(BaseModel):
    closed_loan: LoanResponse
    new_loan: LoanResponse


class BalanceResponse(BaseModel):
    principal: Decimal
    interest: Decimal
    fees: Decimal
    total: Decimal

    model_config = {"from_attributes": True}


class InterestResponse(BaseModel):
    loan_id: str
    interest_basis: InterestBasis
    bank_rate: Decimal
    accrual_start: date
    as_of: date
    days_accrued: int
    accrued: Decimal
    posted_interest: Decimal
    projected_total: Decimal


class RevolvingUsageResponse(BaseModel):
    loan_id: str
    facility_id: str
    is_revolving: bool
    max_revolving_period: int
    days_used: int
    days_remaining: int
    usage_pct: Decimal
    status: str
    can_revolve: bool


# ── Portfolio ─────────────────────────────────────────

class BankExposureResponse(BaseModel):
    bank_id: str
    bank_name: str
    bank_code: Optional[str] = None
    outstanding: Decimal
    credit_limit: Decimal
    collateral_value: Decimal
    utilization: Decimal
    facility_ltv: Decimal
    outstanding_ltv: Decimal


class PortfolioSummaryResponse(BaseModel):
    total_outstanding: Decimal
    total_credit_limit: Decimal
    available_credit: Decimal
    total_collateral_value: Decimal
    portfolio_ltv: Decimal
    facility_ltv: Decimal
    outstanding_ltv: Decimal
    utilization: Decimal
    active_loans_count: int
    bank_exposures: list[BankExposureResponse]
    currency: str = "SAR"


class FacilityAvailabilityResponse(BaseModel):
    facility_id: str
    facility_type: FacilityType
    bank_id: str
    bank_name: Optional[str] = None
    limit: Decimal
    utilized: Decimal
    available: Decimal
    utilization_pct: Decimal
    expiry_date: date


class TotalsResponse(BaseModel):
    metric: str
    value: Decimal
    unit: str
    bank_id: Optional[str] = None


class BankConcentration(BaseModel):
    bank_id: str
    bank_name: str
    exposure: Decimal
    concentration: Decimal
    at_risk: bool


class ConcentrationResponse(BaseModel):
    threshold: Decimal
    total_exposure: Decimal
    concentration: list[BankConcentration]


class SnapshotResponse(BaseModel):
    id: str
    snapshot_date: date
    total_outstanding: Decimal
    total_credit_limit: Decimal
    total_collateral_value: Decimal
    portfolio_ltv: Decimal
    active_loans_count: int
    bank_exposures: Optional[list[dict[str, Any]]] = None
    metrics: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class AuditEntryResponse(BaseModel):
    id: int
    entity_type: str
    entity_id: str
    action: str
    user_id: Optional[str] = None
    old_values: Optional[dict[str, Any]] = None
    new_values: Optional[dict[str, Any]] = None
    details: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

"""Loan endpoints: draw, repay, settle, reverse, revolve, cancel and read-side views."""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query

from loanbook.api.errors import ledger_http_error
from loanbook.config import settings
from loanbook.models import InterestBasis, LoanStatus
from loanbook.schemas import (
    AuditEntryResponse,
    BalanceResponse,
    CancelRequest,
    InterestResponse,
    LoanAmendRequest,
    LoanCreate,
    LoanResponse,
    PaymentRequest,
    ReverseSettlementRequest,
    RevolveRequest,
    RevolveResponse,
    RevolvingUsageResponse,
    SettleRequest,
    SettleResponse,
    TransactionResponse,
)
from loanbook.services.ledger import entities, interest, lifecycle, transactions
from loanbook.services.ledger.audit import list_audit_entries
from loanbook.services.ledger.balance import calculate_loan_balance
from loanbook.services.ledger.errors import LedgerError
from loanbook.services.ledger.records import (
    DrawCommand,
    LoanAmendment,
    PaymentCommand,
    RevolveCommand,
    SettleCommand,
)
from loanbook.services.ledger.store import LedgerStore
from loanbook.tenancy import RequestContext, get_context, get_store

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=list[LoanResponse])
async def list_loans(
    status: Optional[LoanStatus] = Query(None),
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    loans = await entities.list_loans(store, ctx.organization_id, status=status)
    return [LoanResponse.model_validate(loan) for loan in loans]


@router.post("", response_model=LoanResponse, status_code=201)
async def create_loan(
    data: LoanCreate,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    command = DrawCommand(
        facility_id=data.facility_id,
        amount=data.amount,
        sibor_rate=data.sibor_rate,
        margin=data.margin,
        start_date=data.start_date,
        due_date=data.due_date,
        reference_number=data.reference_number,
        credit_line_id=data.credit_line_id,
        charges_due_date=data.charges_due_date,
        interest_basis=data.interest_basis or InterestBasis(settings.default_interest_basis),
        notes=data.notes,
        acknowledge_overdraw=data.acknowledge_overdraw,
    )
    try:
        loan = await lifecycle.create_loan(store, ctx.organization_id, command, user_id=ctx.user_id)
    except LedgerError as e:
        raise ledger_http_error(e)
    return LoanResponse.model_validate(loan)


@router.get("/{loan_id}", response_model=LoanResponse)
async def get_loan(
    loan_id: str,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        loan = await entities.get_loan(store, ctx.organization_id, loan_id)
    except LedgerError as e:
        raise ledger_http_error(e)
    return LoanResponse.model_validate(loan)


@router.patch("/{loan_id}", response_model=LoanResponse)
async def amend_loan(
    loan_id: str,
    data: LoanAmendRequest,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        loan = await lifecycle.amend_loan(
            store, ctx.organization_id, loan_id, LoanAmendment(**data.model_dump()), user_id=ctx.user_id
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return LoanResponse.model_validate(loan)


@router.delete("/{loan_id}", response_model=LoanResponse)
async def cancel_loan(
    loan_id: str,
    data: Optional[CancelRequest] = None,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    reason = data.reason if data else None
    try:
        loan = await lifecycle.delete_loan(
            store, ctx.organization_id, loan_id, reason=reason, user_id=ctx.user_id
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return LoanResponse.model_validate(loan)


@router.post("/{loan_id}/permanent-delete", status_code=204)
async def permanently_delete_loan(
    loan_id: str,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        await lifecycle.permanently_delete_loan(store, ctx.organization_id, loan_id, user_id=ctx.user_id)
    except LedgerError as e:
        raise ledger_http_error(e)


# ── Ledger operations ─────────────────────────────────

@router.post("/{loan_id}/repayments", response_model=TransactionResponse, status_code=201)
async def record_payment(
    loan_id: str,
    data: PaymentRequest,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    payment = PaymentCommand(
        amount=data.amount,
        date=data.date,
        memo=data.memo,
        reference=data.reference,
        idempotency_key=data.idempotency_key,
    )
    try:
        tx = await lifecycle.process_payment(store, ctx.organization_id, loan_id, payment, user_id=ctx.user_id)
    except LedgerError as e:
        raise ledger_http_error(e)
    return TransactionResponse.model_validate(tx)


@router.post("/{loan_id}/settle", response_model=SettleResponse)
async def settle_loan(
    loan_id: str,
    data: SettleRequest,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    command = SettleCommand(date=data.date, amount=data.amount, memo=data.memo)
    try:
        loan, tx = await lifecycle.settle_loan(store, ctx.organization_id, loan_id, command, user_id=ctx.user_id)
    except LedgerError as e:
        raise ledger_http_error(e)
    return SettleResponse(
        loan=LoanResponse.model_validate(loan),
        transaction=TransactionResponse.model_validate(tx) if tx else None,
    )


@router.post("/{loan_id}/reverse-settlement", response_model=LoanResponse)
async def reverse_settlement(
    loan_id: str,
    data: ReverseSettlementRequest,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        loan = await lifecycle.reverse_loan_settlement(
            store, ctx.organization_id, loan_id, data.reason, user_id=ctx.user_id
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return LoanResponse.model_validate(loan)


@router.post("/{loan_id}/revolve", response_model=RevolveResponse, status_code=201)
async def revolve_loan(
    loan_id: str,
    data: RevolveRequest,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    command = RevolveCommand(**data.model_dump())
    try:
        closed, successor = await lifecycle.revolve_loan(
            store, ctx.organization_id, loan_id, command, user_id=ctx.user_id
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return RevolveResponse(
        closed_loan=LoanResponse.model_validate(closed),
        new_loan=LoanResponse.model_validate(successor),
    )


@router.post("/{loan_id}/accrue", response_model=Optional[TransactionResponse])
async def accrue_interest(
    loan_id: str,
    as_of: Optional[date] = Query(None),
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        tx = await interest.post_interest_accrual(
            store, ctx.organization_id, loan_id, as_of or date.today(), user_id=ctx.user_id
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return TransactionResponse.model_validate(tx) if tx else None


# ── Read-side views ───────────────────────────────────

@router.get("/{loan_id}/ledger", response_model=list[TransactionResponse])
async def get_loan_ledger(
    loan_id: str,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        rows = await transactions.get_loan_ledger(store, ctx.organization_id, loan_id)
    except LedgerError as e:
        raise ledger_http_error(e)
    return [TransactionResponse.model_validate(tx) for tx in rows]


@router.get("/{loan_id}/balance", response_model=BalanceResponse)
async def get_loan_balance(
    loan_id: str,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        balance = await calculate_loan_balance(store, ctx.organization_id, loan_id)
    except LedgerError as e:
        raise ledger_http_error(e)
    return BalanceResponse.model_validate(balance)


@router.get("/{loan_id}/interest", response_model=InterestResponse)
async def get_loan_interest(
    loan_id: str,
    as_of: Optional[date] = Query(None),
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        return await interest.get_loan_interest(store, ctx.organization_id, loan_id, as_of or date.today())
    except LedgerError as e:
        raise ledger_http_error(e)


@router.get("/{loan_id}/revolving-usage", response_model=RevolvingUsageResponse)
async def get_revolving_usage(
    loan_id: str,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        return await interest.get_revolving_usage(store, ctx.organization_id, loan_id)
    except LedgerError as e:
        raise ledger_http_error(e)


@router.get("/{loan_id}/audit", response_model=list[AuditEntryResponse])
async def get_loan_audit(
    loan_id: str,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    entries = await list_audit_entries(store, ctx.organization_id, entity_type="loan", entity_id=loan_id)
    return [AuditEntryResponse.model_validate(e) for e in entries]

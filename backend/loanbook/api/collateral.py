"""Collateral and collateral assignment endpoints."""

import logging

from fastapi import APIRouter, Depends, Query

from loanbook.api.errors import ledger_http_error
from loanbook.schemas import (
    ActiveToggle,
    AssignmentCreate,
    AssignmentResponse,
    CollateralCreate,
    CollateralResponse,
    CollateralRevalue,
)
from loanbook.services.ledger import entities
from loanbook.services.ledger.errors import LedgerError
from loanbook.services.ledger.store import LedgerStore
from loanbook.tenancy import RequestContext, get_context, get_store

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=list[CollateralResponse])
async def list_collateral(
    include_inactive: bool = Query(False),
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    items = await entities.list_collateral(store, ctx.organization_id, include_inactive=include_inactive)
    return [CollateralResponse.model_validate(c) for c in items]


@router.post("", response_model=CollateralResponse, status_code=201)
async def create_collateral(
    data: CollateralCreate,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        collateral = await entities.create_collateral(
            store,
            ctx.organization_id,
            collateral_type=data.collateral_type,
            name=data.name,
            current_value=data.current_value,
            valuation_date=data.valuation_date,
            description=data.description,
            valuation_source=data.valuation_source,
            notes=data.notes,
            user_id=ctx.user_id,
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return CollateralResponse.model_validate(collateral)


@router.get("/assignments", response_model=list[AssignmentResponse])
async def list_assignments(
    include_inactive: bool = Query(False),
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    items = await entities.list_collateral_assignments(
        store, ctx.organization_id, include_inactive=include_inactive
    )
    return [AssignmentResponse.model_validate(a) for a in items]


@router.post("/assignments", response_model=AssignmentResponse, status_code=201)
async def assign_collateral(
    data: AssignmentCreate,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        assignment = await entities.assign_collateral(
            store,
            ctx.organization_id,
            data.collateral_id,
            bank_id=data.bank_id,
            facility_id=data.facility_id,
            credit_line_id=data.credit_line_id,
            user_id=ctx.user_id,
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return AssignmentResponse.model_validate(assignment)


@router.post("/assignments/{assignment_id}/active", response_model=AssignmentResponse)
async def set_assignment_active(
    assignment_id: str,
    data: ActiveToggle,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        assignment = await entities.set_assignment_active(
            store, ctx.organization_id, assignment_id, data.active, user_id=ctx.user_id
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return AssignmentResponse.model_validate(assignment)


@router.post("/{collateral_id}/revalue", response_model=CollateralResponse)
async def revalue_collateral(
    collateral_id: str,
    data: CollateralRevalue,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        collateral = await entities.revalue_collateral(
            store,
            ctx.organization_id,
            collateral_id,
            data.current_value,
            data.valuation_date,
            valuation_source=data.valuation_source,
            user_id=ctx.user_id,
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return CollateralResponse.model_validate(collateral)


@router.delete("/{collateral_id}", response_model=CollateralResponse)
async def delete_collateral(
    collateral_id: str,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        collateral = await entities.delete_collateral(
            store, ctx.organization_id, collateral_id, user_id=ctx.user_id
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return CollateralResponse.model_validate(collateral)

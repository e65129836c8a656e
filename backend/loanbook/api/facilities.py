"""Facility and credit line endpoints."""

import logging

from fastapi import APIRouter, Depends, Query

from loanbook.api.errors import ledger_http_error
from loanbook.schemas import (
    CreditLineCreate,
    CreditLineResponse,
    FacilityCreate,
    FacilityResponse,
    FacilityUpdateRequest,
)
from loanbook.services.ledger import entities
from loanbook.services.ledger.errors import LedgerError
from loanbook.services.ledger.records import FacilityUpdate
from loanbook.services.ledger.store import LedgerStore
from loanbook.tenancy import RequestContext, get_context, get_store

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=list[FacilityResponse])
async def list_facilities(
    include_inactive: bool = Query(False),
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    facilities = await entities.list_facilities(
        store, ctx.organization_id, include_inactive=include_inactive
    )
    return [FacilityResponse.model_validate(f) for f in facilities]


@router.post("", response_model=FacilityResponse, status_code=201)
async def create_facility(
    data: FacilityCreate,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        facility = await entities.create_facility(
            store,
            ctx.organization_id,
            bank_id=data.bank_id,
            facility_type=data.facility_type,
            credit_limit=data.credit_limit,
            cost_of_funding=data.cost_of_funding,
            start_date=data.start_date,
            expiry_date=data.expiry_date,
            max_revolving_period=data.max_revolving_period,
            terms=data.terms,
            user_id=ctx.user_id,
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return FacilityResponse.model_validate(facility)


@router.get("/credit-lines", response_model=list[CreditLineResponse])
async def list_credit_lines(
    include_inactive: bool = Query(False),
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    lines = await entities.list_credit_lines(
        store, ctx.organization_id, include_inactive=include_inactive
    )
    return [CreditLineResponse.model_validate(c) for c in lines]


@router.post("/credit-lines", response_model=CreditLineResponse, status_code=201)
async def create_credit_line(
    data: CreditLineCreate,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        credit_line = await entities.create_credit_line(
            store,
            ctx.organization_id,
            facility_id=data.facility_id,
            name=data.name,
            credit_line_type=data.credit_line_type,
            credit_limit=data.credit_limit,
            interest_rate=data.interest_rate,
            description=data.description,
            user_id=ctx.user_id,
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return CreditLineResponse.model_validate(credit_line)


@router.delete("/credit-lines/{credit_line_id}", response_model=CreditLineResponse)
async def delete_credit_line(
    credit_line_id: str,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        credit_line = await entities.delete_credit_line(
            store, ctx.organization_id, credit_line_id, user_id=ctx.user_id
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return CreditLineResponse.model_validate(credit_line)


@router.get("/{facility_id}", response_model=FacilityResponse)
async def get_facility(
    facility_id: str,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        facility = await entities.get_facility(store, ctx.organization_id, facility_id)
    except LedgerError as e:
        raise ledger_http_error(e)
    return FacilityResponse.model_validate(facility)


@router.patch("/{facility_id}", response_model=FacilityResponse)
async def update_facility(
    facility_id: str,
    data: FacilityUpdateRequest,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        facility = await entities.update_facility(
            store,
            ctx.organization_id,
            facility_id,
            FacilityUpdate(**data.model_dump()),
            user_id=ctx.user_id,
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return FacilityResponse.model_validate(facility)


@router.delete("/{facility_id}", response_model=FacilityResponse)
async def delete_facility(
    facility_id: str,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        facility = await entities.delete_facility(
            store, ctx.organization_id, facility_id, user_id=ctx.user_id
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return FacilityResponse.model_validate(facility)

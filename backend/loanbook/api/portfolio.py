"""Portfolio endpoints: summary, availability, totals, concentration and snapshots."""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query

from loanbook.api.errors import ledger_http_error
from loanbook.config import settings
from loanbook.models import FacilityType
from loanbook.schemas import (
    ConcentrationResponse,
    FacilityAvailabilityResponse,
    PortfolioSummaryResponse,
    SnapshotResponse,
    TotalsResponse,
)
from loanbook.services.ledger import portfolio, snapshots
from loanbook.services.ledger.errors import LedgerError
from loanbook.services.ledger.store import LedgerStore
from loanbook.tenancy import RequestContext, get_context, get_store

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/summary", response_model=PortfolioSummaryResponse)
async def get_summary(
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    summary = await portfolio.get_user_portfolio_summary(store, ctx.organization_id)
    return PortfolioSummaryResponse(**summary, currency=settings.currency)


@router.get("/availability", response_model=list[FacilityAvailabilityResponse])
async def get_availability(
    bank: Optional[str] = Query(None, description="Bank id, code or name"),
    facility_type: Optional[FacilityType] = Query(None),
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        return await portfolio.check_facility_availability(
            store, ctx.organization_id, bank_query=bank, facility_type=facility_type
        )
    except LedgerError as e:
        raise ledger_http_error(e)


@router.get("/totals", response_model=TotalsResponse)
async def get_totals(
    metric: str = Query(...),
    bank: Optional[str] = Query(None, description="Bank id, code or name"),
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        return await portfolio.calculate_totals(store, ctx.organization_id, metric, bank_query=bank)
    except LedgerError as e:
        raise ledger_http_error(e)


@router.get("/concentration", response_model=ConcentrationResponse)
async def get_concentration(
    threshold: Optional[float] = Query(None, ge=0, le=100),
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    if threshold is None:
        threshold = settings.concentration_risk_threshold
    try:
        return await portfolio.analyze_bank_concentration(store, ctx.organization_id, threshold=threshold)
    except LedgerError as e:
        raise ledger_http_error(e)


@router.get("/snapshots", response_model=list[SnapshotResponse])
async def list_snapshots(
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    rows = await snapshots.list_portfolio_snapshots(
        store, ctx.organization_id, date_from=date_from, date_to=date_to
    )
    return [SnapshotResponse.model_validate(s) for s in rows]


@router.post("/snapshots", response_model=SnapshotResponse, status_code=201)
async def capture_snapshot(
    snapshot_date: Optional[date] = Query(None),
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        snapshot = await snapshots.capture_portfolio_snapshot(
            store, ctx.organization_id, snapshot_date or date.today()
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return SnapshotResponse.model_validate(snapshot)

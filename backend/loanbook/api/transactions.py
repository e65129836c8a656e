"""Ledger transaction endpoints: filtered listing and raw postings."""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query

from loanbook.api.errors import ledger_http_error
from loanbook.config import settings
from loanbook.models import TransactionType
from loanbook.schemas import TransactionCreate, TransactionListResponse, TransactionResponse
from loanbook.services.ledger import transactions
from loanbook.services.ledger.errors import LedgerError
from loanbook.services.ledger.records import NewTransaction, TransactionFilter
from loanbook.services.ledger.store import LedgerStore
from loanbook.tenancy import RequestContext, get_context, get_store

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=TransactionListResponse)
async def list_transactions(
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    bank_id: Optional[str] = Query(None),
    facility_id: Optional[str] = Query(None),
    loan_id: Optional[str] = Query(None),
    type: Optional[TransactionType] = Query(None),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    offset: int = Query(0, ge=0),
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    filters = TransactionFilter(
        date_from=date_from,
        date_to=date_to,
        bank_id=bank_id,
        facility_id=facility_id,
        loan_id=loan_id,
        type=type,
    )
    try:
        rows = await transactions.list_transactions(
            store, ctx.organization_id, filters, limit=limit, offset=offset
        )
        total = await transactions.get_transaction_count(store, ctx.organization_id, filters)
    except LedgerError as e:
        raise ledger_http_error(e)
    return TransactionListResponse(
        items=[TransactionResponse.model_validate(tx) for tx in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("", response_model=TransactionResponse, status_code=201)
async def create_transaction(
    data: TransactionCreate,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        tx = await transactions.add_transaction(
            store, ctx.organization_id, NewTransaction(**data.model_dump()), user_id=ctx.user_id
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return TransactionResponse.model_validate(tx)

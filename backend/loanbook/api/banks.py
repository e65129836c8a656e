"""Bank endpoints: global and organization-owned banks."""

import logging

from fastapi import APIRouter, Depends, Query

from loanbook.api.errors import ledger_http_error
from loanbook.schemas import ActiveToggle, BankCreate, BankResponse
from loanbook.services.ledger import entities
from loanbook.services.ledger.errors import LedgerError
from loanbook.services.ledger.store import LedgerStore
from loanbook.tenancy import RequestContext, get_context, get_store

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=list[BankResponse])
async def list_banks(
    include_inactive: bool = Query(False),
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    banks = await entities.list_banks(store, ctx.organization_id, include_inactive=include_inactive)
    return [BankResponse.model_validate(b) for b in banks]


@router.post("", response_model=BankResponse, status_code=201)
async def create_bank(
    data: BankCreate,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        bank = await entities.create_bank(
            store, ctx.organization_id, data.code, data.name, user_id=ctx.user_id
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return BankResponse.model_validate(bank)


@router.post("/{bank_id}/active", response_model=BankResponse)
async def set_bank_active(
    bank_id: str,
    data: ActiveToggle,
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    try:
        bank = await entities.set_bank_active(
            store, ctx.organization_id, bank_id, data.active, user_id=ctx.user_id
        )
    except LedgerError as e:
        raise ledger_http_error(e)
    return BankResponse.model_validate(bank)

"""Audit trail endpoint."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from loanbook.schemas import AuditEntryResponse
from loanbook.services.ledger.audit import list_audit_entries
from loanbook.services.ledger.store import LedgerStore
from loanbook.tenancy import RequestContext, get_context, get_store

router = APIRouter()


@router.get("", response_model=list[AuditEntryResponse])
async def list_audit(
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[str] = Query(None),
    ctx: RequestContext = Depends(get_context),
    store: LedgerStore = Depends(get_store),
):
    entries = await list_audit_entries(
        store, ctx.organization_id, entity_type=entity_type, entity_id=entity_id
    )
    return [AuditEntryResponse.model_validate(e) for e in entries]

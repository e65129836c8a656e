"""Request-scoped dependencies: caller context and the injected ledger store.

Authentication is handled upstream; the gateway forwards the caller's
organization and user as ``X-Organization-Id`` / ``X-User-Id`` headers.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from loanbook.services.ledger.store import LedgerStore


@dataclass(frozen=True)
class RequestContext:
    organization_id: str
    user_id: Optional[str] = None


async def get_context(
    x_organization_id: str = Header(...),
    x_user_id: Optional[str] = Header(None),
) -> RequestContext:
    organization_id = x_organization_id.strip()
    if not organization_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Organization-Id header must not be empty",
        )
    return RequestContext(organization_id=organization_id, user_id=x_user_id)


async def get_store(request: Request) -> LedgerStore:
    """The store built once in ``create_app`` and kept on ``app.state``."""
    return request.app.state.store

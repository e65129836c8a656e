"""Loanbook Ledger Service - FastAPI Entry Point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from loanbook.config import settings
from loanbook.middleware.error_capture import ErrorCaptureMiddleware
from loanbook.services.ledger import entities
from loanbook.services.ledger.store import LedgerStore, get_ledger_store
from loanbook.api import (
    audit,
    banks,
    collateral,
    facilities,
    loans,
    portfolio,
    transactions,
)

logger = logging.getLogger(__name__)
logging.getLogger("loanbook").setLevel(settings.log_level.upper())


def create_app(store: Optional[LedgerStore] = None) -> FastAPI:
    """Build the API around *store*; without one the configured backend is used."""
    owns_store = store is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Create tables on startup (dev only); in prod the schema is managed externally."""
        if owns_store:
            app.state.store = get_ledger_store()
            if settings.environment == "development":
                await app.state.store.initialize()
            if settings.global_banks:
                await entities.seed_global_banks(
                    app.state.store, entities.parse_global_banks(settings.global_banks)
                )
        logger.info("Ledger store ready (%s backend)", app.state.store.backend_name)
        yield
        if owns_store:
            await app.state.store.close()

    app = FastAPI(
        title="Loanbook Ledger API",
        description="Loan ledger and portfolio exposure engine for bank credit facilities",
        version="0.1.0",
        lifespan=lifespan,
    )
    if store is not None:
        app.state.store = store

    # Error capture (outermost)
    app.add_middleware(ErrorCaptureMiddleware)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "X-Organization-Id", "X-User-Id"],
    )

    # Routers
    app.include_router(banks.router, prefix="/api/banks", tags=["Banks"])
    app.include_router(facilities.router, prefix="/api/facilities", tags=["Facilities"])
    app.include_router(collateral.router, prefix="/api/collateral", tags=["Collateral"])
    app.include_router(loans.router, prefix="/api/loans", tags=["Loans"])
    app.include_router(transactions.router, prefix="/api/transactions", tags=["Ledger"])
    app.include_router(portfolio.router, prefix="/api/portfolio", tags=["Portfolio"])
    app.include_router(audit.router, prefix="/api/audit", tags=["Audit"])

    @app.get("/api/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "loanbook-api",
            "version": "0.1.0",
            "store": app.state.store.backend_name,
        }

    return app


app = create_app()

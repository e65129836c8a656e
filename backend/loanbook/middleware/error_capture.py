"""FastAPI middleware that logs failed requests.

Every 5xx response and unhandled exception is logged at ERROR with the
caller's organization; rejected ledger requests (4xx) are logged at WARNING.
"""

from __future__ import annotations

import logging
import time

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

logger = logging.getLogger("loanbook.middleware")


class ErrorCaptureMiddleware(BaseHTTPMiddleware):
    """Catches unhandled exceptions, returns 500, and logs the failure."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        start = time.time()
        organization_id = request.headers.get("x-organization-id")

        try:
            response = await call_next(request)
        except Exception:
            elapsed_ms = round((time.time() - start) * 1000, 2)
            logger.exception(
                "Unhandled exception on %s %s (org=%s, %sms)",
                request.method, request.url.path, organization_id, elapsed_ms,
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error"},
            )

        elapsed_ms = round((time.time() - start) * 1000, 2)
        if response.status_code >= 500:
            logger.error(
                "HTTP %s on %s %s (org=%s, %sms)",
                response.status_code, request.method, request.url.path, organization_id, elapsed_ms,
            )
        elif response.status_code >= 400:
            logger.warning(
                "HTTP %s on %s %s (org=%s, %sms)",
                response.status_code, request.method, request.url.path, organization_id, elapsed_ms,
            )
        return response

"""Translate typed ledger errors into HTTP errors.

The ``detail`` body carries the error kind verbatim (plus the current state
for rejected transitions) so clients can report it without guessing.
"""

from fastapi import HTTPException, status

from loanbook.services.ledger.errors import (
    DuplicateIdempotencyKeyError,
    InvalidStateTransitionError,
    LedgerError,
    LedgerValidationError,
    NotFoundError,
)

_STATUS_BY_ERROR = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidStateTransitionError, status.HTTP_409_CONFLICT),
    (DuplicateIdempotencyKeyError, status.HTTP_409_CONFLICT),
    (LedgerValidationError, status.HTTP_400_BAD_REQUEST),
)


def ledger_http_error(exc: LedgerError) -> HTTPException:
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return HTTPException(status_code=status_code, detail=exc.to_dict())
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_dict())

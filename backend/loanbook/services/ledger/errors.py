"""Typed ledger errors.

The ledger raises these; the calling layer (routes, tasks) translates
them.  Every error carries a stable ``kind`` so callers can report it verbatim.
"""

from decimal import Decimal


class LedgerError(Exception):
    """Base exception for ledger errors."""

    kind = "ledger_error"

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": str(self)}


class NotFoundError(LedgerError):
    """Entity does not exist or belongs to another organization.

    Both cases produce the same message so cross-tenant existence never leaks.
    """

    kind = "not_found"

    def __init__(self, entity: str, entity_id: str | None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity.capitalize()} {entity_id} not found")


class InvalidStateTransitionError(LedgerError):
    """Transition not present in the entity's transition table."""

    kind = "invalid_state_transition"

    def __init__(self, entity: str, entity_id: str, current_state: str, attempted: str):
        self.entity = entity
        self.entity_id = entity_id
        self.current_state = current_state
        self.attempted = attempted
        super().__init__(
            f"Cannot {attempted} {entity} {entity_id}: status is {current_state}"
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["current_state"] = self.current_state
        return data


class LedgerValidationError(LedgerError):
    """Malformed input or missing linkage, rejected before any write."""

    kind = "validation_error"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class FacilityLimitExceededError(LedgerValidationError):
    """A draw would take the facility over its credit limit."""

    kind = "facility_limit_exceeded"

    def __init__(self, facility_id: str, requested: Decimal, available: Decimal):
        self.facility_id = facility_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Draw of {requested} exceeds available limit {available} on facility "
            f"{facility_id}; resubmit with acknowledge_overdraw to proceed",
            field="amount",
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["requested"] = str(self.requested)
        data["available"] = str(self.available)
        return data


class DuplicateIdempotencyKeyError(LedgerError):
    """A concurrent unit committed the same idempotency key first."""

    kind = "duplicate_idempotency_key"

    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__(f"Idempotency key {idempotency_key} was committed concurrently")

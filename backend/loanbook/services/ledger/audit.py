"""Audit trail helpers.

Audit rows are written inside the same unit of work as the change they
describe, so a rolled-back operation leaves no audit entry behind.
"""

from loanbook.services.ledger.records import AuditRecord
from loanbook.services.ledger.store import LedgerStore, StoreSession


async def write_audit(
    session: StoreSession,
    organization_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    *,
    user_id: str | None = None,
    old_values: dict | None = None,
    new_values: dict | None = None,
    details: str | None = None,
) -> AuditRecord:
    return await session.add_audit_entry(
        AuditRecord(
            organization_id=organization_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            user_id=user_id,
            old_values=old_values,
            new_values=new_values,
            details=details,
        )
    )


async def list_audit_entries(
    store: LedgerStore,
    organization_id: str,
    *,
    entity_type: str | None = None,
    entity_id: str | None = None,
) -> list[AuditRecord]:
    """Audit entries for the organization, newest first."""
    async with store.unit_of_work() as session:
        return await session.list_audit_entries(
            organization_id, entity_type=entity_type, entity_id=entity_id
        )

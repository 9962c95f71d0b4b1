"""Audit logging for credential registrations, default changes and reveals."""
from typing import Optional
from uuid import UUID, uuid4

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from metered_billing.models.audit_log import AuditLog

logger = structlog.get_logger(__name__)


async def log_audit(
    db: AsyncSession,
    entity_type: str,
    entity_id: UUID,
    action: str,
    actor: Optional[str] = None,
    changes: Optional[dict] = None,
    request_id: Optional[str] = None,
) -> AuditLog:
    """
    Log an audit entry.

    Args:
        db: Database session
        entity_type: Type of entity (payment_credential, ...)
        entity_id: Entity UUID
        action: Action performed (create, update, reveal)
        actor: Who performed the action
        changes: Dictionary of changes {field: {old: X, new: Y}}; never secrets
        request_id: Request correlation ID

    Returns:
        The persisted audit entry
    """
    audit_log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor=actor,
        changes=changes or {},
        request_id=request_id or str(uuid4()),
    )

    db.add(audit_log)
    await db.flush()

    logger.info(
        "audit_log_created",
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor,
        change_count=len(changes) if changes else 0,
    )
    return audit_log

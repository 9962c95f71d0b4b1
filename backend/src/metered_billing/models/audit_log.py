"""Audit log model for tracking credential access and changes."""
from sqlalchemy import JSON, Column, String, Uuid

from metered_billing.models.base import Base


class AuditLog(Base):
    """
    Audit log for compliance and security.

    Tracks credential registrations, default changes and privileged reads.
    The changes payload never contains plaintext credential data.
    """

    __tablename__ = "audit_logs"

    entity_type = Column(String, nullable=False, index=True)  # payment_credential, usage_interval
    entity_id = Column(Uuid, nullable=False, index=True)
    action = Column(String, nullable=False)  # create, update, reveal
    actor = Column(String, nullable=True)  # Who performed the action
    changes = Column(JSON, nullable=False, default=dict)  # {field: {old: X, new: Y}}
    request_id = Column(String, nullable=True)  # Correlation ID

    def __repr__(self) -> str:
        """String representation."""
        return f"<AuditLog(entity_type={self.entity_type}, entity_id={self.entity_id}, action={self.action})>"

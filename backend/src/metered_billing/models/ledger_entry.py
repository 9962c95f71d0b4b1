"""Transaction ledger model for settlement outcomes."""
import enum

from sqlalchemy import JSON, Column, Enum as SQLEnum, ForeignKey, Integer, Numeric, String, Text, Uuid, event
from sqlalchemy.orm import relationship

from metered_billing.exceptions import PersistenceError
from metered_billing.models.base import Base
from metered_billing.models.payment_credential import MethodKind


class LedgerOutcome(str, enum.Enum):
    """Outcome of one settlement attempt."""

    SUCCESS = "success"
    FAILED = "failed"


class TransactionLedgerEntry(Base):
    """
    Immutable record of one settlement attempt.

    amount = rate_per_minute x minutes, fixed at creation. Entries are
    append-only: a retry creates a new entry, never edits an old one.
    """

    __tablename__ = "transaction_ledger"

    user_id = Column(Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    covered_usage_interval_ids = Column(JSON, nullable=False, default=list)  # list of interval UUID strings
    minutes = Column(Integer, nullable=False)
    rate_per_minute = Column(Numeric(12, 4), nullable=False)
    amount = Column(Integer, nullable=False)  # Amount in cents
    currency = Column(String(3), nullable=False, default="usd")
    method_kind = Column(SQLEnum(MethodKind, values_callable=lambda kinds: [k.value for k in kinds]), nullable=False)
    credential_id = Column(Uuid, ForeignKey("payment_credentials.id"), nullable=True)
    external_transaction_ref = Column(String, nullable=True, index=True)  # Processor transaction ID
    outcome = Column(SQLEnum(LedgerOutcome, values_callable=lambda kinds: [k.value for k in kinds]), nullable=False, index=True)
    failure_reason = Column(Text, nullable=True)
    auth_code = Column(String, nullable=True)
    response_code = Column(String, nullable=True)
    response_message = Column(Text, nullable=True)
    note = Column(Text, nullable=True)
    settlement_claim = Column(Uuid, nullable=False, index=True)  # Claim that produced this entry

    # Relationships
    user = relationship("User", back_populates="ledger_entries")

    @property
    def succeeded(self) -> bool:
        """Whether the processor accepted the charge."""
        return self.outcome == LedgerOutcome.SUCCESS

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<TransactionLedgerEntry(id={self.id}, user_id={self.user_id}, "
            f"outcome={self.outcome.value}, amount={self.amount})>"
        )


@event.listens_for(TransactionLedgerEntry, "before_update")
def _refuse_ledger_update(mapper, connection, target) -> None:  # noqa: ANN001
    raise PersistenceError("Ledger entries are append-only", context={"entry_id": str(target.id)})


@event.listens_for(TransactionLedgerEntry, "before_delete")
def _refuse_ledger_delete(mapper, connection, target) -> None:  # noqa: ANN001
    raise PersistenceError("Ledger entries cannot be deleted", context={"entry_id": str(target.id)})

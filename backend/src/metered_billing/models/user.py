"""User model for the owners of metered usage."""
from sqlalchemy import Column, String
from sqlalchemy.orm import relationship

from metered_billing.models.base import Base, UpdatedAtMixin


class User(UpdatedAtMixin, Base):
    """
    Billable user.

    Registration and authentication live outside this core; the row exists so
    usage, credentials and ledger entries have an owner to reference.
    """

    __tablename__ = "users"

    email = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    gateway_customer_ref = Column(String, nullable=True, unique=True)  # Processor customer profile ID

    # Relationships
    usage_intervals = relationship("UsageInterval", back_populates="user")
    payment_credentials = relationship("PaymentCredential", back_populates="user")
    ledger_entries = relationship("TransactionLedgerEntry", back_populates="user")

    def __repr__(self) -> str:
        """String representation."""
        return f"<User(id={self.id}, email={self.email})>"

"""Payment credential model for vaulted customer payment instruments."""
import enum

from sqlalchemy import Boolean, Column, Enum as SQLEnum, ForeignKey, Index, LargeBinary, String, Uuid
from sqlalchemy.orm import relationship

from metered_billing.models.base import Base, UpdatedAtMixin


class MethodKind(str, enum.Enum):
    """Kind of payment instrument held in a credential."""

    CARD = "card"
    BANK = "bank"


class PaymentCredential(UpdatedAtMixin, Base):
    """
    Customer payment instrument (card or bank account).

    The raw instrument only exists as ciphertext + iv. Display columns hold
    non-secret details; gateway_payment_ref holds the processor's payment
    profile ID when the instrument was tokenized at registration.
    """

    __tablename__ = "payment_credentials"

    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    method_kind = Column(SQLEnum(MethodKind, values_callable=lambda kinds: [k.value for k in kinds]), nullable=False)
    ciphertext = Column(LargeBinary, nullable=False)
    iv = Column(LargeBinary(16), nullable=False)
    is_default = Column(Boolean, nullable=False, default=False)
    gateway_payment_ref = Column(String, nullable=True)  # Processor payment profile ID

    # Display fields
    last4 = Column(String(4), nullable=True)
    brand = Column(String, nullable=True)  # visa, mastercard, amex, ...
    expiry_month = Column(String(2), nullable=True)
    expiry_year = Column(String(4), nullable=True)
    account_type = Column(String, nullable=True)  # checking, savings
    bank_name = Column(String, nullable=True)

    # Relationships
    user = relationship("User", back_populates="payment_credentials")

    __table_args__ = (
        # At most one default credential per user
        Index(
            "uq_payment_credentials_default",
            "user_id",
            unique=True,
            postgresql_where=is_default.is_(True),
            sqlite_where=is_default.is_(True),
        ),
    )

    @property
    def is_tokenized(self) -> bool:
        """Whether the processor holds a payment profile for this credential."""
        return self.gateway_payment_ref is not None

    def __repr__(self) -> str:
        """String representation."""
        return f"<PaymentCredential(id={self.id}, method_kind={self.method_kind.value}, last4={self.last4})>"

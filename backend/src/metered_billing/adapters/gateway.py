"""Payment gateway capability consumed by registration and settlement.

The core never talks to a processor directly; it depends on this protocol.
``StripeAdapter`` is the production implementation.
"""
from dataclasses import dataclass, field
from typing import Optional, Protocol, Union, runtime_checkable

from metered_billing.schemas.credential import BankFields, CardFields


@dataclass(frozen=True)
class ProfileReference:
    """Stable processor references for a tokenized payment instrument."""

    customer_ref: str
    payment_ref: str


@dataclass(frozen=True)
class RawCredential:
    """Decrypted instrument, used only for the duration of one charge."""

    fields: Union[CardFields, BankFields] = field(repr=False)

    @property
    def method_kind(self) -> str:
        return self.fields.method_kind


ChargeCredential = Union[ProfileReference, RawCredential]


@dataclass(frozen=True)
class ChargeResult:
    """Processor answer to one charge request."""

    success: bool
    external_transaction_ref: Optional[str] = None
    message: Optional[str] = None
    auth_code: Optional[str] = None
    response_code: Optional[str] = None

    @classmethod
    def declined(cls, message: str, **kwargs) -> "ChargeResult":  # noqa: ANN003
        """Build a declined result."""
        return cls(success=False, message=message, **kwargs)


@dataclass(frozen=True)
class GatewayCustomer:
    """Identity sent to the processor when creating a customer profile."""

    reference: str
    email: str
    name: str


@runtime_checkable
class PaymentGateway(Protocol):
    """Capabilities the core needs from a payment processor client."""

    async def charge(
        self,
        credential: ChargeCredential,
        amount: int,
        currency: str,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> ChargeResult:
        """
        Charge an amount (smallest currency unit) to a credential.

        Returns a declined ChargeResult for processor declines and raises
        GatewayError when the call itself fails.
        """
        ...

    async def create_customer(self, customer: GatewayCustomer) -> str:
        """Create a processor customer profile and return its reference."""
        ...

    async def tokenize_credential(self, customer_ref: str, fields: Union[CardFields, BankFields]) -> str:
        """Store raw fields with the processor and return a payment profile reference."""
        ...
